"""Broadcast jobs: target snapshot, detached sending, progress and cancellation."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict
from uuid import uuid4

from loguru import logger

from rewards_api.core.errors import BroadcastNotFound, RecipientUnreachable, RewardsError, TransportError
from rewards_api.core.settings import Settings, settings as default_settings
from rewards_api.models.broadcast import BroadcastJob, BroadcastSegment, BroadcastStatus
from rewards_api.models.common import to_iso, utcnow
from rewards_api.models.user import User
from rewards_api.observability.rewards import RewardsObservabilityStore, get_rewards_store
from rewards_api.services.transport import ChatTransport
from rewards_api.services.users import UserDirectory
from rewards_api.store import KeyValueStore, cas_update
from rewards_api.store import paths

INTERRUPTED_ERROR = "Interrupted before completion"


class CancellationToken:
    """Per-job flag checked by the send loop before every recipient."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class _Progress:
    sent: int = 0
    delivered: int = 0
    failed: int = 0


class _AlreadyTerminal(Exception):
    pass


class BroadcastCoordinator:
    """Runs broadcast jobs as detached asyncio tasks.

    The recipient list is snapshotted once at start. Progress is persisted every
    ``progress_batch_size`` sends and at the terminal transition; terminal writes
    are CAS-guarded so a finished job is never overwritten.
    """

    def __init__(
        self,
        store: KeyValueStore,
        transport: ChatTransport,
        users: UserDirectory,
        *,
        config: Settings | None = None,
        send_delay_seconds: float | None = None,
        progress_batch_size: int | None = None,
        observability: RewardsObservabilityStore | None = None,
    ) -> None:
        config = config or default_settings
        self._store = store
        self._transport = transport
        self._users = users
        self._send_delay = config.broadcast_send_delay_seconds if send_delay_seconds is None else send_delay_seconds
        self._batch_size = max(progress_batch_size or config.broadcast_progress_batch_size, 1)
        self._failure_threshold = config.broadcast_failure_rate_threshold
        self._failure_min_sample = config.broadcast_failure_min_sample
        self._active_window = timedelta(hours=config.broadcast_active_window_hours)
        self._observability = observability or get_rewards_store()
        self._tokens: Dict[str, CancellationToken] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._shutting_down = False

    async def start(self, segment: BroadcastSegment, message: str) -> BroadcastJob:
        if not message.strip():
            raise ValueError("Broadcast message must not be empty")

        job = BroadcastJob(id=uuid4().hex, segment=segment, message=message, created_at=utcnow())
        await self._store.compare_and_swap(paths.broadcast_job(job.id), None, job.to_record())

        targets = await self._select_targets(segment)

        def begin(current: dict[str, Any] | None) -> dict[str, Any]:
            if current is None:
                raise BroadcastNotFound(job.id)
            current["status"] = BroadcastStatus.SENDING.value
            current["total"] = len(targets)
            return current

        result = await cas_update(self._store, paths.broadcast_job(job.id), begin)
        job = BroadcastJob.from_record(job.id, result.current or {})

        token = CancellationToken()
        self._tokens[job.id] = token
        task = asyncio.create_task(self._run(job, targets, token))
        self._tasks[job.id] = task
        task.add_done_callback(lambda _: self._forget(job.id))

        self._observability.record_broadcast_event("started")
        logger.info("Broadcast started", job_id=job.id, segment=segment.value, total=job.total)
        return job

    async def cancel(self, job_id: str) -> BroadcastJob:
        """Request cancellation; finished jobs are returned unchanged."""

        def request(current: dict[str, Any] | None) -> dict[str, Any]:
            if current is None:
                raise BroadcastNotFound(job_id)
            if BroadcastStatus(current["status"]).is_terminal:
                return current
            current["cancel_requested"] = True
            return current

        result = await cas_update(self._store, paths.broadcast_job(job_id), request)
        token = self._tokens.get(job_id)
        if token is not None:
            token.cancel()
        job = BroadcastJob.from_record(job_id, result.current or {})
        if result.changed:
            logger.info("Broadcast cancellation requested", job_id=job_id, sent=job.sent, total=job.total)
        return job

    async def get(self, job_id: str) -> BroadcastJob | None:
        record = await self._store.get(paths.broadcast_job(job_id))
        return BroadcastJob.from_record(job_id, record) if record is not None else None

    async def list_jobs(self, *, limit: int = 20) -> list[BroadcastJob]:
        children = await self._store.list_children(paths.BROADCAST_JOBS)
        jobs = [BroadcastJob.from_record(job_id, record) for job_id, record in children.items()]
        jobs.sort(key=lambda job: job.created_at or datetime.min.replace(tzinfo=timezone.utc), reverse=True)
        return jobs[:limit]

    async def wait(self, job_id: str) -> BroadcastJob | None:
        """Await the local send task for ``job_id`` (no-op if it is not running here)."""

        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.shield(task)
        return await self.get(job_id)

    async def recover_orphaned_jobs(self) -> int:
        """Finalise jobs left pending/sending by a process that died mid-run."""

        recovered = 0
        for job_id, record in (await self._store.list_children(paths.BROADCAST_JOBS)).items():
            if job_id in self._tasks or BroadcastStatus(record.get("status", "pending")).is_terminal:
                continue
            if await self._finalise(job_id, BroadcastStatus.FAILED, progress=None, error=INTERRUPTED_ERROR):
                recovered += 1
                logger.warning("Finalised orphaned broadcast", job_id=job_id, previous_status=record.get("status"))
        if recovered:
            self._observability.record_broadcast_event("recovered", recovered)
        return recovered

    async def shutdown(self) -> None:
        """Stop local send loops; their jobs are finalised as failed."""

        self._shutting_down = True
        for token in self._tokens.values():
            token.cancel()
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _select_targets(self, segment: BroadcastSegment) -> list[str]:
        now = utcnow()
        users = await self._users.list_users()

        def include(user: User) -> bool:
            if user.banned or user.blocked:
                return False
            if segment is BroadcastSegment.ACTIVE:
                return user.last_active is not None and now - user.last_active <= self._active_window
            if segment is BroadcastSegment.VIP:
                return user.is_vip
            return True

        return sorted(user.id for user in users if include(user))

    async def _run(self, job: BroadcastJob, targets: list[str], token: CancellationToken) -> None:
        progress = _Progress()
        status = BroadcastStatus.COMPLETED
        error: str | None = None
        try:
            for recipient_id in targets:
                if token.cancelled:
                    break
                await self._deliver(job, recipient_id, progress)

                if progress.sent % self._batch_size == 0:
                    if not await self._persist_progress(job.id, progress, token):
                        return

                if self._failure_rate_exceeded(progress):
                    status = BroadcastStatus.FAILED
                    error = f"Failure rate exceeded {self._failure_threshold:.0%} after {progress.sent} sends"
                    logger.error("Broadcast aborted on failure rate", job_id=job.id, sent=progress.sent, failed=progress.failed)
                    break

                if self._send_delay:
                    await asyncio.sleep(self._send_delay)

            if status is BroadcastStatus.COMPLETED and token.cancelled and progress.sent < len(targets):
                if self._shutting_down:
                    status, error = BroadcastStatus.FAILED, INTERRUPTED_ERROR
                else:
                    status = BroadcastStatus.CANCELLED
        except Exception as exc:
            status, error = BroadcastStatus.FAILED, str(exc)
            logger.exception("Broadcast worker crashed", job_id=job.id, error=str(exc))

        try:
            await self._finalise(job.id, status, progress=progress, error=error)
        except Exception:
            logger.exception("Broadcast finalisation failed", job_id=job.id, status=status.value)
            return
        self._observability.record_broadcast_event(f"status:{status.value}")
        logger.info(
            "Broadcast finished",
            job_id=job.id,
            status=status.value,
            total=len(targets),
            sent=progress.sent,
            delivered=progress.delivered,
            failed=progress.failed,
        )

    async def _deliver(self, job: BroadcastJob, recipient_id: str, progress: _Progress) -> None:
        try:
            await self._transport.send_message(recipient_id, job.message)
        except RecipientUnreachable as exc:
            progress.failed += 1
            progress.sent += 1
            self._observability.record_broadcast_event("unreachable")
            logger.info("Broadcast recipient unreachable", job_id=job.id, user_id=recipient_id, reason=exc.reason)
            await self._mark_blocked(job.id, recipient_id)
        except TransportError as exc:
            progress.failed += 1
            progress.sent += 1
            self._observability.record_broadcast_event("failed")
            logger.warning("Broadcast send failed", job_id=job.id, user_id=recipient_id, error=str(exc))
        else:
            progress.delivered += 1
            progress.sent += 1
            self._observability.record_broadcast_event("delivered")

    async def _mark_blocked(self, job_id: str, recipient_id: str) -> None:
        try:
            await self._users.mark_blocked(recipient_id)
        except RewardsError as exc:
            logger.warning(
                "Could not mark broadcast recipient blocked",
                job_id=job_id,
                user_id=recipient_id,
                error=str(exc),
            )

    def _failure_rate_exceeded(self, progress: _Progress) -> bool:
        if progress.sent < max(self._failure_min_sample, 1):
            return False
        return progress.failed / progress.sent > self._failure_threshold

    async def _persist_progress(self, job_id: str, progress: _Progress, token: CancellationToken) -> bool:
        """Write counters; returns False if the job was finalised elsewhere."""

        def write(current: dict[str, Any] | None) -> dict[str, Any]:
            if current is None:
                raise BroadcastNotFound(job_id)
            if BroadcastStatus(current["status"]).is_terminal:
                raise _AlreadyTerminal()
            current.update(sent=progress.sent, delivered=progress.delivered, failed=progress.failed)
            return current

        try:
            result = await cas_update(self._store, paths.broadcast_job(job_id), write)
        except _AlreadyTerminal:
            logger.warning("Broadcast finalised elsewhere, stopping local loop", job_id=job_id)
            return False
        if (result.current or {}).get("cancel_requested"):
            token.cancel()
        return True

    async def _finalise(
        self,
        job_id: str,
        status: BroadcastStatus,
        *,
        progress: _Progress | None,
        error: str | None,
    ) -> bool:
        def finish(current: dict[str, Any] | None) -> dict[str, Any]:
            if current is None:
                raise BroadcastNotFound(job_id)
            if BroadcastStatus(current["status"]).is_terminal:
                raise _AlreadyTerminal()
            if progress is not None:
                current.update(sent=progress.sent, delivered=progress.delivered, failed=progress.failed)
            current["status"] = status.value
            current["completed_at"] = to_iso(utcnow())
            current["error"] = error
            return current

        try:
            await cas_update(self._store, paths.broadcast_job(job_id), finish, max_attempts=10)
        except _AlreadyTerminal:
            return False
        return True

    def _forget(self, job_id: str) -> None:
        self._tasks.pop(job_id, None)
        self._tokens.pop(job_id, None)
