"""Live support: pairs a user with exactly one staff member at a time."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable

from loguru import logger

from rewards_api.core.errors import (
    AlreadyActive,
    AlreadyPending,
    NoActiveSession,
    NotAuthorized,
    RequestStale,
    RewardsError,
    TransportError,
)
from rewards_api.core.settings import Settings, settings as default_settings
from rewards_api.models.common import to_iso, utcnow
from rewards_api.models.support import (
    SupportSession,
    SupportStatus,
    Transcript,
    TranscriptEntry,
    TranscriptSender,
)
from rewards_api.models.user import StaffMember
from rewards_api.observability.rewards import RewardsObservabilityStore, get_rewards_store
from rewards_api.services.commands import CommandType, encode_callback
from rewards_api.services.transport import ChatTransport
from rewards_api.store import KeyValueStore, cas_update, next_sequence
from rewards_api.store import paths

REQUEST_SEQUENCE = "support-requests"


class SupportRouter:
    """Session state lives in the store; the participant cache is only a lookup aid.

    Two invariants hold under concurrent accepts: a user has at most one active
    session, and a staff member holds at most one active session. The staff claim
    marker is taken by CAS before the session moves pending -> active; losing the
    session CAS releases the marker.
    """

    def __init__(
        self,
        store: KeyValueStore,
        transport: ChatTransport,
        *,
        config: Settings | None = None,
        observability: RewardsObservabilityStore | None = None,
    ) -> None:
        config = config or default_settings
        self._store = store
        self._transport = transport
        self._admin_ids = [str(admin_id) for admin_id in config.admin_ids]
        self._retention = config.support_transcript_retention
        self._observability = observability or get_rewards_store()
        self._counterparts: Dict[str, str] = {}

    # Staff management

    async def add_staff(self, staff_id: str, name: str) -> StaffMember:
        def upsert(current: dict[str, Any] | None) -> dict[str, Any]:
            if current is None:
                return StaffMember(id=staff_id, name=name, created_at=utcnow()).to_record()
            current["name"] = name
            current["active"] = True
            return current

        result = await cas_update(self._store, paths.staff_member(staff_id), upsert)
        logger.info("Staff member added", staff_id=staff_id, name=name)
        return StaffMember.from_record(staff_id, result.current or {})

    async def deactivate_staff(self, staff_id: str) -> StaffMember:
        def deactivate(current: dict[str, Any] | None) -> dict[str, Any]:
            if current is None:
                raise NotAuthorized(f"{staff_id} is not a staff member")
            current["active"] = False
            return current

        result = await cas_update(self._store, paths.staff_member(staff_id), deactivate)
        logger.info("Staff member deactivated", staff_id=staff_id)
        return StaffMember.from_record(staff_id, result.current or {})

    async def list_staff(self, *, active_only: bool = True) -> list[StaffMember]:
        children = await self._store.list_children(paths.STAFF)
        staff = [StaffMember.from_record(staff_id, record) for staff_id, record in children.items()]
        return [member for member in staff if member.active or not active_only]

    async def get_session(self, user_id: str) -> SupportSession:
        return SupportSession.from_record(user_id, await self._store.get(paths.support_session(user_id)))

    # Session lifecycle

    async def request_support(self, user_id: str, *, user_name: str = "") -> SupportSession:
        request_id = await next_sequence(self._store, paths.sequence(REQUEST_SEQUENCE))
        requested_at = utcnow()

        def open_request(current: dict[str, Any] | None) -> dict[str, Any]:
            status = SupportSession.from_record(user_id, current).status
            if status is SupportStatus.PENDING:
                raise AlreadyPending(f"User {user_id} already has a pending support request")
            if status is SupportStatus.ACTIVE:
                raise AlreadyActive(f"User {user_id} is already in a support session")
            return SupportSession(
                user_id=user_id,
                status=SupportStatus.PENDING,
                request_id=request_id,
                requested_at=requested_at,
            ).to_record()

        result = await cas_update(self._store, paths.support_session(user_id), open_request)
        session = SupportSession.from_record(user_id, result.current)
        self._observability.record_support_event("requested")
        logger.info("Support requested", user_id=user_id, request_id=request_id)

        await self._notify_staff_of_request(session, user_name)
        return session

    async def cancel_request(self, user_id: str) -> SupportSession:
        def cancel(current: dict[str, Any] | None) -> dict[str, Any] | None:
            if SupportSession.from_record(user_id, current).status is not SupportStatus.PENDING:
                raise NoActiveSession(f"User {user_id} has no pending support request")
            return None

        await cas_update(self._store, paths.support_session(user_id), cancel)
        self._observability.record_support_event("request_cancelled")
        logger.info("Support request cancelled", user_id=user_id)
        return SupportSession(user_id=user_id)

    async def accept(self, staff_id: str, user_id: str, request_id: int) -> SupportSession:
        staff = await self._resolve_staff(staff_id)

        current = await self.get_session(user_id)
        if current.status is not SupportStatus.PENDING or current.request_id != int(request_id):
            self._observability.record_support_event("accept_stale")
            raise RequestStale(f"Support request {request_id} for {user_id} is no longer pending")

        await self._take_marker(staff_id, user_id)

        accepted_at = utcnow()
        transcript_id = f"{user_id}-{request_id}"

        def activate(record: dict[str, Any] | None) -> dict[str, Any]:
            session = SupportSession.from_record(user_id, record)
            if session.status is not SupportStatus.PENDING or session.request_id != int(request_id):
                raise RequestStale(f"Support request {request_id} for {user_id} was taken")
            session.status = SupportStatus.ACTIVE
            session.staff_id = staff_id
            session.staff_name = staff.name
            session.accepted_at = accepted_at
            session.transcript_id = transcript_id
            return session.to_record()

        try:
            result = await cas_update(self._store, paths.support_session(user_id), activate)
        except RewardsError:
            await self._release_marker(staff_id, user_id)
            self._observability.record_support_event("accept_stale")
            raise

        transcript = Transcript(id=transcript_id, user_id=user_id, staff_id=staff_id, started_at=accepted_at)
        await self._store.put(paths.transcript(transcript_id), transcript.to_record())

        self._counterparts[user_id] = staff_id
        self._counterparts[staff_id] = user_id
        self._observability.record_support_event("accepted")
        logger.info("Support session accepted", user_id=user_id, staff_id=staff_id, request_id=request_id)

        await self._safe_send(user_id, f"🎧 *{staff.name}* from support has joined. Send your message here.")
        await self._safe_send(
            staff_id,
            f"✅ You are now connected with user `{user_id}`. Use /end to close the session.",
        )
        return SupportSession.from_record(user_id, result.current)

    async def relay_message(self, from_id: str, text: str) -> str:
        """Forward ``text`` to the sender's counterpart; returns the recipient id."""

        session, sender = await self._active_session_for(from_id)
        recipient = session.staff_id if sender is TranscriptSender.USER else session.user_id
        if recipient is None:
            raise NoActiveSession(f"Session for user {session.user_id} has no staff member attached")

        entry = TranscriptEntry(sender=sender, sender_id=from_id, text=text, timestamp=utcnow())
        if session.transcript_id:
            await self._append_transcript(session.transcript_id, entry)

        prefix = "👤 *User:*" if sender is TranscriptSender.USER else f"🎧 *{session.staff_name or 'Support'}:*"
        await self._transport.send_message(recipient, f"{prefix} {text}")
        self._observability.record_support_event("relayed")
        return recipient

    async def end(self, actor_id: str) -> SupportSession:
        user_session = await self.get_session(actor_id)
        if user_session.status.is_open:
            raise NotAuthorized("Only support staff can end a session")

        staff_record = await self._store.get(paths.staff_member(actor_id))
        user_id = (staff_record or {}).get("active_session_user_id")
        if not user_id:
            raise NoActiveSession(f"{actor_id} has no active support session")

        ended_at = utcnow()

        def complete(record: dict[str, Any] | None) -> dict[str, Any]:
            session = SupportSession.from_record(user_id, record)
            if session.status is not SupportStatus.ACTIVE or session.staff_id != actor_id:
                raise NoActiveSession(f"{actor_id} has no active support session")
            session.status = SupportStatus.COMPLETED
            session.ended_at = ended_at
            return session.to_record()

        try:
            result = await cas_update(self._store, paths.support_session(user_id), complete)
        except NoActiveSession:
            await self._release_marker(actor_id, user_id)
            raise
        session = SupportSession.from_record(user_id, result.current)

        if session.transcript_id:
            await self._close_transcript(session.transcript_id, ended_at)
        await self._release_marker(actor_id, user_id)
        self._counterparts.pop(user_id, None)
        self._counterparts.pop(actor_id, None)
        self._observability.record_support_event("ended")
        logger.info("Support session ended", user_id=user_id, staff_id=actor_id)

        await self._safe_send(user_id, "✅ Your support session has ended. Thank you for reaching out!")
        await self._safe_send(actor_id, f"Session with user `{user_id}` closed.")
        await self.prune_transcripts()
        return session

    async def rebuild_cache(self) -> int:
        """Reload the participant lookup from active sessions in the store."""

        self._counterparts.clear()
        for user_id, record in (await self._store.list_children(paths.SUPPORT_SESSIONS)).items():
            session = SupportSession.from_record(user_id, record)
            if session.status is SupportStatus.ACTIVE and session.staff_id:
                self._counterparts[user_id] = session.staff_id
                self._counterparts[session.staff_id] = user_id
        logger.info("Support participant cache rebuilt", active_sessions=len(self._counterparts) // 2)
        return len(self._counterparts) // 2

    async def prune_transcripts(self) -> int:
        index = paths.completed_transcripts_index()
        members = await self._store.index_members(index)
        stale = members[: max(len(members) - self._retention, 0)]
        for transcript_id in stale:
            await self._store.delete(paths.transcript(transcript_id))
            await self._store.index_remove(index, transcript_id)
        if stale:
            logger.info("Pruned support transcripts", removed=len(stale), kept=self._retention)
        return len(stale)

    async def get_transcript(self, transcript_id: str) -> Transcript | None:
        record = await self._store.get(paths.transcript(transcript_id))
        return Transcript.from_record(transcript_id, record) if record is not None else None

    # Internals

    async def _resolve_staff(self, staff_id: str) -> StaffMember:
        record = await self._store.get(paths.staff_member(staff_id))
        if record is None and staff_id in self._admin_ids:
            return await self.add_staff(staff_id, "Admin")
        if record is None or not record.get("active", True):
            raise NotAuthorized(f"{staff_id} is not an active staff member")
        return StaffMember.from_record(staff_id, record)

    async def _take_marker(self, staff_id: str, user_id: str) -> None:
        def take(current: dict[str, Any] | None) -> dict[str, Any]:
            if current is None:
                raise NotAuthorized(f"{staff_id} is not a staff member")
            holder = current.get("active_session_user_id")
            if holder and holder != user_id:
                raise AlreadyActive(f"Staff {staff_id} is already handling user {holder}")
            current["active_session_user_id"] = user_id
            return current

        await cas_update(self._store, paths.staff_member(staff_id), take)

    async def _release_marker(self, staff_id: str, user_id: str) -> None:
        def release(current: dict[str, Any] | None) -> dict[str, Any] | None:
            if current is None or current.get("active_session_user_id") != user_id:
                return current
            current["active_session_user_id"] = None
            return current

        await cas_update(self._store, paths.staff_member(staff_id), release, max_attempts=10)

    async def _active_session_for(self, participant_id: str) -> tuple[SupportSession, TranscriptSender]:
        own = await self.get_session(participant_id)
        if own.status is SupportStatus.ACTIVE:
            return own, TranscriptSender.USER

        user_id = self._counterparts.get(participant_id)
        if user_id is None:
            staff_record = await self._store.get(paths.staff_member(participant_id))
            user_id = (staff_record or {}).get("active_session_user_id")
        if user_id:
            session = await self.get_session(user_id)
            if session.status is SupportStatus.ACTIVE and session.staff_id == participant_id:
                return session, TranscriptSender.STAFF
        raise NoActiveSession(f"{participant_id} is not in an active support session")

    async def _append_transcript(self, transcript_id: str, entry: TranscriptEntry) -> None:
        def append(current: dict[str, Any] | None) -> dict[str, Any] | None:
            if current is None:
                return None
            current.setdefault("entries", []).append(entry.to_record())
            return current

        await cas_update(self._store, paths.transcript(transcript_id), append, max_attempts=10)

    async def _close_transcript(self, transcript_id: str, ended_at: datetime) -> None:
        def close(current: dict[str, Any] | None) -> dict[str, Any] | None:
            if current is None:
                return None
            current["ended_at"] = to_iso(ended_at)
            return current

        await cas_update(self._store, paths.transcript(transcript_id), close)
        await self._store.index_add(paths.completed_transcripts_index(), transcript_id, ended_at.timestamp())

    async def _notify_staff_of_request(self, session: SupportSession, user_name: str) -> None:
        recipients = await self._staff_recipients()
        text = (
            "🆘 *New support request*\n\n"
            f"User: {user_name or session.user_id} (`{session.user_id}`)\n"
            f"Request: #{session.request_id}"
        )
        options = {"buttons": [[("✅ Accept", encode_callback(CommandType.ACCEPT_SUPPORT, session.user_id, session.request_id))]]}
        for recipient in recipients:
            await self._safe_send(recipient, text, options=options)

    async def _staff_recipients(self) -> Iterable[str]:
        recipients = [member.id for member in await self.list_staff()]
        for admin_id in self._admin_ids:
            if admin_id not in recipients:
                recipients.append(admin_id)
        return recipients

    async def _safe_send(self, recipient_id: str, text: str, *, options: dict[str, Any] | None = None) -> None:
        try:
            await self._transport.send_message(recipient_id, text, options=options)
        except TransportError as exc:
            logger.warning("Support notification not delivered", recipient_id=recipient_id, error=str(exc))
