import asyncio
from datetime import timedelta

import pytest

from rewards_api.core.errors import BroadcastNotFound, StoreUnavailable
from rewards_api.models.broadcast import BroadcastSegment, BroadcastStatus
from rewards_api.models.common import to_iso, utcnow
from rewards_api.services.broadcast import BroadcastCoordinator
from rewards_api.services.broadcast.coordinator import INTERRUPTED_ERROR
from rewards_api.store import paths


async def _wait_until_sent(coordinator: BroadcastCoordinator, job_id: str, minimum: int) -> None:
    for _ in range(2000):
        job = await coordinator.get(job_id)
        if job.sent >= minimum or job.status.is_terminal:
            return
        await asyncio.sleep(0.001)
    raise AssertionError(f"broadcast {job_id} never reached {minimum} sends")


@pytest.mark.asyncio
async def test_broadcast_completes_and_reconciles_counters(services, make_user, transport, observability) -> None:
    for user_id in range(1, 26):
        await make_user(str(user_id))
    transport.unreachable.update({"3", "7"})
    transport.flaky.add("11")

    job = await services.broadcasts.start(BroadcastSegment.ALL, "Hello everyone")
    assert job.status is BroadcastStatus.SENDING
    assert job.total == 25

    finished = await services.broadcasts.wait(job.id)

    assert finished.status is BroadcastStatus.COMPLETED
    assert finished.sent == 25
    assert finished.delivered == 22
    assert finished.failed == 3
    assert finished.sent == finished.delivered + finished.failed
    assert len(transport.messages_for("1")) == 1
    assert (await services.users.require("3")).blocked is True
    assert (await services.users.require("11")).blocked is False
    assert observability.snapshot().broadcasts["unreachable"] == 2


@pytest.mark.asyncio
async def test_cancel_mid_run_stops_sending(store, transport, services, make_user, config, observability) -> None:
    for user_id in range(1, 101):
        await make_user(str(user_id))
    coordinator = BroadcastCoordinator(
        store,
        transport,
        services.users,
        config=config,
        send_delay_seconds=0.001,
        progress_batch_size=10,
        observability=observability,
    )

    job = await coordinator.start(BroadcastSegment.ALL, "Flash sale")
    await _wait_until_sent(coordinator, job.id, 30)
    await coordinator.cancel(job.id)
    finished = await coordinator.wait(job.id)

    assert finished.status is BroadcastStatus.CANCELLED
    assert 30 <= finished.sent < 100
    assert finished.sent == finished.delivered + finished.failed
    assert len(transport.sent_messages) == finished.delivered
    assert finished.cancel_requested is True


@pytest.mark.asyncio
async def test_cancel_unknown_and_finished_jobs(services, make_user) -> None:
    await make_user("1")
    with pytest.raises(BroadcastNotFound):
        await services.broadcasts.cancel("missing")

    job = await services.broadcasts.start(BroadcastSegment.ALL, "Done soon")
    await services.broadcasts.wait(job.id)
    after = await services.broadcasts.cancel(job.id)

    assert after.status is BroadcastStatus.COMPLETED
    assert after.cancel_requested is False


@pytest.mark.asyncio
async def test_segments_exclude_banned_blocked_and_inactive_users(services, make_user, transport) -> None:
    recent = to_iso(utcnow() - timedelta(hours=1))
    stale = to_iso(utcnow() - timedelta(days=5))
    await make_user("1", last_active=recent, vip_tier="silver")
    await make_user("2", last_active=stale)
    await make_user("3", last_active=recent, banned=True)
    await make_user("4", last_active=recent, blocked=True)
    await make_user("5", last_active=recent)

    active = await services.broadcasts.wait((await services.broadcasts.start(BroadcastSegment.ACTIVE, "a")).id)
    vip = await services.broadcasts.wait((await services.broadcasts.start(BroadcastSegment.VIP, "v")).id)
    everyone = await services.broadcasts.wait((await services.broadcasts.start(BroadcastSegment.ALL, "e")).id)

    assert active.total == 2
    assert vip.total == 1
    assert everyone.total == 3
    assert transport.messages_for("3") == []
    assert transport.messages_for("4") == []


@pytest.mark.asyncio
async def test_failure_rate_aborts_job(store, transport, services, make_user, config, observability) -> None:
    for user_id in range(1, 21):
        await make_user(str(user_id))
        transport.unreachable.add(str(user_id))
    coordinator = BroadcastCoordinator(
        store,
        transport,
        services.users,
        config=config.model_copy(update={"broadcast_failure_min_sample": 5}),
        observability=observability,
    )

    job = await coordinator.start(BroadcastSegment.ALL, "Anyone there?")
    finished = await coordinator.wait(job.id)

    assert finished.status is BroadcastStatus.FAILED
    assert finished.sent == 5
    assert finished.failed == 5
    assert "Failure rate" in finished.error


@pytest.mark.asyncio
async def test_empty_message_is_rejected(services) -> None:
    with pytest.raises(ValueError):
        await services.broadcasts.start(BroadcastSegment.ALL, "   ")


@pytest.mark.asyncio
async def test_orphaned_jobs_are_finalised_as_failed(services, store) -> None:
    await store.put(paths.broadcast_job("orphan"), {"segment": "all", "message": "hi", "status": "sending", "total": 10, "sent": 4})
    await store.put(paths.broadcast_job("done"), {"segment": "all", "message": "hi", "status": "completed", "total": 1, "sent": 1})

    recovered = await services.broadcasts.recover_orphaned_jobs()

    assert recovered == 1
    orphan = await services.broadcasts.get("orphan")
    assert orphan.status is BroadcastStatus.FAILED
    assert orphan.error == INTERRUPTED_ERROR
    assert orphan.sent == 4
    assert (await services.broadcasts.get("done")).status is BroadcastStatus.COMPLETED


@pytest.mark.asyncio
async def test_shutdown_interrupts_running_jobs(store, transport, services, make_user, config, observability) -> None:
    for user_id in range(1, 51):
        await make_user(str(user_id))
    coordinator = BroadcastCoordinator(
        store,
        transport,
        services.users,
        config=config,
        send_delay_seconds=0.005,
        observability=observability,
    )

    job = await coordinator.start(BroadcastSegment.ALL, "Going down")
    await _wait_until_sent(coordinator, job.id, 10)
    await coordinator.shutdown()

    finished = await coordinator.get(job.id)
    assert finished.status is BroadcastStatus.FAILED
    assert finished.error == INTERRUPTED_ERROR
    assert finished.sent < 50


@pytest.mark.asyncio
async def test_failed_block_marking_does_not_fail_the_job(services, make_user, transport, monkeypatch) -> None:
    for user_id in ("1", "2", "3"):
        await make_user(user_id)
    transport.unreachable.add("2")

    async def broken_mark_blocked(user_id):
        raise StoreUnavailable("store down")

    monkeypatch.setattr(services.users, "mark_blocked", broken_mark_blocked)

    job = await services.broadcasts.start(BroadcastSegment.ALL, "Hello")
    finished = await services.broadcasts.wait(job.id)

    assert finished.status is BroadcastStatus.COMPLETED
    assert finished.sent == 3
    assert finished.delivered == 2
    assert finished.failed == 1
    assert len(transport.messages_for("3")) == 1


@pytest.mark.asyncio
async def test_cancel_written_by_another_process_stops_the_loop(store, transport, services, make_user, config, observability) -> None:
    for user_id in range(1, 101):
        await make_user(str(user_id))
    coordinator = BroadcastCoordinator(
        store,
        transport,
        services.users,
        config=config,
        send_delay_seconds=0.001,
        progress_batch_size=5,
        observability=observability,
    )
    other_process = BroadcastCoordinator(store, transport, services.users, config=config, observability=observability)

    job = await coordinator.start(BroadcastSegment.ALL, "Flash sale")
    await _wait_until_sent(coordinator, job.id, 20)
    requested = await other_process.cancel(job.id)
    finished = await coordinator.wait(job.id)

    assert requested.cancel_requested is True
    assert finished.status is BroadcastStatus.CANCELLED
    assert finished.sent < finished.total == 100
    assert finished.sent == finished.delivered + finished.failed


@pytest.mark.asyncio
async def test_finalise_failure_is_logged_not_raised(services, make_user, monkeypatch) -> None:
    await make_user("1")
    coordinator = services.broadcasts

    async def broken_finalise(*args, **kwargs):
        raise StoreUnavailable("store down")

    monkeypatch.setattr(coordinator, "_finalise", broken_finalise)

    job = await coordinator.start(BroadcastSegment.ALL, "Hello")
    task = coordinator._tasks[job.id]
    await asyncio.gather(task)
    await asyncio.sleep(0)

    assert task.exception() is None
    assert job.id not in coordinator._tasks
