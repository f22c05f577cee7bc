import asyncio
from datetime import datetime, timedelta, timezone

from reconciler.jobs.lease_reaper import claim_expired, reap_abandoned, should_requeue
from reconciler.schemas.tasks import QueueTask
from reconciler.services.store import InMemoryStore


def _task(status: str, claimed_ago: timedelta | None, now: datetime) -> QueueTask:
    return QueueTask(
        id="task-1",
        subject_id="work-1",
        kind="resolve-id",
        status=status,
        claimed_at=now - claimed_ago if claimed_ago is not None else None,
    )


def test_should_requeue_when_claim_expired() -> None:
    now = datetime.now(timezone.utc)
    task = _task("claimed", timedelta(seconds=905), now)
    assert should_requeue(task, claim_timeout_seconds=900, now=now)


def test_should_not_requeue_inside_timeout() -> None:
    now = datetime.now(timezone.utc)
    task = _task("claimed", timedelta(seconds=30), now)
    assert not should_requeue(task, claim_timeout_seconds=900, now=now)


def test_should_not_requeue_when_not_claimed() -> None:
    now = datetime.now(timezone.utc)
    task = _task("done", timedelta(hours=2), now)
    assert claim_expired(task, claim_timeout_seconds=900, now=now)
    assert not should_requeue(task, claim_timeout_seconds=900, now=now)
    assert not claim_expired(_task("pending", None, now), claim_timeout_seconds=900, now=now)


def test_reap_abandoned_returns_requeued_count() -> None:
    now = datetime(2024, 4, 1, 12, 0, tzinfo=timezone.utc)
    clock = {"now": now}
    store = InMemoryStore(clock=lambda: clock["now"])

    async def run() -> tuple[int, QueueTask]:
        task_id = await store.enqueue("work-1", "resolve-id", {"source": "anilist"})
        await store.claim("crashed-worker")
        clock["now"] = now + timedelta(minutes=20)
        requeued = await reap_abandoned(store, claim_timeout_seconds=900, limit=10)
        return requeued, await store.get_task(task_id)

    requeued, task = asyncio.run(run())
    assert requeued == 1
    assert task.status == "pending"
    assert task.claimed_by is None
