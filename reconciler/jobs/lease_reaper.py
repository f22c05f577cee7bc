from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from reconciler.schemas.tasks import QueueTask

logger = logging.getLogger(__name__)


def claim_expired(task: QueueTask, *, claim_timeout_seconds: int, now: datetime | None = None) -> bool:
    if task.claimed_at is None:
        return False
    now = now or datetime.now(timezone.utc)
    return task.claimed_at + timedelta(seconds=max(0, claim_timeout_seconds)) <= now


def should_requeue(task: QueueTask, *, claim_timeout_seconds: int, now: datetime | None = None) -> bool:
    return task.status == "claimed" and claim_expired(task, claim_timeout_seconds=claim_timeout_seconds, now=now)


async def reap_abandoned(store: Any, *, claim_timeout_seconds: int, limit: int) -> int:
    requeued = await store.requeue_abandoned(claim_timeout_seconds, limit)
    if requeued:
        logger.info("requeued abandoned claims: %s", requeued)
    return requeued
