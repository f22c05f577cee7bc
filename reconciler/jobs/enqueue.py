"""Enqueue scan: turn missing or stale canonical attributes into queue tasks.

Only check-type kinds (availability, popularity stats) are subject to staleness,
each on its own window; fill-type kinds are planned whenever a target attribute
is still empty. Manual values are never planned.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from reconciler.jobs.availability import DEFAULT_AVAILABILITY_PROVIDER
from reconciler.jobs.facts import CATALOG_FACT_FIELDS, OFFICIAL_URL_FIELD
from reconciler.jobs.freshness import check_skip_reason
from reconciler.jobs.stats import AIRING_STATUSES, STATS_FRESHNESS_FIELD, STATS_SOURCE
from reconciler.schemas.tasks import CHECK_TASK_KINDS, TASK_KINDS
from reconciler.schemas.works import SCORE_KEYS, CanonicalWork, availability_attribute, can_overwrite, score_attribute

logger = logging.getLogger(__name__)

PRIORITY_NEVER_CHECKED = 8
PRIORITY_AIRING_RECHECK = 6
PRIORITY_RECHECK = 5


@dataclass(slots=True)
class PlannedTask:
    kind: str
    payload: dict[str, Any]
    priority: int


@dataclass(slots=True)
class EnqueueSummary:
    scanned: int = 0
    enqueued: int = 0
    already_queued: int = 0
    skipped: Counter[str] = field(default_factory=Counter)

    def as_dict(self) -> dict[str, Any]:
        return {
            "scanned": self.scanned,
            "enqueued": self.enqueued,
            "already_queued": self.already_queued,
            "skipped": dict(self.skipped),
        }


def plan_tasks(
    work: CanonicalWork,
    *,
    kinds: Iterable[str] = TASK_KINDS,
    now: datetime | None = None,
    freshness_days: float = 7.0,
    stats_freshness_days: float = 30.0,
    region: str = "JP",
    resolution_source: str = "anilist",
    official_url_search: bool = False,
    force: bool = False,
) -> tuple[list[PlannedTask], list[str]]:
    """Return the tasks ``work`` needs and the skip reasons for the ones it does not."""
    current = now or datetime.now(timezone.utc)
    wanted = set(kinds)
    planned: list[PlannedTask] = []
    skipped: list[str] = []

    if "resolve-id" in wanted:
        sources = [resolution_source]
        if "check-availability" in wanted and DEFAULT_AVAILABILITY_PROVIDER not in sources:
            sources.append(DEFAULT_AVAILABILITY_PROVIDER)
        if "refresh-stats" in wanted and STATS_SOURCE not in sources:
            sources.append(STATS_SOURCE)
        for source in sources:
            if work.external_ids.get(source) and not force:
                skipped.append("resolve-id:linked")
                continue
            planned.append(PlannedTask("resolve-id", {"source": source}, PRIORITY_NEVER_CHECKED))

    if "fetch-facts" in wanted:
        if not any(can_overwrite(work.attribute(name), force=force) for name in CATALOG_FACT_FIELDS):
            skipped.append("fetch-facts:complete")
        elif not work.external_ids.get(resolution_source):
            skipped.append("fetch-facts:unresolved")
        else:
            planned.append(PlannedTask("fetch-facts", {"source": resolution_source}, PRIORITY_RECHECK))
        if official_url_search:
            if can_overwrite(work.attribute(OFFICIAL_URL_FIELD), force=force):
                planned.append(PlannedTask("fetch-facts", {"source": "web"}, PRIORITY_RECHECK))
            else:
                skipped.append("fetch-facts:official_url")

    checks: list[PlannedTask | str] = []
    if "check-availability" in wanted:
        checks.append(
            _plan_check(
                work,
                kind="check-availability",
                source=DEFAULT_AVAILABILITY_PROVIDER,
                attribute_name=availability_attribute(DEFAULT_AVAILABILITY_PROVIDER, region),
                payload={"provider": DEFAULT_AVAILABILITY_PROVIDER, "region": region.upper()},
                now=current,
                freshness_days=freshness_days,
                force=force,
            )
        )
    if "refresh-stats" in wanted:
        airing = str(work.value("status") or "").lower() in AIRING_STATUSES
        checks.append(
            _plan_check(
                work,
                kind="refresh-stats",
                source=STATS_SOURCE,
                attribute_name=STATS_FRESHNESS_FIELD,
                payload={},
                now=current,
                freshness_days=stats_freshness_days,
                force=force,
                recheck_priority=PRIORITY_AIRING_RECHECK if airing else PRIORITY_RECHECK,
            )
        )
    for planned_or_reason in checks:
        if isinstance(planned_or_reason, PlannedTask):
            planned.append(planned_or_reason)
        else:
            skipped.append(planned_or_reason)

    if "generate-score" in wanted:
        if any(can_overwrite(work.attribute(score_attribute(key)), force=force) for key in SCORE_KEYS):
            planned.append(PlannedTask("generate-score", {}, PRIORITY_RECHECK))
        else:
            skipped.append("generate-score:complete")

    return planned, skipped


def _plan_check(
    work: CanonicalWork,
    *,
    kind: str,
    source: str,
    attribute_name: str,
    payload: dict[str, Any],
    now: datetime,
    freshness_days: float,
    force: bool,
    recheck_priority: int = PRIORITY_RECHECK,
) -> PlannedTask | str:
    if kind not in CHECK_TASK_KINDS:
        raise ValueError(f"{kind} is not a check-type task")
    if not work.external_ids.get(source):
        return f"{kind}:unresolved"
    attribute = work.attribute(attribute_name)
    reason = check_skip_reason(attribute, freshness_days=freshness_days, now=now, force=force)
    if reason is not None:
        return f"{kind}:{reason}"
    priority = PRIORITY_NEVER_CHECKED if attribute is None else recheck_priority
    return PlannedTask(kind, payload, priority)


async def enqueue_scan(
    store: Any,
    *,
    kinds: Iterable[str] = TASK_KINDS,
    limit: int = 500,
    offset: int = 0,
    batch_size: int = 100,
    now: datetime | None = None,
    freshness_days: float = 7.0,
    stats_freshness_days: float = 30.0,
    region: str = "JP",
    resolution_source: str = "anilist",
    official_url_search: bool = False,
    force: bool = False,
    dry_run: bool = False,
) -> EnqueueSummary:
    summary = EnqueueSummary()
    wanted = list(kinds)
    remaining = max(0, limit)
    cursor = max(0, offset)

    while remaining > 0:
        works = await store.list_works(limit=min(batch_size, remaining), offset=cursor)
        if not works:
            break
        cursor += len(works)
        remaining -= len(works)

        for work in works:
            summary.scanned += 1
            planned, skipped = plan_tasks(
                work,
                kinds=wanted,
                now=now,
                freshness_days=freshness_days,
                stats_freshness_days=stats_freshness_days,
                region=region,
                resolution_source=resolution_source,
                official_url_search=official_url_search,
                force=force,
            )
            summary.skipped.update(skipped)
            for item in planned:
                payload = {**item.payload, "force": True} if force else item.payload
                if dry_run:
                    summary.enqueued += 1
                    continue
                task_id = await store.enqueue(work.id, item.kind, payload, item.priority)
                if task_id is None:
                    summary.already_queued += 1
                else:
                    summary.enqueued += 1

    logger.info("enqueue scan finished: %s", summary.as_dict())
    return summary
