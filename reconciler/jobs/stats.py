"""Periodic popularity and favourites refresh.

Catalog facts are fill-empty-only, so counters that keep moving after a work is
first filled are re-read here on their own freshness window. Airing titles are
refreshed first by the enqueue scan.
"""

from __future__ import annotations

import logging

from reconciler.core.errors import NotFoundError
from reconciler.jobs.context import TaskContext, TaskOutcome, load_subject, missing_subject
from reconciler.jobs.freshness import check_skip_reason
from reconciler.schemas.tasks import QueueTask
from reconciler.services.providers.base import CAPABILITY_DETAILS

logger = logging.getLogger(__name__)

STATS_SOURCE = "anilist"
STATS_FIELDS: tuple[str, ...] = ("popularity", "favourites")
# Checked-at of this attribute decides whether the pair is stale.
STATS_FRESHNESS_FIELD = "popularity"
AIRING_STATUSES = frozenset({"releasing", "not_yet_released"})


async def execute_refresh_stats(task: QueueTask, context: TaskContext) -> TaskOutcome:
    work = await load_subject(task, context)
    if work is None:
        return missing_subject(task)

    force = context.force_for(task)
    details = {"source": STATS_SOURCE}
    skip_reason = check_skip_reason(
        work.attribute(STATS_FRESHNESS_FIELD),
        freshness_days=context.stats_freshness_days,
        now=context.clock(),
        force=force,
    )
    if skip_reason is not None:
        return TaskOutcome(f"skipped_{skip_reason}", details)

    external_id = work.external_ids.get(STATS_SOURCE)
    if not external_id:
        return TaskOutcome("unresolved", details)
    details["external_id"] = external_id

    provider = context.provider(STATS_SOURCE, CAPABILITY_DETAILS)
    try:
        facts = await provider.fetch_details(external_id)
    except NotFoundError:
        return TaskOutcome("not_found", details)

    written: list[str] = []
    for name in STATS_FIELDS:
        value = facts.get(name)
        existing = work.attribute(name)
        if value is None or (existing is not None and existing.is_manual and not force):
            continue
        await context.store.set_attribute(work.id, name, value, source=STATS_SOURCE, conclusive=True)
        written.append(name)

    logger.info(
        "stats refreshed work=%s popularity=%s favourites=%s",
        work.id,
        facts.get("popularity"),
        facts.get("favourites"),
    )
    return TaskOutcome(
        "updated" if written else "no_change",
        {**details, "fields": written, **{name: facts.get(name) for name in STATS_FIELDS}},
    )
