from __future__ import annotations

import logging

from reconciler.core.errors import ConflictError
from reconciler.jobs.context import TaskContext, TaskOutcome, load_subject, missing_subject
from reconciler.schemas.tasks import QueueTask
from reconciler.schemas.works import ResolutionCandidate
from reconciler.services.providers.base import CAPABILITY_SEARCH, as_int
from reconciler.services.resolver import ResolutionDecision, resolve_title

logger = logging.getLogger(__name__)


async def execute_resolve_id(task: QueueTask, context: TaskContext) -> TaskOutcome:
    work = await load_subject(task, context)
    if work is None:
        return missing_subject(task)

    source = str(task.payload.get("source") or context.resolution_source)
    force = context.force_for(task)
    current = work.external_ids.get(source)
    if current and not force:
        return TaskOutcome("skipped_existing", {"source": source, "external_id": current})

    provider = context.provider(source, CAPABILITY_SEARCH)
    decision = await resolve_title(
        work.title,
        provider.search,
        policy=context.policy,
        year=as_int(work.value("start_year")),
        episode_count=as_int(work.value("episode_count")),
    )
    details = {"source": source, **decision.summary()}

    if decision.action == "none" or decision.best is None:
        return TaskOutcome("not_found", details)

    if decision.action == "defer":
        saved = await _save_candidates(context, work.id, source, decision)
        logger.info(
            "resolution deferred work=%s source=%s top=%.3f gap=%.3f",
            work.id,
            source,
            decision.top_score,
            decision.gap,
        )
        return TaskOutcome("deferred", {**details, "candidates_saved": saved})

    try:
        link = await context.store.link_external_id(work.id, source, decision.best.external_id, replace=force)
    except ConflictError as exc:
        saved = await _save_candidates(context, work.id, source, decision)
        logger.warning(
            "resolution duplicate work=%s %s:%s already owned by %s",
            work.id,
            source,
            exc.external_id,
            exc.owner_work_id,
        )
        return TaskOutcome("duplicate", {**details, "owner_work_id": exc.owner_work_id, "candidates_saved": saved})

    return TaskOutcome("linked", {**details, "link_status": link.status})


async def _save_candidates(context: TaskContext, work_id: str, source: str, decision: ResolutionDecision) -> int:
    rows = [
        ResolutionCandidate(
            work_id=work_id,
            source=source,
            external_id=scored.external_id,
            score=round(scored.score, 4),
            query_term=decision.term,
            names=list(scored.candidate.names),
        )
        for scored in decision.top(context.policy.candidates_to_keep)
    ]
    if not rows:
        return 0
    return await context.store.save_resolution_candidates(work_id, rows)
