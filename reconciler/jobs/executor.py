from __future__ import annotations

from reconciler.jobs.availability import execute_check_availability
from reconciler.jobs.context import TaskContext, TaskOutcome
from reconciler.jobs.facts import execute_fetch_facts
from reconciler.jobs.resolve import execute_resolve_id
from reconciler.jobs.scores import execute_generate_score
from reconciler.jobs.stats import execute_refresh_stats
from reconciler.schemas.tasks import QueueTask


async def execute_task(task: QueueTask, context: TaskContext) -> TaskOutcome:
    if task.kind == "resolve-id":
        return await execute_resolve_id(task, context)
    if task.kind == "fetch-facts":
        return await execute_fetch_facts(task, context)
    if task.kind == "check-availability":
        return await execute_check_availability(task, context)
    if task.kind == "refresh-stats":
        return await execute_refresh_stats(task, context)
    if task.kind == "generate-score":
        return await execute_generate_score(task, context)

    return TaskOutcome("unsupported_kind", {"kind": task.kind})
