from __future__ import annotations

from reconciler.core.errors import AmbiguousDataError, NotFoundError
from reconciler.jobs.context import TaskContext, TaskOutcome, load_subject, missing_subject
from reconciler.jobs.freshness import check_skip_reason
from reconciler.schemas.tasks import QueueTask
from reconciler.schemas.works import availability_attribute
from reconciler.services.providers.base import CAPABILITY_AVAILABILITY

DEFAULT_AVAILABILITY_PROVIDER = "tmdb"


async def execute_check_availability(task: QueueTask, context: TaskContext) -> TaskOutcome:
    work = await load_subject(task, context)
    if work is None:
        return missing_subject(task)

    provider_name = str(task.payload.get("provider") or DEFAULT_AVAILABILITY_PROVIDER)
    region = str(task.payload.get("region") or context.availability_region).upper()
    attribute_name = availability_attribute(provider_name, region)
    details = {"provider": provider_name, "region": region, "attribute": attribute_name}

    skip_reason = check_skip_reason(
        work.attribute(attribute_name),
        freshness_days=context.freshness_days,
        now=context.clock(),
        force=context.force_for(task),
    )
    if skip_reason is not None:
        return TaskOutcome(f"skipped_{skip_reason}", details)

    external_id = work.external_ids.get(provider_name)
    if not external_id:
        return TaskOutcome("unresolved", details)

    provider = context.provider(provider_name, CAPABILITY_AVAILABILITY)
    try:
        offers = await provider.fetch_availability(external_id, region)
    except NotFoundError:
        await context.store.set_attribute(work.id, attribute_name, [], source=provider_name, conclusive=False)
        return TaskOutcome("not_found", details)
    except AmbiguousDataError as exc:
        await context.store.set_attribute(work.id, attribute_name, [], source=provider_name, conclusive=False)
        return TaskOutcome("ambiguous", {**details, "reason": str(exc)})

    await context.store.set_attribute(
        work.id,
        attribute_name,
        [offer.model_dump() for offer in offers],
        source=provider_name,
        conclusive=True,
    )
    return TaskOutcome("updated", {**details, "offers": len(offers)})
