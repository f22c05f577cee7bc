from __future__ import annotations

from reconciler.core.errors import NotFoundError
from reconciler.core.titles import canonical_title
from reconciler.jobs.context import TaskContext, TaskOutcome, load_subject, missing_subject
from reconciler.schemas.tasks import QueueTask
from reconciler.schemas.works import FACT_FIELDS, CanonicalWork, can_overwrite
from reconciler.services.providers.base import CAPABILITY_DETAILS, CAPABILITY_SEARCH
from reconciler.services.providers.web_search import pick_official_url

OFFICIAL_URL_FIELD = "official_url"
CATALOG_FACT_FIELDS = tuple(field for field in FACT_FIELDS if field != OFFICIAL_URL_FIELD)
OFFICIAL_SITE_QUERY_SUFFIX = "アニメ 公式サイト"


async def execute_fetch_facts(task: QueueTask, context: TaskContext) -> TaskOutcome:
    work = await load_subject(task, context)
    if work is None:
        return missing_subject(task)

    source = str(task.payload.get("source") or "anilist")
    if source == "web":
        return await _fill_official_url(work, context, force=context.force_for(task))

    force = context.force_for(task)
    writable = [field for field in CATALOG_FACT_FIELDS if can_overwrite(work.attribute(field), force=force)]
    if not writable:
        return _nothing_to_write(work, CATALOG_FACT_FIELDS, source)

    external_id = work.external_ids.get(source)
    if not external_id:
        return TaskOutcome("unresolved", {"source": source})

    provider = context.provider(source, CAPABILITY_DETAILS)
    try:
        facts = await provider.fetch_details(external_id)
    except NotFoundError:
        return TaskOutcome("not_found", {"source": source, "external_id": external_id})

    written = await context.store.patch_work(
        work.id,
        {field: facts.get(field) for field in writable},
        source=source,
        force=force,
    )
    return TaskOutcome(
        "updated" if written else "no_change",
        {"source": source, "external_id": external_id, "fields": written},
    )


async def _fill_official_url(work: CanonicalWork, context: TaskContext, *, force: bool) -> TaskOutcome:
    if not can_overwrite(work.attribute(OFFICIAL_URL_FIELD), force=force):
        return _nothing_to_write(work, (OFFICIAL_URL_FIELD,), "web")

    title = canonical_title(work.title) or work.title
    provider = context.provider("web", CAPABILITY_SEARCH)
    hits = await provider.search(f"{title} {OFFICIAL_SITE_QUERY_SUFFIX}")
    url = pick_official_url(hits, title)
    if url is None:
        return TaskOutcome("not_found", {"source": "web", "hits": len(hits)})

    written = await context.store.patch_work(work.id, {OFFICIAL_URL_FIELD: url}, source="web", force=force)
    return TaskOutcome("updated" if written else "no_change", {"source": "web", "official_url": url})


def _nothing_to_write(work: CanonicalWork, fields: tuple[str, ...], source: str) -> TaskOutcome:
    manual = [field for field in fields if work.attribute(field) is not None and work.attribute(field).is_manual]
    outcome = "skipped_manual" if manual else "skipped_existing"
    return TaskOutcome(outcome, {"source": source, "manual_fields": manual})
