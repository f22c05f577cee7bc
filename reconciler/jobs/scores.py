from __future__ import annotations

import json

from reconciler.core.titles import canonical_title
from reconciler.jobs.context import TaskContext, TaskOutcome, load_subject, missing_subject
from reconciler.schemas.scores import parse_scores
from reconciler.schemas.tasks import QueueTask
from reconciler.schemas.works import FACT_FIELDS, SCORE_KEYS, CanonicalWork, can_overwrite, score_attribute
from reconciler.services.providers.base import CAPABILITY_SCORING

SCORING_PROVIDER = "openai"


def build_score_prompt(work: CanonicalWork, keys: list[str]) -> str:
    facts = {field: work.value(field) for field in FACT_FIELDS if work.value(field) is not None}
    template = {key: 0 for key in keys}
    return "\n".join(
        [
            f"Title: {canonical_title(work.title) or work.title}",
            f"Facts: {json.dumps(facts, ensure_ascii=False, default=str)}",
            "Rate the work on each key from 0 (none) to 5 (very strong).",
            f"Answer with exactly these keys: {json.dumps(template)}",
        ]
    )


def _is_manual(work: CanonicalWork, name: str) -> bool:
    attribute = work.attribute(name)
    return attribute is not None and attribute.is_manual


async def execute_generate_score(task: QueueTask, context: TaskContext) -> TaskOutcome:
    work = await load_subject(task, context)
    if work is None:
        return missing_subject(task)

    requested = task.payload.get("keys") or list(SCORE_KEYS)
    unknown = [key for key in requested if key not in SCORE_KEYS]
    if unknown:
        return TaskOutcome("invalid_payload", {"unknown_keys": unknown})

    force = context.force_for(task)
    targets = [key for key in requested if can_overwrite(work.attribute(score_attribute(key)), force=force)]
    if not targets:
        manual = [key for key in requested if _is_manual(work, score_attribute(key))]
        return TaskOutcome("skipped_manual" if manual else "skipped_existing", {"manual_keys": manual})

    provider = context.provider(SCORING_PROVIDER, CAPABILITY_SCORING)
    text = await provider.score_text(build_score_prompt(work, targets))
    scores = parse_scores(text, targets)

    written = await context.store.patch_work(
        work.id,
        {score_attribute(key): value for key, value in scores.items()},
        source=SCORING_PROVIDER,
        force=force,
    )
    return TaskOutcome("updated" if written else "no_change", {"scores": scores, "fields": written})
