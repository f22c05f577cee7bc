from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from reconciler.core.config import Settings
from reconciler.core.errors import ConfigurationError, RepositoryNotFoundError
from reconciler.schemas.tasks import QueueTask
from reconciler.schemas.works import CanonicalWork
from reconciler.services.providers.base import SourceProvider
from reconciler.services.resolver import DEFAULT_POLICY, ResolutionPolicy


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class TaskOutcome:
    outcome: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_result(self) -> dict[str, Any]:
        return {"outcome": self.outcome, **self.details}


@dataclass(slots=True)
class TaskContext:
    """Everything a handler needs besides the task itself."""

    store: Any
    providers: Mapping[str, SourceProvider]
    policy: ResolutionPolicy = DEFAULT_POLICY
    resolution_source: str = "anilist"
    availability_region: str = "JP"
    freshness_days: float = 7.0
    stats_freshness_days: float = 30.0
    force_overwrite: bool = False
    clock: Callable[[], datetime] = _utcnow

    @classmethod
    def from_settings(cls, store: Any, providers: Mapping[str, SourceProvider], settings: Settings) -> TaskContext:
        return cls(
            store=store,
            providers=providers,
            policy=ResolutionPolicy(
                near_certain=settings.resolver_near_certain,
                confident=settings.resolver_confident,
                confident_gap=settings.resolver_confident_gap,
                gap_ladder=tuple((float(threshold), float(gap)) for threshold, gap in settings.resolver_gap_ladder),
                exact_rescue=settings.resolver_exact_rescue,
                lone_candidate_rescue=settings.resolver_lone_candidate_rescue,
                short_ascii_max_length=settings.resolver_short_ascii_max_length,
                candidates_to_keep=settings.resolver_candidates_to_keep,
                year_match_bonus=settings.resolver_year_match_bonus,
                series_preference_margin=settings.resolver_series_preference_margin,
                series_min_episodes=settings.resolver_series_min_episodes,
            ),
            resolution_source=settings.resolution_source,
            availability_region=settings.availability_region.upper(),
            freshness_days=settings.freshness_days,
            stats_freshness_days=settings.stats_freshness_days,
            force_overwrite=settings.force_overwrite,
        )

    def provider(self, name: str, capability: str) -> SourceProvider:
        provider = self.providers.get(name)
        if provider is None or capability not in provider.capabilities:
            raise ConfigurationError(f"provider {name!r} with {capability!r} is not configured")
        return provider

    def force_for(self, task: QueueTask) -> bool:
        return self.force_overwrite or bool(task.payload.get("force"))


async def load_subject(task: QueueTask, context: TaskContext) -> CanonicalWork | None:
    try:
        return await context.store.get_work(task.subject_id)
    except RepositoryNotFoundError:
        return None


def missing_subject(task: QueueTask) -> TaskOutcome:
    return TaskOutcome("missing_subject", {"subject_id": task.subject_id})
