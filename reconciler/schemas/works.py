from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

MANUAL_SOURCE = "manual"

OfferKind = Literal["subscription", "rental", "purchase"]

FACT_FIELDS: tuple[str, ...] = (
    "episode_count",
    "start_year",
    "status",
    "source_material",
    "studio",
    "popularity",
    "favourites",
    "cover_image_url",
    "official_url",
)

SCORE_KEYS: tuple[str, ...] = (
    "battle",
    "story",
    "world",
    "character",
    "animation",
    "gore",
    "ero",
    "romance",
    "emotion",
    "passive_viewing",
)


class WorkAttribute(BaseModel):
    value: Any = None
    source: str | None = None
    checked_at: datetime | None = None
    conclusive: bool = True

    @property
    def is_manual(self) -> bool:
        return self.source == MANUAL_SOURCE

    @property
    def is_empty(self) -> bool:
        return self.value is None or self.value == "" or self.value == []


class CanonicalWork(BaseModel):
    id: str
    title: str
    external_ids: dict[str, str] = Field(default_factory=dict)
    attributes: dict[str, WorkAttribute] = Field(default_factory=dict)
    created_at: datetime | None = None

    def attribute(self, name: str) -> WorkAttribute | None:
        return self.attributes.get(name)

    def value(self, name: str) -> Any:
        attribute = self.attributes.get(name)
        return attribute.value if attribute is not None else None


class ResolutionCandidate(BaseModel):
    work_id: str
    source: str
    external_id: str
    score: float
    query_term: str | None = None
    names: list[str] = Field(default_factory=list)
    created_at: datetime | None = None


class Offer(BaseModel):
    channel: str
    kind: OfferKind
    link: str | None = None


LinkStatus = Literal["linked", "already_linked", "duplicate"]


class LinkResult(BaseModel):
    status: LinkStatus
    work_id: str
    source: str
    external_id: str
    owner_work_id: str | None = None


def availability_attribute(provider: str, region: str) -> str:
    return f"availability:{provider}:{region.upper()}"


def score_attribute(key: str) -> str:
    return f"score:{key}"


def can_overwrite(existing: WorkAttribute | None, *, force: bool) -> bool:
    """Fill-empty-only rule shared by both stores; manual values need ``force``."""
    if force or existing is None:
        return True
    if existing.is_manual:
        return False
    return existing.is_empty
