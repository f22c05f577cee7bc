"""Seasonal catalog crawl: create canonical works for titles the catalog lists.

A discovered entry becomes a work titled with its first catalog name (native,
then romaji, then english) and is linked to its catalog id. Existing works are
never retitled: an unlinked work with the same title is linked instead of
duplicated, and a title already owned by another catalog id is left alone.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from reconciler.core.errors import ConflictError
from reconciler.core.titles import normalize_title
from reconciler.services.providers.anilist import SEASONS
from reconciler.services.resolver import MatchCandidate

logger = logging.getLogger(__name__)

DISCOVERY_SOURCE = "anilist"


@dataclass(slots=True)
class DiscoverySummary:
    fetched: int = 0
    outcomes: Counter[str] = field(default_factory=Counter)
    series: set[str] = field(default_factory=set)

    def as_dict(self) -> dict[str, Any]:
        return {"fetched": self.fetched, "outcomes": dict(self.outcomes), "series": len(self.series)}


async def discover_seasonal(
    store: Any,
    provider: Any,
    *,
    year: int,
    seasons: Iterable[str] = SEASONS,
    max_pages: int = 5,
    dry_run: bool = False,
) -> DiscoverySummary:
    summary = DiscoverySummary()
    for season in seasons:
        for page in range(1, max(0, max_pages) + 1):
            hits, has_next = await provider.discover_season(year, season, page=page)
            for hit in hits:
                summary.fetched += 1
                summary.outcomes[await register_discovered(store, hit, summary=summary, dry_run=dry_run)] += 1
            logger.info("discovered %s %s page=%s hits=%s", year, season, page, len(hits))
            if not has_next:
                break

    logger.info("discovery finished: %s", summary.as_dict())
    return summary


async def register_discovered(
    store: Any,
    hit: MatchCandidate,
    *,
    summary: DiscoverySummary | None = None,
    dry_run: bool = False,
) -> str:
    """Create or link the work for one catalog entry; returns what happened."""
    if not hit.names:
        return "untitled"
    title = hit.names[0]
    if summary is not None:
        summary.series.add(normalize_title(title))

    if await store.find_work_by_external_id(DISCOVERY_SOURCE, hit.external_id) is not None:
        return "already_linked"

    same_title = await store.find_works_by_title(title)
    unlinked = next((work for work in same_title if not work.external_ids.get(DISCOVERY_SOURCE)), None)
    if same_title and unlinked is None:
        return "title_taken"
    if dry_run:
        return "linked_existing" if unlinked is not None else "created"

    work = unlinked or await store.create_work(title)
    try:
        await store.link_external_id(work.id, DISCOVERY_SOURCE, hit.external_id)
    except ConflictError:
        # linked by a concurrent resolve-id between the lookup and here
        return "already_linked"
    return "linked_existing" if unlinked is not None else "created"
