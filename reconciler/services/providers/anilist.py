from __future__ import annotations

from typing import Any

from reconciler.core.errors import AmbiguousDataError, NotFoundError
from reconciler.services.providers.base import (
    CAPABILITY_DETAILS,
    CAPABILITY_DISCOVERY,
    CAPABILITY_SEARCH,
    HttpProvider,
    SearchHit,
    as_int,
    as_text,
)

SEARCH_QUERY = """
query ($search: String, $perPage: Int) {
  Page(page: 1, perPage: $perPage) {
    media(search: $search, type: ANIME) {
      id
      format
      startDate { year }
      title { romaji english native }
      synonyms
    }
  }
}
"""

SEASON_QUERY = """
query ($season: MediaSeason, $seasonYear: Int, $page: Int, $perPage: Int) {
  Page(page: $page, perPage: $perPage) {
    pageInfo { hasNextPage }
    media(season: $season, seasonYear: $seasonYear, type: ANIME, sort: POPULARITY_DESC) {
      id
      format
      startDate { year }
      title { romaji english native }
      synonyms
    }
  }
}
"""

SEASONS: tuple[str, ...] = ("WINTER", "SPRING", "SUMMER", "FALL")

DETAILS_QUERY = """
query ($id: Int) {
  Media(id: $id, type: ANIME) {
    id
    episodes
    status
    source
    popularity
    favourites
    startDate { year }
    coverImage { extraLarge large }
    studios(isMain: true) { nodes { name isAnimationStudio } }
  }
}
"""


class AniListProvider(HttpProvider):
    name = "anilist"
    capabilities = frozenset({CAPABILITY_SEARCH, CAPABILITY_DETAILS, CAPABILITY_DISCOVERY})

    def __init__(self, *, per_page: int = 10, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.per_page = max(1, min(per_page, 50))

    async def search(self, term: str) -> list[SearchHit]:
        data = await self._graphql(SEARCH_QUERY, {"search": term, "perPage": self.per_page})
        media = ((data.get("Page") or {}).get("media")) or []
        return [hit for hit in (media_to_hit(item) for item in media) if hit is not None]

    async def discover_season(self, year: int, season: str, *, page: int = 1) -> tuple[list[SearchHit], bool]:
        """One page of a season's catalog, most popular first, plus whether another page follows."""
        season = season.upper()
        if season not in SEASONS:
            raise ValueError(f"unknown season {season!r}")
        data = await self._graphql(
            SEASON_QUERY,
            {"season": season, "seasonYear": year, "page": max(1, page), "perPage": self.per_page},
        )
        page_data = data.get("Page") or {}
        media = page_data.get("media") or []
        hits = [hit for hit in (media_to_hit(item) for item in media) if hit is not None]
        return hits, bool((page_data.get("pageInfo") or {}).get("hasNextPage"))

    async def fetch_details(self, external_id: str) -> dict[str, Any]:
        media_id = as_int(external_id)
        if media_id is None:
            raise AmbiguousDataError(f"anilist id must be numeric: {external_id!r}")
        data = await self._graphql(DETAILS_QUERY, {"id": media_id})
        media = data.get("Media")
        if not isinstance(media, dict):
            raise NotFoundError(self.name, 404, f"media {external_id} not found")
        return media_to_facts(media)

    async def _graphql(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        body = await self._request_json("POST", self.base_url, json_body={"query": query, "variables": variables})
        if not isinstance(body, dict):
            raise AmbiguousDataError("anilist response is not an object")
        data = body.get("data")
        if not isinstance(data, dict):
            errors = body.get("errors") or []
            raise AmbiguousDataError(f"anilist returned no data: {errors[:2]}")
        return data


def media_to_hit(item: Any) -> SearchHit | None:
    """Names come native first, then romaji and english, then synonyms."""
    if not isinstance(item, dict) or item.get("id") is None:
        return None
    title = item.get("title") or {}
    names = [as_text(title.get(key)) for key in ("native", "romaji", "english")]
    names.extend(as_text(synonym) for synonym in item.get("synonyms") or [])
    return SearchHit(
        external_id=str(item["id"]),
        names=tuple(dict.fromkeys(name for name in names if name)),
        hints={
            "format": item.get("format"),
            "year": ((item.get("startDate") or {}).get("year")),
        },
    )


def media_to_facts(media: dict[str, Any]) -> dict[str, Any]:
    cover = media.get("coverImage") or {}
    studios = ((media.get("studios") or {}).get("nodes")) or []
    studio = next((node.get("name") for node in studios if node.get("isAnimationStudio")), None)
    if studio is None and studios:
        studio = studios[0].get("name")

    status = as_text(media.get("status"))
    source_material = as_text(media.get("source"))
    return {
        "episode_count": as_int(media.get("episodes")),
        "start_year": as_int((media.get("startDate") or {}).get("year")),
        "status": status.lower() if status else None,
        "source_material": source_material.lower() if source_material else None,
        "studio": as_text(studio),
        "popularity": as_int(media.get("popularity")),
        "favourites": as_int(media.get("favourites")),
        "cover_image_url": as_text(cover.get("extraLarge")) or as_text(cover.get("large")),
    }
