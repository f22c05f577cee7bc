from __future__ import annotations

from typing import Any

from reconciler.core.errors import AmbiguousDataError
from reconciler.schemas.works import Offer
from reconciler.services.providers.base import (
    CAPABILITY_AVAILABILITY,
    CAPABILITY_SEARCH,
    HttpProvider,
    SearchHit,
    as_text,
    year_from_date,
)

MEDIA_TYPES = ("tv", "movie")

OFFER_KINDS = (
    ("flatrate", "subscription"),
    ("rent", "rental"),
    ("buy", "purchase"),
)


def split_external_id(external_id: str) -> tuple[str, str]:
    """TMDB ids are only unique per media type, so they are stored as ``tv:123``."""
    media_type, _, raw_id = external_id.partition(":")
    if media_type not in MEDIA_TYPES or not raw_id.isdigit():
        raise AmbiguousDataError(f"tmdb id must look like 'tv:123' or 'movie:123': {external_id!r}")
    return media_type, raw_id


class TmdbProvider(HttpProvider):
    name = "tmdb"
    capabilities = frozenset({CAPABILITY_SEARCH, CAPABILITY_AVAILABILITY})

    def __init__(
        self,
        *,
        read_access_token: str | None = None,
        api_key: str | None = None,
        language: str = "ja-JP",
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.language = language
        self.auth_params: dict[str, str] = {}
        if read_access_token:
            self.headers["Authorization"] = f"Bearer {read_access_token}"
        elif api_key:
            self.auth_params["api_key"] = api_key

    async def search(self, term: str) -> list[SearchHit]:
        hits: list[SearchHit] = []
        for media_type in MEDIA_TYPES:
            body = await self._get(f"/search/{media_type}", {"query": term, "include_adult": "false"})
            for item in (body or {}).get("results") or []:
                if not isinstance(item, dict) or item.get("id") is None:
                    continue
                if media_type == "tv":
                    names = (item.get("name"), item.get("original_name"))
                    year = year_from_date(item.get("first_air_date"))
                else:
                    names = (item.get("title"), item.get("original_title"))
                    year = year_from_date(item.get("release_date"))
                hits.append(
                    SearchHit(
                        external_id=f"{media_type}:{item['id']}",
                        names=tuple(dict.fromkeys(name for name in map(as_text, names) if name)),
                        hints={"media_type": media_type, "year": year},
                    )
                )
        return hits

    async def fetch_availability(self, external_id: str, region: str) -> list[Offer]:
        media_type, raw_id = split_external_id(external_id)
        body = await self._get(f"/{media_type}/{raw_id}/watch/providers", {})
        results = (body or {}).get("results")
        if not isinstance(results, dict):
            raise AmbiguousDataError(f"tmdb watch providers missing results for {external_id}")
        return offers_for_region(results.get(region.upper()))

    async def _get(self, path: str, params: dict[str, Any]) -> dict[str, Any] | None:
        query = {"language": self.language, **self.auth_params, **params}
        body = await self._request_json("GET", f"{self.base_url}{path}", params=query)
        return body if isinstance(body, dict) else None


def offers_for_region(entry: Any) -> list[Offer]:
    if not isinstance(entry, dict):
        return []
    link = as_text(entry.get("link"))
    offers: list[Offer] = []
    seen: set[tuple[str, str]] = set()
    for field, kind in OFFER_KINDS:
        for item in entry.get(field) or []:
            channel = as_text(item.get("provider_name")) if isinstance(item, dict) else None
            if not channel or (channel, kind) in seen:
                continue
            seen.add((channel, kind))
            offers.append(Offer(channel=channel, kind=kind, link=link))
    return offers
