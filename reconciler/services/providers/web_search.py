from __future__ import annotations

from typing import Any
from urllib.parse import urlparse

from reconciler.services.providers.base import CAPABILITY_SEARCH, HttpProvider, SearchHit, as_text
from reconciler.services.similarity import search_rank

DENY_DOMAINS = (
    "anilist.co",
    "wikipedia.org",
    "chiebukuro.yahoo.co.jp",
    "livedoor.jp",
    "togetter.com",
    "pixiv.net",
    "nicovideo.jp",
    "youtube.com",
    "tiktok.com",
    "twitter.com",
    "x.com",
    "instagram.com",
    "facebook.com",
    "amazon.",
    "netflix.com",
    "crunchyroll.com",
    "hidive.com",
    "unext.jp",
    "abema.tv",
    "dmm.com",
    "primevideo.com",
    "disneyplus.com",
    "fandom.com",
    "anime-planet.com",
)
DENY_PATH_HINTS = ("/qa/", "/question/", "/news/", "/article/", "/review", "/vod/", "/watch", "/episode")
BROADCASTER_DOMAINS = ("tv-tokyo.co.jp", "nhk.or.jp", "ntv.co.jp")
OFFICIAL_MARKERS = (("公式サイト", 6), ("公式", 6), ("official", 4), ("tvアニメ", 2), ("アニメ", 2))
LISTICLE_MARKERS = ("まとめ", "ランキング", "考察", "ネタバレ")
MIN_OFFICIAL_SCORE = 9


class WebSearchProvider(HttpProvider):
    """Serper-backed web search; hits carry the result URL as ``external_id``."""

    name = "web"
    capabilities = frozenset({CAPABILITY_SEARCH})

    def __init__(self, *, api_key: str, country: str = "jp", language: str = "ja", **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.headers["X-API-KEY"] = api_key
        self.country = country
        self.language = language

    async def search(self, term: str) -> list[SearchHit]:
        body = await self._request_json(
            "POST",
            self.base_url,
            json_body={"q": term, "gl": self.country, "hl": self.language, "num": 10, "autocorrect": False},
        )
        organic = body.get("organic") if isinstance(body, dict) else None
        hits: list[SearchHit] = []
        for item in organic or []:
            link = as_text(item.get("link")) if isinstance(item, dict) else None
            if not link:
                continue
            title = as_text(item.get("title")) or ""
            hits.append(
                SearchHit(
                    external_id=link,
                    names=(title,) if title else (),
                    hints={"snippet": as_text(item.get("snippet")) or "", "position": item.get("position")},
                )
            )
        return hits


def is_denied_url(url: str) -> bool:
    lowered = url.lower()
    parsed = urlparse(lowered)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        return True
    if any(domain in parsed.netloc for domain in DENY_DOMAINS) or parsed.netloc.startswith("news."):
        return True
    return any(hint in parsed.path for hint in DENY_PATH_HINTS)


def official_site_score(hit: SearchHit, work_title: str) -> int:
    if is_denied_url(hit.external_id):
        return -999
    page_title = hit.names[0] if hit.names else ""
    text = f"{page_title} {hit.hints.get('snippet') or ''}".lower()

    score = sum(weight for marker, weight in OFFICIAL_MARKERS if marker in text)
    netloc = urlparse(hit.external_id.lower()).netloc
    score += sum(1 for hint in (".jp", ".tv", "anime", "official") if hint in netloc)
    if any(domain in netloc for domain in BROADCASTER_DOMAINS):
        score -= 3
    if any(marker in text for marker in LISTICLE_MARKERS):
        score -= 5

    dice, containment = search_rank(work_title, page_title)
    if containment > 0 or dice >= 0.5:
        score += 3
    return score


def pick_official_url(hits: list[SearchHit], work_title: str, *, min_score: int = MIN_OFFICIAL_SCORE) -> str | None:
    """Best-scoring hit that looks like a title's own site, or None below ``min_score``."""
    best_url: str | None = None
    best_score = min_score - 1
    for hit in hits:
        score = official_site_score(hit, work_title)
        if score > best_score:
            best_url, best_score = hit.external_id, score
    return best_url
