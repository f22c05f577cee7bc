from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx
import pytest

from reconciler.core.config import Settings
from reconciler.core.errors import AmbiguousDataError, ConfigurationError, MalformedResponseError, NotFoundError
from reconciler.services.providers.anilist import AniListProvider
from reconciler.services.providers.base import SearchHit
from reconciler.services.providers.openai_chat import OpenAIChatProvider
from reconciler.services.providers.registry import build_providers, close_providers
from reconciler.services.providers.tmdb import TmdbProvider, offers_for_region, split_external_id
from reconciler.services.providers.web_search import WebSearchProvider, is_denied_url, pick_official_url
from reconciler.services.rate_limit import RateLimitedCaller


async def _no_sleep(seconds: float) -> None:
    return None


def _caller(name: str) -> RateLimitedCaller:
    return RateLimitedCaller(name, max_attempts=2, jitter_seconds=0.0, sleep=_no_sleep)


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _anilist(handler) -> AniListProvider:
    return AniListProvider(base_url="https://graphql.anilist.co", caller=_caller("anilist"), client=_client(handler))


def _run(provider, method: str, *args: Any) -> Any:
    async def run() -> Any:
        try:
            return await getattr(provider, method)(*args)
        finally:
            await provider.client.aclose()

    return asyncio.run(run())


def test_anilist_search_collects_all_names() -> None:
    seen: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "data": {
                    "Page": {
                        "media": [
                            {
                                "id": 16498,
                                "format": "TV",
                                "startDate": {"year": 2013},
                                "title": {
                                    "romaji": "Shingeki no Kyojin",
                                    "english": "Attack on Titan",
                                    "native": "進撃の巨人",
                                },
                                "synonyms": ["AoT", "Attack on Titan"],
                            },
                            {"id": None},
                        ]
                    }
                }
            },
        )

    provider = _anilist(handler)
    hits = _run(provider, "search", "進撃の巨人")

    assert seen["body"]["variables"] == {"search": "進撃の巨人", "perPage": 10}
    assert hits == [
        SearchHit(
            external_id="16498",
            names=("進撃の巨人", "Shingeki no Kyojin", "Attack on Titan", "AoT"),
            hints={"format": "TV", "year": 2013},
        )
    ]


def test_anilist_discover_season_pages_by_popularity() -> None:
    seen: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "data": {
                    "Page": {
                        "pageInfo": {"hasNextPage": True},
                        "media": [
                            {
                                "id": 154587,
                                "format": "TV",
                                "startDate": {"year": 2023},
                                "title": {"romaji": "Sousou no Frieren", "english": None, "native": "葬送のフリーレン"},
                                "synonyms": [],
                            }
                        ],
                    }
                }
            },
        )

    provider = _anilist(handler)
    hits, has_next = _run(provider, "discover_season", 2023, "fall")

    assert "sort: POPULARITY_DESC" in seen["body"]["query"]
    assert seen["body"]["variables"] == {"season": "FALL", "seasonYear": 2023, "page": 1, "perPage": 10}
    assert has_next is True
    assert [hit.names for hit in hits] == [("葬送のフリーレン", "Sousou no Frieren")]


def test_anilist_discover_season_rejects_unknown_season() -> None:
    provider = _anilist(lambda request: httpx.Response(200, json={"data": {}}))
    with pytest.raises(ValueError):
        _run(provider, "discover_season", 2023, "monsoon")


def test_anilist_details_map_to_facts() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "data": {
                    "Media": {
                        "id": 16498,
                        "episodes": 25,
                        "status": "FINISHED",
                        "source": "MANGA",
                        "popularity": 900000,
                        "favourites": 50000,
                        "startDate": {"year": 2013},
                        "coverImage": {"extraLarge": None, "large": "https://img.example/large.jpg"},
                        "studios": {
                            "nodes": [
                                {"name": "Pony Canyon", "isAnimationStudio": False},
                                {"name": "WIT STUDIO", "isAnimationStudio": True},
                            ]
                        },
                    }
                }
            },
        )

    provider = _anilist(handler)
    facts = _run(provider, "fetch_details", "16498")

    assert facts == {
        "episode_count": 25,
        "start_year": 2013,
        "status": "finished",
        "source_material": "manga",
        "studio": "WIT STUDIO",
        "popularity": 900000,
        "favourites": 50000,
        "cover_image_url": "https://img.example/large.jpg",
    }


@pytest.mark.parametrize(
    ("payload", "error"),
    [
        ({"data": {"Media": None}}, NotFoundError),
        ({"errors": [{"message": "Too Many Requests"}]}, AmbiguousDataError),
    ],
)
def test_anilist_details_errors(payload: dict[str, Any], error: type[Exception]) -> None:
    provider = _anilist(lambda request: httpx.Response(200, json=payload))
    with pytest.raises(error):
        _run(provider, "fetch_details", "1")


def test_tmdb_availability_uses_bearer_token_and_region() -> None:
    seen: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["authorization"] = request.headers.get("authorization")
        seen["params"] = dict(request.url.params)
        return httpx.Response(
            200,
            json={
                "results": {
                    "JP": {
                        "link": "https://www.themoviedb.org/tv/120089/watch?locale=JP",
                        "flatrate": [{"provider_name": "Netflix"}, {"provider_name": "Netflix"}],
                        "rent": [{"provider_name": "Amazon Video"}],
                        "buy": [{"provider_name": "Amazon Video"}],
                    }
                }
            },
        )

    provider = TmdbProvider(
        base_url="https://api.themoviedb.org/3",
        caller=_caller("tmdb"),
        client=_client(handler),
        read_access_token="token-123",
    )
    offers = _run(provider, "fetch_availability", "tv:120089", "jp")

    assert seen["path"] == "/3/tv/120089/watch/providers"
    assert seen["authorization"] == "Bearer token-123"
    assert "api_key" not in seen["params"]
    assert [(offer.channel, offer.kind) for offer in offers] == [
        ("Netflix", "subscription"),
        ("Amazon Video", "rental"),
        ("Amazon Video", "purchase"),
    ]
    assert {offer.link for offer in offers} == {"https://www.themoviedb.org/tv/120089/watch?locale=JP"}


def test_tmdb_search_prefixes_media_type_and_uses_api_key() -> None:
    params: list[dict[str, str]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        params.append(dict(request.url.params))
        if request.url.path.endswith("/search/tv"):
            return httpx.Response(
                200,
                json={
                    "results": [
                        {"id": 1429, "name": "進撃の巨人", "original_name": "進撃の巨人", "first_air_date": "2013-04-07"}
                    ]
                },
            )
        return httpx.Response(
            200,
            json={"results": [{"id": 391, "title": "劇場版 進撃の巨人", "release_date": "2015-08-01"}]},
        )

    provider = TmdbProvider(
        base_url="https://api.themoviedb.org/3",
        caller=_caller("tmdb"),
        client=_client(handler),
        api_key="key-1",
    )
    hits = _run(provider, "search", "進撃の巨人")

    assert [(hit.external_id, hit.names, hit.hints["year"]) for hit in hits] == [
        ("tv:1429", ("進撃の巨人",), 2013),
        ("movie:391", ("劇場版 進撃の巨人",), 2015),
    ]
    assert all(row["api_key"] == "key-1" and row["language"] == "ja-JP" for row in params)


def test_tmdb_missing_results_and_bad_ids() -> None:
    provider = TmdbProvider(
        base_url="https://api.themoviedb.org/3",
        caller=_caller("tmdb"),
        client=_client(lambda request: httpx.Response(200, json={"id": 1})),
        api_key="key-1",
    )
    with pytest.raises(AmbiguousDataError):
        _run(provider, "fetch_availability", "movie:1", "JP")
    with pytest.raises(AmbiguousDataError):
        split_external_id("1429")
    assert offers_for_region(None) == []


def test_web_search_returns_organic_hits() -> None:
    seen: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["api_key"] = request.headers.get("x-api-key")
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "organic": [
                    {
                        "title": "TVアニメ『SPY×FAMILY』公式サイト",
                        "link": "https://spy-family.net/tvseries/",
                        "snippet": "TVアニメ公式サイト",
                        "position": 1,
                    },
                    {"title": "no link"},
                ]
            },
        )

    provider = WebSearchProvider(
        base_url="https://google.serper.dev/search",
        caller=_caller("web"),
        client=_client(handler),
        api_key="serper-key",
    )
    hits = _run(provider, "search", "SPY×FAMILY アニメ 公式サイト")

    assert seen["api_key"] == "serper-key"
    assert seen["body"]["q"] == "SPY×FAMILY アニメ 公式サイト"
    assert [hit.external_id for hit in hits] == ["https://spy-family.net/tvseries/"]
    assert hits[0].hints == {"snippet": "TVアニメ公式サイト", "position": 1}


def test_pick_official_url_prefers_official_pages() -> None:
    hits = [
        SearchHit(external_id="https://ja.wikipedia.org/wiki/SPY×FAMILY", names=("SPY×FAMILY - Wikipedia",)),
        SearchHit(
            external_id="https://matome.example.jp/spy-family",
            names=("SPY×FAMILY 考察まとめ",),
            hints={"snippet": "ネタバレあり"},
        ),
        SearchHit(
            external_id="https://spy-family.net/tvseries/",
            names=("TVアニメ『SPY×FAMILY』公式サイト",),
            hints={"snippet": "TVアニメ公式サイト"},
        ),
    ]

    assert pick_official_url(hits, "SPY×FAMILY") == "https://spy-family.net/tvseries/"
    assert pick_official_url(hits[:2], "SPY×FAMILY") is None
    assert is_denied_url("https://news.example.jp/spy") is True
    assert is_denied_url("https://example.jp/anime/watch/1") is True
    assert is_denied_url("ftp://example.jp/") is True


def test_openai_returns_message_content() -> None:
    seen: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["authorization"] = request.headers.get("authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"choices": [{"message": {"content": '{"story": 4}'}}]})

    provider = OpenAIChatProvider(
        base_url="https://api.openai.com/v1/chat/completions",
        caller=_caller("openai"),
        client=_client(handler),
        api_key="sk-test",
        model="gpt-4o-mini",
    )
    content = _run(provider, "score_text", "Rate it")

    assert content == '{"story": 4}'
    assert seen["authorization"] == "Bearer sk-test"
    assert seen["body"]["response_format"] == {"type": "json_object"}
    assert seen["body"]["messages"][-1] == {"role": "user", "content": "Rate it"}


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(200, json={"choices": []}),
        httpx.Response(200, json={"choices": [{"message": {"content": "  "}}]}),
        httpx.Response(200, text="<html>upstream error</html>"),
    ],
)
def test_openai_malformed_responses(response: httpx.Response) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(response.status_code, headers=response.headers, content=response.content)

    provider = OpenAIChatProvider(
        base_url="https://api.openai.com/v1/chat/completions",
        caller=_caller("openai"),
        client=_client(handler),
        api_key="sk-test",
        model="gpt-4o-mini",
    )
    with pytest.raises(MalformedResponseError):
        _run(provider, "score_text", "Rate it")


def _bare_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "otel_enabled": False,
        "tmdb_read_access_token": None,
        "tmdb_api_key": None,
        "serper_api_key": None,
        "openai_api_key": None,
        "resolution_source": "anilist",
    }
    values.update(overrides)
    return Settings(**values)


def test_build_providers_rejects_missing_credentials_and_unknown_kinds() -> None:
    with pytest.raises(ConfigurationError, match="generate-score needs openai:scoring"):
        build_providers(_bare_settings(), ["generate-score"])
    with pytest.raises(ConfigurationError, match="unknown task kinds"):
        build_providers(_bare_settings(), ["embed"])


def test_build_providers_shares_injected_client() -> None:
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, json={})))
    settings = _bare_settings(tmdb_api_key="key-1", serper_api_key="serper-key", openai_api_key="sk-test")

    async def run() -> dict[str, Any]:
        providers = build_providers(settings, client=client)
        await close_providers(providers)
        assert client.is_closed is False
        await client.aclose()
        return providers

    providers = asyncio.run(run())
    assert sorted(providers) == ["anilist", "openai", "tmdb", "web"]
    assert all(provider.client is client for provider in providers.values())
