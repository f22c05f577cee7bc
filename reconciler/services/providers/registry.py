from __future__ import annotations

import logging
from collections.abc import Iterable

import httpx

from reconciler.core.config import Settings
from reconciler.core.errors import ConfigurationError
from reconciler.schemas.tasks import TASK_KINDS
from reconciler.services.providers.anilist import AniListProvider
from reconciler.services.providers.base import (
    CAPABILITY_AVAILABILITY,
    CAPABILITY_DETAILS,
    CAPABILITY_SCORING,
    CAPABILITY_SEARCH,
    HttpProvider,
)
from reconciler.services.providers.openai_chat import OpenAIChatProvider
from reconciler.services.providers.tmdb import TmdbProvider
from reconciler.services.providers.web_search import WebSearchProvider
from reconciler.services.rate_limit import RateLimitedCaller

logger = logging.getLogger(__name__)

# Capabilities each task kind needs before a worker may claim it.
REQUIRED_CAPABILITIES: dict[str, tuple[tuple[str, str], ...]] = {
    "resolve-id": (("resolution", CAPABILITY_SEARCH),),
    "fetch-facts": (("anilist", CAPABILITY_DETAILS),),
    "check-availability": (("tmdb", CAPABILITY_AVAILABILITY),),
    "refresh-stats": (("anilist", CAPABILITY_DETAILS),),
    "generate-score": (("openai", CAPABILITY_SCORING),),
}


def build_caller(settings: Settings, name: str, min_interval_seconds: float) -> RateLimitedCaller:
    return RateLimitedCaller(
        name,
        min_interval_seconds=min_interval_seconds,
        max_attempts=settings.caller_max_attempts,
        backoff_base_seconds=settings.caller_backoff_base_seconds,
        backoff_max_seconds=settings.caller_backoff_max_seconds,
        jitter_seconds=settings.caller_jitter_seconds,
    )


def build_anilist_provider(
    settings: Settings,
    *,
    client: httpx.AsyncClient | None = None,
    per_page: int = 10,
) -> AniListProvider:
    return AniListProvider(
        base_url=settings.anilist_url,
        caller=build_caller(settings, "anilist", settings.anilist_min_interval_seconds),
        client=client,
        timeout_seconds=settings.http_timeout_seconds,
        per_page=per_page,
    )


def build_providers(
    settings: Settings,
    kinds: Iterable[str] | None = None,
    *,
    client: httpx.AsyncClient | None = None,
) -> dict[str, HttpProvider]:
    """Instantiate every provider whose credentials are present.

    Raises ConfigurationError when a requested task kind needs a provider that
    cannot be built, so the worker fails before claiming anything.
    """
    requested = list(kinds or TASK_KINDS)
    unknown = sorted(set(requested) - set(TASK_KINDS))
    if unknown:
        raise ConfigurationError(f"unknown task kinds: {unknown}")

    timeout = settings.http_timeout_seconds
    providers: dict[str, HttpProvider] = {"anilist": build_anilist_provider(settings, client=client)}
    if settings.tmdb_read_access_token or settings.tmdb_api_key:
        providers["tmdb"] = TmdbProvider(
            base_url=settings.tmdb_url,
            caller=build_caller(settings, "tmdb", settings.tmdb_min_interval_seconds),
            client=client,
            timeout_seconds=timeout,
            read_access_token=settings.tmdb_read_access_token,
            api_key=settings.tmdb_api_key,
        )
    if settings.serper_api_key:
        providers["web"] = WebSearchProvider(
            base_url=settings.serper_url,
            caller=build_caller(settings, "web", settings.serper_min_interval_seconds),
            client=client,
            timeout_seconds=timeout,
            api_key=settings.serper_api_key,
        )
    if settings.openai_api_key:
        providers["openai"] = OpenAIChatProvider(
            base_url=settings.openai_url,
            caller=build_caller(settings, "openai", settings.openai_min_interval_seconds),
            client=client,
            timeout_seconds=timeout,
            api_key=settings.openai_api_key,
            model=settings.openai_model,
        )

    missing: list[str] = []
    for kind in requested:
        for provider_name, capability in REQUIRED_CAPABILITIES[kind]:
            if provider_name == "resolution":
                provider_name = settings.resolution_source
            provider = providers.get(provider_name)
            if provider is None or capability not in provider.capabilities:
                missing.append(f"{kind} needs {provider_name}:{capability}")
    if missing:
        raise ConfigurationError("; ".join(missing))

    logger.info("providers ready: %s", ", ".join(sorted(providers)))
    return providers


async def close_providers(providers: dict[str, HttpProvider]) -> None:
    for provider in providers.values():
        await provider.aclose()
