from __future__ import annotations

import json
from typing import Any, Protocol, runtime_checkable

import httpx

from reconciler.core.errors import MalformedResponseError, NotFoundError
from reconciler.schemas.works import Offer
from reconciler.services.rate_limit import RateLimitedCaller
from reconciler.services.resolver import MatchCandidate

SearchHit = MatchCandidate

CAPABILITY_SEARCH = "search"
CAPABILITY_DETAILS = "details"
CAPABILITY_DISCOVERY = "discovery"
CAPABILITY_AVAILABILITY = "availability"
CAPABILITY_SCORING = "scoring"


@runtime_checkable
class SourceProvider(Protocol):
    name: str
    capabilities: frozenset[str]

    async def search(self, term: str) -> list[SearchHit]: ...

    async def fetch_details(self, external_id: str) -> dict[str, Any]: ...

    async def fetch_availability(self, external_id: str, region: str) -> list[Offer]: ...

    async def score_text(self, prompt: str) -> str: ...

    async def aclose(self) -> None: ...


class HttpProvider:
    """Shared plumbing: one ``httpx.AsyncClient`` and one throttle per instance.

    Subclasses override the operations listed in ``capabilities``; the rest
    raise ``NotImplementedError`` and are rejected by ``build_providers`` before
    a worker starts.
    """

    name = "provider"
    capabilities: frozenset[str] = frozenset()

    def __init__(
        self,
        *,
        base_url: str,
        caller: RateLimitedCaller,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 20.0,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.caller = caller
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self.headers = dict(headers or {})

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def search(self, term: str) -> list[SearchHit]:
        raise NotImplementedError(f"{self.name} does not support search")

    async def fetch_details(self, external_id: str) -> dict[str, Any]:
        raise NotImplementedError(f"{self.name} does not support details")

    async def fetch_availability(self, external_id: str, region: str) -> list[Offer]:
        raise NotImplementedError(f"{self.name} does not support availability")

    async def score_text(self, prompt: str) -> str:
        raise NotImplementedError(f"{self.name} does not support scoring")

    async def _request_json(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: Any = None,
    ) -> Any:
        response = await self.caller.call(
            lambda: self.client.request(method, url, params=params, json=json_body, headers=self.headers)
        )
        try:
            return response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise MalformedResponseError(f"{self.name}: response is not JSON") from exc

    async def _request_json_or_none(self, method: str, url: str, **kwargs: Any) -> Any:
        try:
            return await self._request_json(method, url, **kwargs)
        except NotFoundError:
            return None


def as_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


def as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def year_from_date(value: Any) -> int | None:
    text = as_text(value)
    if not text or len(text) < 4 or not text[:4].isdigit():
        return None
    return int(text[:4])
