"""Per-connection throttling and retry for external HTTP calls.

Each provider owns one ``RateLimitedCaller``; there is no module-level state, so
unrelated external systems never share a clock and tests can inject ``sleep``
and ``clock``.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

import httpx

from reconciler.core.errors import NonRetryableError, NotFoundError, RetryExhaustedError

logger = logging.getLogger(__name__)

SendFn = Callable[[], Awaitable[httpx.Response]]


class RateLimitedCaller:
    def __init__(
        self,
        name: str,
        *,
        min_interval_seconds: float = 0.0,
        max_attempts: int = 6,
        backoff_base_seconds: float = 1.0,
        backoff_max_seconds: float = 60.0,
        jitter_seconds: float = 0.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
    ) -> None:
        self.name = name
        self.min_interval_seconds = max(0.0, min_interval_seconds)
        self.max_attempts = max(1, max_attempts)
        self.backoff_base_seconds = max(0.0, backoff_base_seconds)
        self.backoff_max_seconds = max(0.0, backoff_max_seconds)
        self.jitter_seconds = max(0.0, jitter_seconds)
        self._sleep = sleep
        self._clock = clock
        self._rng = rng or random.Random()
        self._lock = asyncio.Lock()
        self._last_call_at: float | None = None

    async def wait_turn(self) -> None:
        """Block until ``min_interval_seconds`` has passed since the previous call started."""
        async with self._lock:
            if self._last_call_at is not None and self.min_interval_seconds > 0:
                wait_for = self._last_call_at + self.min_interval_seconds - self._clock()
                if wait_for > 0:
                    await self._sleep(wait_for)
            self._last_call_at = self._clock()

    def backoff_delay(self, attempt: int) -> float:
        delay = min(self.backoff_max_seconds, self.backoff_base_seconds * (2 ** max(0, attempt - 1)))
        if self.jitter_seconds:
            delay += self._rng.uniform(0.0, self.jitter_seconds)
        return delay

    async def call(self, send: SendFn) -> httpx.Response:
        last_status: int | None = None
        detail = ""

        for attempt in range(1, self.max_attempts + 1):
            await self.wait_turn()
            try:
                response = await send()
            except httpx.TransportError as exc:
                last_status = None
                detail = str(exc) or type(exc).__name__
                delay = self.backoff_delay(attempt)
            else:
                status = response.status_code
                if status < 400:
                    return response
                last_status = status
                detail = response.text[:300]
                if status == 429:
                    retry_after = parse_retry_after(response.headers.get("retry-after"))
                    delay = retry_after if retry_after is not None else self.backoff_delay(attempt)
                elif status >= 500:
                    delay = self.backoff_delay(attempt)
                elif status == 404:
                    raise NotFoundError(self.name, status, detail)
                else:
                    raise NonRetryableError(self.name, status, detail)

            if attempt >= self.max_attempts:
                break
            logger.warning(
                "%s call failed status=%s attempt=%s/%s; retrying in %.1fs",
                self.name,
                last_status,
                attempt,
                self.max_attempts,
                delay,
            )
            await self._sleep(delay)

        raise RetryExhaustedError(self.name, self.max_attempts, last_status, detail)


def parse_retry_after(value: str | None, *, now: datetime | None = None) -> float | None:
    if value is None:
        return None
    raw = value.strip()
    if not raw:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    current = now or datetime.now(timezone.utc)
    return max(0.0, (when - current).total_seconds())
