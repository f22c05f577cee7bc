from __future__ import annotations

from typing import Any

from reconciler.core.errors import MalformedResponseError
from reconciler.services.providers.base import CAPABILITY_SCORING, HttpProvider

SYSTEM_PROMPT = "Reply with a single JSON object only. Every value must be an integer from 0 to 5."


class OpenAIChatProvider(HttpProvider):
    """Chat-completions client; returns the raw message text for the caller to validate."""

    name = "openai"
    capabilities = frozenset({CAPABILITY_SCORING})

    def __init__(self, *, api_key: str, model: str, temperature: float = 0.2, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.headers["Authorization"] = f"Bearer {api_key}"
        self.model = model
        self.temperature = temperature

    async def score_text(self, prompt: str) -> str:
        body = await self._request_json(
            "POST",
            self.base_url,
            json_body={
                "model": self.model,
                "temperature": self.temperature,
                "response_format": {"type": "json_object"},
                "messages": [
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
            },
        )
        try:
            content = body["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise MalformedResponseError("chat completion has no message content") from exc
        if not isinstance(content, str) or not content.strip():
            raise MalformedResponseError("chat completion returned empty content")
        return content
