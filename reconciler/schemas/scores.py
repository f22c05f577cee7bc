"""Validation of LLM score output."""

from __future__ import annotations

import json
import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from reconciler.core.errors import MalformedResponseError
from reconciler.schemas.works import SCORE_KEYS

_FENCED_JSON_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)


class ScoreSheet(BaseModel):
    model_config = ConfigDict(extra="ignore", strict=True)

    battle: int | None = Field(default=None, ge=0, le=5)
    story: int | None = Field(default=None, ge=0, le=5)
    world: int | None = Field(default=None, ge=0, le=5)
    character: int | None = Field(default=None, ge=0, le=5)
    animation: int | None = Field(default=None, ge=0, le=5)
    gore: int | None = Field(default=None, ge=0, le=5)
    ero: int | None = Field(default=None, ge=0, le=5)
    romance: int | None = Field(default=None, ge=0, le=5)
    emotion: int | None = Field(default=None, ge=0, le=5)
    passive_viewing: int | None = Field(default=None, ge=0, le=5)


def extract_json_object(text: str) -> dict[str, Any] | None:
    """Pull the first JSON object out of free-form model output."""
    candidates: list[str] = []
    fenced = _FENCED_JSON_RE.search(text)
    if fenced:
        candidates.append(fenced.group(1).strip())
    first, last = text.find("{"), text.rfind("}")
    if first >= 0 and last > first:
        candidates.append(text[first : last + 1])
    candidates.append(text.strip())

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


def parse_scores(text: str, keys: tuple[str, ...] | list[str]) -> dict[str, int]:
    """Validate model output and return exactly the requested keys.

    Raises MalformedResponseError when the output is not a JSON object, a value
    is outside 0-5 or not an integer, or a requested key is absent.
    """
    unknown = [key for key in keys if key not in SCORE_KEYS]
    if unknown:
        raise ValueError(f"unknown score keys: {unknown}")

    payload = extract_json_object(text)
    if payload is None:
        raise MalformedResponseError(f"no JSON object in model output: {text[:200]!r}")
    try:
        sheet = ScoreSheet.model_validate(payload)
    except ValidationError as exc:
        raise MalformedResponseError(f"score output failed validation: {exc.errors()[:3]}") from exc

    missing = [key for key in keys if getattr(sheet, key) is None]
    if missing:
        raise MalformedResponseError(f"score output missing keys: {missing}")
    return {key: getattr(sheet, key) for key in keys}
