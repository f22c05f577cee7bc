from __future__ import annotations

import pytest

from reconciler.core.errors import MalformedResponseError
from reconciler.schemas.scores import extract_json_object, parse_scores


def test_parse_scores_accepts_fenced_json() -> None:
    text = 'Here you go:\n```json\n{"battle": 4, "story": 5, "extra": "ignored"}\n```'
    assert parse_scores(text, ["battle", "story"]) == {"battle": 4, "story": 5}


def test_parse_scores_accepts_prose_wrapped_object() -> None:
    text = 'Sure. {"romance": 0, "emotion": 3} Hope that helps.'
    assert parse_scores(text, ("romance", "emotion")) == {"romance": 0, "emotion": 3}


@pytest.mark.parametrize(
    "text",
    [
        "no json here",
        '{"battle": 6}',
        '{"battle": -1}',
        '{"battle": "3"}',
        '{"battle": 2.5}',
        '{"story": 3}',
        "[1, 2, 3]",
    ],
)
def test_parse_scores_rejects_invalid_output(text: str) -> None:
    with pytest.raises(MalformedResponseError):
        parse_scores(text, ["battle"])


def test_parse_scores_rejects_unknown_keys() -> None:
    with pytest.raises(ValueError):
        parse_scores('{"tempo": 3}', ["tempo"])


def test_extract_json_object_prefers_fenced_block() -> None:
    text = '{"a": 1}\n```\n{"b": 2}\n```'
    assert extract_json_object(text) == {"b": 2}
    assert extract_json_object("") is None
