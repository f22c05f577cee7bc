from __future__ import annotations

import pytest

from reconciler.services.similarity import (
    bigrams,
    containment_similarity,
    dice_similarity,
    is_exact_match,
    search_rank,
)

PAIRS = [
    ("進撃の巨人", "進撃の巨人２"),
    ("Shirobako", "SHIROBAKO 劇場版"),
    ("abab", "ab"),
    ("K-ON!", "けいおん!"),
    ("", "anything"),
    ("a", "ab"),
]


@pytest.mark.parametrize(("left", "right"), PAIRS)
def test_dice_similarity_is_symmetric_and_bounded(left: str, right: str) -> None:
    forward = dice_similarity(left, right)
    assert forward == dice_similarity(right, left)
    assert 0.0 <= forward <= 1.0


@pytest.mark.parametrize("title", ["進撃の巨人", "a", "ID", "Re:Zero"])
def test_dice_similarity_identity(title: str) -> None:
    assert dice_similarity(title, title) == 1.0


@pytest.mark.parametrize("other", ["", "a", "進撃の巨人", None])
def test_dice_similarity_empty_side_scores_zero(other: str | None) -> None:
    assert dice_similarity("", other) == 0.0
    assert dice_similarity("!!!", other) == 0.0


def test_dice_similarity_counts_bigram_multiset() -> None:
    assert bigrams("abab") == {"ab": 2, "ba": 1}
    assert dice_similarity("abab", "ab") == pytest.approx(0.5)
    assert dice_similarity("進撃の巨人", "進撃の巨人２") == pytest.approx(8 / 9)


def test_dice_similarity_single_character_folds() -> None:
    assert dice_similarity("a", "b") == 0.0
    assert dice_similarity("a", "ab") == 0.0
    assert dice_similarity("Ａ", "a") == 1.0


def test_containment_similarity_is_a_separate_track() -> None:
    assert containment_similarity("進撃", "進撃の巨人") == pytest.approx(0.7)
    assert containment_similarity("進撃の巨人", "進撃の巨人") == 1.0
    assert containment_similarity("巨人", "けいおん") == 0.0
    assert containment_similarity("", "進撃") == 0.0


def test_search_rank_orders_bigram_track_first() -> None:
    rows = ["進撃の巨人 完結編", "進撃の巨人", "巨人"]
    ranked = sorted(rows, key=lambda row: search_rank("進撃の巨人", row), reverse=True)
    assert ranked[0] == "進撃の巨人"
    assert search_rank("進撃", "進撃の巨人")[1] > 0


def test_is_exact_match_uses_folding() -> None:
    assert is_exact_match("ＳＨＩＲＯＢＡＫＯ", "shirobako")
    assert not is_exact_match("", "")
