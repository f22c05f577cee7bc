from __future__ import annotations

import pytest

from reconciler.core.titles import (
    canonical_title,
    fold_title,
    generate_search_terms,
    is_short_ascii,
    normalize_title,
    strip_annotations,
)

SAMPLE_TITLES = [
    "進撃の巨人 Season 2",
    "進撃の巨人 The Final Season",
    "Re:ゼロから始める異世界生活 2nd season",
    "ソードアート・オンライン（劇場版）",
    "ＳＨＩＲＯＢＡＫＯ",
    "Overlord III",
    "ダンジョン飯（Delicious in Dungeon）",
    "【推しの子】 第2期",
    "Hawaii Five",
    "ID",
    "",
    "   ",
    "((nested)) [tags] II",
    "Season 2 Season 3",
]


@pytest.mark.parametrize("title", SAMPLE_TITLES)
def test_normalize_title_is_idempotent(title: str) -> None:
    once = normalize_title(title)
    assert normalize_title(once) == once


def test_normalize_title_groups_seasons_and_movies() -> None:
    assert normalize_title("進撃の巨人 Season 2") == "進撃の巨人"
    assert normalize_title("進撃の巨人 The Final Season") == "進撃の巨人"
    assert normalize_title("進撃の巨人 第3期") == "進撃の巨人"
    assert normalize_title("ソードアート・オンライン（劇場版）") == normalize_title("劇場版 ソードアート・オンライン")


def test_normalize_title_strips_trailing_roman_numerals_only_after_a_space() -> None:
    assert normalize_title("Overlord III") == "overlord"
    assert normalize_title("Hawaii") == "hawaii"


def test_fold_title_folds_width_case_and_ellipses() -> None:
    assert fold_title("ＳＨＩＲＯＢＡＫＯ") == "shirobako"
    assert fold_title("Hello...World") == fold_title("Hello…World")
    assert fold_title("Re:Zero - Starting Life") == "rezerostartinglife"
    assert fold_title(None) == ""


def test_fold_title_keeps_season_markers() -> None:
    assert fold_title("Season 2") == "season2"


def test_strip_annotations_and_canonical_title() -> None:
    assert strip_annotations("+ダンジョン飯（Delicious in Dungeon）") == "ダンジョン飯"
    assert canonical_title("進撃の巨人 Season 2") == "進撃の巨人"
    assert canonical_title("劇場版 ソードアート・オンライン") == "劇場版 ソードアート・オンライン"


def test_is_short_ascii() -> None:
    assert is_short_ascii("ID", max_length=6)
    assert is_short_ascii("K-ON!", max_length=6)
    assert not is_short_ascii("Shirobako", max_length=6)
    assert not is_short_ascii("進撃", max_length=6)
    assert not is_short_ascii("", max_length=6)


def test_generate_search_terms_orders_variants() -> None:
    assert generate_search_terms("進撃の巨人 Season 2") == ["進撃の巨人 Season 2", "進撃の巨人", "Season"]


def test_generate_search_terms_uses_bracket_contents() -> None:
    terms = generate_search_terms("ダンジョン飯（Delicious in Dungeon）", limit=3)
    assert terms == ["ダンジョン飯（Delicious in Dungeon）", "ダンジョン飯", "Delicious in Dungeon"]


def test_generate_search_terms_splits_on_wave_dash() -> None:
    terms = generate_search_terms("ひだまりスケッチ〜特別編〜", limit=5)
    assert terms[0] == "ひだまりスケッチ〜特別編〜"
    assert "ひだまりスケッチ" in terms


def test_generate_search_terms_edge_cases() -> None:
    assert generate_search_terms("") == []
    assert generate_search_terms(None) == []
    assert generate_search_terms("+ID") == ["ID"]
    assert generate_search_terms("alpha beta gamma", limit=2) == ["alpha beta gamma", "alpha"]
