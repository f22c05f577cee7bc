from __future__ import annotations

import asyncio
import random

from reconciler.services.resolver import (
    MatchCandidate,
    ResolutionPolicy,
    evaluate_candidates,
    resolve_title,
    score_candidate,
)


def _candidates(*rows: tuple[str, str]) -> list[MatchCandidate]:
    return [MatchCandidate(external_id=external_id, names=(name,)) for external_id, name in rows]


def test_confirms_exact_match_over_sequel() -> None:
    decision = evaluate_candidates("進撃の巨人", _candidates(("1", "進撃の巨人"), ("2", "進撃の巨人２")))

    assert decision.action == "confirm"
    assert decision.best is not None
    assert decision.best.external_id == "1"
    assert decision.exact is True
    assert decision.top_score == 1.0
    assert "near_certain" in decision.reasons


def test_short_ascii_tie_is_deferred() -> None:
    decision = evaluate_candidates("ID", _candidates(("10", "ID"), ("20", "ID")))

    assert decision.action == "defer"
    assert decision.gap == 0.0
    assert "short_ascii_guard" in decision.reasons


def test_no_candidates_means_none() -> None:
    decision = evaluate_candidates("進撃の巨人", [])
    assert decision.action == "none"
    assert decision.best is None
    assert decision.reasons == ["no_candidates"]


def test_lone_candidate_rescue() -> None:
    decision = evaluate_candidates("こんにちは世界", _candidates(("7", "こんにちは世界の旅")))

    assert decision.action == "confirm"
    assert decision.only_one is True
    assert decision.reasons == ["lone_candidate"]


def test_close_runner_up_defers() -> None:
    decision = evaluate_candidates(
        "こんにちは世界",
        _candidates(("7", "こんにちは世界の旅"), ("8", "こんにちは")),
    )

    assert decision.action == "defer"
    assert decision.best is not None
    assert decision.best.external_id == "7"
    assert decision.reasons == []


def test_exact_rescue_applies_when_thresholds_are_raised() -> None:
    strict = ResolutionPolicy(near_certain=1.01, confident=1.01, gap_ladder=())
    decision = evaluate_candidates("進撃の巨人", _candidates(("2", "進撃の巨人"), ("1", "進撃の巨人")), policy=strict)

    assert decision.action == "confirm"
    assert decision.reasons == ["exact_rescue"]
    assert decision.best is not None
    assert decision.best.external_id == "1"


def test_ranking_is_deterministic_under_input_order() -> None:
    rows = _candidates(("b", "進撃の巨人２"), ("a", "進撃の巨人 2"), ("c", "進撃"), ("d", "巨人"))
    expected = [row.external_id for row in evaluate_candidates("進撃の巨人", rows).ranked]

    shuffler = random.Random(7)
    for _ in range(5):
        shuffled = rows[:]
        shuffler.shuffle(shuffled)
        assert [row.external_id for row in evaluate_candidates("進撃の巨人", shuffled).ranked] == expected
    assert expected[:2] == ["a", "b"]


def test_duplicate_external_ids_are_scored_once() -> None:
    decision = evaluate_candidates("進撃の巨人", _candidates(("1", "進撃の巨人"), ("1", "進撃の巨人")))
    assert len(decision.ranked) == 1
    assert decision.only_one is True


def test_score_candidate_takes_best_alternate_name() -> None:
    candidate = MatchCandidate(external_id="16498", names=("Shingeki no Kyojin", "Attack on Titan", "進撃の巨人"))
    scored = score_candidate("進撃の巨人", candidate)
    assert scored.score == 1.0
    assert scored.exact is True


def test_resolve_title_tries_terms_and_stops_early() -> None:
    calls: list[str] = []

    async def search(term: str) -> list[MatchCandidate]:
        calls.append(term)
        if term == "進撃の巨人":
            return _candidates(("1", "進撃の巨人"), ("2", "進撃の巨人２"))
        return []

    decision = asyncio.run(resolve_title("進撃の巨人 Season 2", search))

    assert calls == ["進撃の巨人 Season 2", "進撃の巨人"]
    assert decision.action == "confirm"
    assert decision.term == "進撃の巨人"
    assert decision.best is not None
    assert decision.best.external_id == "1"


def test_resolve_title_keeps_globally_best_batch() -> None:
    async def search(term: str) -> list[MatchCandidate]:
        if term == "Season":
            return _candidates(("9", "Season"))
        return _candidates(("5", "進撃の巨人 完結編"))

    decision = asyncio.run(resolve_title("進撃の巨人 Season 2", search))

    assert decision.best is not None
    assert decision.best.external_id == "5"


def test_resolve_title_without_hits_is_none() -> None:
    async def search(term: str) -> list[MatchCandidate]:
        return []

    decision = asyncio.run(resolve_title("存在しない作品", search))
    assert decision.action == "none"


def _tv_and_movie(tv_name: str = "進撃の巨人") -> list[MatchCandidate]:
    return [
        MatchCandidate(external_id="tv:1429", names=(tv_name,), hints={"media_type": "tv", "year": 2013}),
        MatchCandidate(external_id="movie:391", names=("進撃の巨人",), hints={"media_type": "movie", "year": 2015}),
    ]


def test_same_name_pair_without_hints_falls_back_to_id_order() -> None:
    decision = evaluate_candidates("進撃の巨人", _tv_and_movie())

    assert decision.best.external_id == "movie:391"
    assert decision.gap == 0.0
    assert decision.series_preferred is False


def test_matching_year_breaks_same_name_tie() -> None:
    decision = evaluate_candidates("進撃の巨人", _tv_and_movie(), year=2013)

    assert decision.action == "confirm"
    assert decision.best.external_id == "tv:1429"
    assert decision.best.year_match is True
    assert decision.top_score == 1.0 + ResolutionPolicy().year_match_bonus
    assert round(decision.gap, 4) == 0.08
    assert decision.summary()["ranked"][0]["year_match"] is True


def test_multi_episode_work_prefers_series_within_margin() -> None:
    decision = evaluate_candidates("進撃の巨人", _tv_and_movie(), episode_count=25)

    assert decision.action == "confirm"
    assert decision.best.external_id == "tv:1429"
    assert decision.series_preferred is True
    assert decision.summary()["series_preferred"] is True


def test_series_preference_respects_margin_and_episode_floor() -> None:
    candidates = _tv_and_movie(tv_name="進撃の巨人 完結編")
    tv_score = score_candidate("進撃の巨人", candidates[0]).score
    assert 1.0 - tv_score > ResolutionPolicy().series_preference_margin

    outside_margin = evaluate_candidates("進撃の巨人", candidates, episode_count=25)
    assert outside_margin.best.external_id == "movie:391"
    assert outside_margin.series_preferred is False

    wide = ResolutionPolicy(series_preference_margin=1.0)
    assert evaluate_candidates("進撃の巨人", candidates, policy=wide, episode_count=25).best.external_id == "tv:1429"

    single_episode = evaluate_candidates("進撃の巨人", _tv_and_movie(), episode_count=1)
    assert single_episode.best.external_id == "movie:391"
    assert single_episode.series_preferred is False


def test_anilist_formats_count_as_series() -> None:
    assert MatchCandidate(external_id="1", names=("a",), hints={"format": "TV"}).is_series
    assert MatchCandidate(external_id="2", names=("a",), hints={"format": "ONA"}).is_series
    assert not MatchCandidate(external_id="3", names=("a",), hints={"format": "MOVIE"}).is_series
    assert not MatchCandidate(external_id="4", names=("a",)).is_series
