from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Literal

from reconciler.core.titles import canonical_title, fold_title, generate_search_terms, is_short_ascii
from reconciler.services.similarity import dice_similarity

ResolutionAction = Literal["confirm", "defer", "none"]


@dataclass(slots=True, frozen=True)
class ResolutionPolicy:
    """Confirmation thresholds.

    The numbers were tuned against one catalog and are data, not invariants. The
    contract is the shape: near-certain, confident with a gap, a ladder of
    (threshold, gap) pairs, exact-name rescue, lone-candidate rescue, and the
    short-ASCII guard that overrides all of them.

    Hints adjust the ranking before those rules run: a candidate whose release
    year matches the work gains ``year_match_bonus``, and a work known to span
    ``series_min_episodes`` or more episodes prefers the best series-format
    candidate when it trails the leader by at most ``series_preference_margin``.
    """

    near_certain: float = 0.95
    confident: float = 0.915
    confident_gap: float = 0.03
    gap_ladder: tuple[tuple[float, float], ...] = ((0.875, 0.095), (0.865, 0.195))
    exact_rescue: float = 0.85
    lone_candidate_rescue: float = 0.65
    short_ascii_max_length: int = 6
    stop_early_at: float = 0.95
    candidates_to_keep: int = 2
    max_terms: int = 3
    year_match_bonus: float = 0.08
    series_preference_margin: float = 0.05
    series_min_episodes: int = 2


DEFAULT_POLICY = ResolutionPolicy()
SERIES_FORMATS = frozenset({"tv", "tv_short", "ona"})


@dataclass(slots=True, frozen=True)
class MatchCandidate:
    external_id: str
    names: tuple[str, ...]
    hints: dict[str, Any] = field(default_factory=dict)

    @property
    def is_series(self) -> bool:
        kind = self.hints.get("media_type") or self.hints.get("format")
        return isinstance(kind, str) and kind.lower() in SERIES_FORMATS


@dataclass(slots=True)
class ScoredCandidate:
    candidate: MatchCandidate
    score: float
    exact: bool
    year_match: bool = False

    @property
    def external_id(self) -> str:
        return self.candidate.external_id


@dataclass(slots=True)
class ResolutionDecision:
    action: ResolutionAction
    query: str
    term: str | None
    best: ScoredCandidate | None
    top_score: float
    runner_up_score: float
    gap: float
    exact: bool
    only_one: bool
    ranked: list[ScoredCandidate]
    reasons: list[str]
    series_preferred: bool = False

    def top(self, limit: int) -> list[ScoredCandidate]:
        return self.ranked[: max(0, limit)]

    def summary(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "query": self.query,
            "term": self.term,
            "external_id": self.best.external_id if self.best else None,
            "top_score": round(self.top_score, 4),
            "runner_up_score": round(self.runner_up_score, 4),
            "gap": round(self.gap, 4),
            "exact": self.exact,
            "only_one": self.only_one,
            "reasons": list(self.reasons),
            "series_preferred": self.series_preferred,
            "ranked": [
                {"external_id": row.external_id, "score": round(row.score, 4), "year_match": row.year_match}
                for row in self.ranked[:5]
            ],
        }


def score_candidate(query: str, candidate: MatchCandidate) -> ScoredCandidate:
    folded_query = fold_title(query)
    best = 0.0
    for name in candidate.names:
        if folded_query and fold_title(name) == folded_query:
            return ScoredCandidate(candidate=candidate, score=1.0, exact=True)
        best = max(best, dice_similarity(query, name))
    return ScoredCandidate(candidate=candidate, score=best, exact=False)


def _same_year(hinted: Any, year: int | None) -> bool:
    if year is None or hinted is None:
        return False
    return str(hinted).strip()[:4] == str(year)


def _prefer_series(ranked: list[ScoredCandidate], episode_count: int | None, policy: ResolutionPolicy) -> bool:
    if episode_count is None or episode_count < policy.series_min_episodes or ranked[0].candidate.is_series:
        return False
    series = next((row for row in ranked if row.candidate.is_series), None)
    if series is None or ranked[0].score - series.score > policy.series_preference_margin:
        return False
    ranked.remove(series)
    ranked.insert(0, series)
    return True


def evaluate_candidates(
    query: str,
    candidates: Sequence[MatchCandidate],
    *,
    policy: ResolutionPolicy = DEFAULT_POLICY,
    term: str | None = None,
    year: int | None = None,
    episode_count: int | None = None,
) -> ResolutionDecision:
    unique: dict[str, MatchCandidate] = {}
    for candidate in candidates:
        unique.setdefault(candidate.external_id, candidate)

    scored: list[ScoredCandidate] = []
    for candidate in unique.values():
        row = score_candidate(query, candidate)
        if _same_year(candidate.hints.get("year"), year):
            row.score += policy.year_match_bonus
            row.year_match = True
        scored.append(row)
    ranked = sorted(scored, key=lambda row: (-row.score, row.external_id))
    if not ranked:
        return ResolutionDecision(
            action="none",
            query=query,
            term=term,
            best=None,
            top_score=0.0,
            runner_up_score=0.0,
            gap=0.0,
            exact=False,
            only_one=False,
            ranked=[],
            reasons=["no_candidates"],
        )

    series_preferred = _prefer_series(ranked, episode_count, policy)
    best = ranked[0]
    top1 = best.score
    top2 = ranked[1].score if len(ranked) > 1 else 0.0
    gap = max(0.0, top1 - top2)
    only_one = len(ranked) == 1

    reasons: list[str] = []
    if top1 >= policy.near_certain:
        reasons.append("near_certain")
    if top1 >= policy.confident and gap >= policy.confident_gap:
        reasons.append("confident_gap")
    if any(top1 >= threshold and gap >= required_gap for threshold, required_gap in policy.gap_ladder):
        reasons.append("gap_ladder")
    if top1 >= policy.exact_rescue and best.exact:
        reasons.append("exact_rescue")
    if top1 >= policy.lone_candidate_rescue and only_one:
        reasons.append("lone_candidate")

    action: ResolutionAction = "confirm" if reasons else "defer"
    if action == "confirm" and gap <= 0.0 and is_short_ascii(query, max_length=policy.short_ascii_max_length):
        action = "defer"
        reasons.append("short_ascii_guard")

    return ResolutionDecision(
        action=action,
        query=query,
        term=term,
        best=best,
        top_score=top1,
        runner_up_score=top2,
        gap=gap,
        exact=best.exact,
        only_one=only_one,
        ranked=ranked,
        reasons=reasons,
        series_preferred=series_preferred,
    )


async def resolve_title(
    title: str,
    search: Callable[[str], Awaitable[Sequence[MatchCandidate]]],
    *,
    policy: ResolutionPolicy = DEFAULT_POLICY,
    year: int | None = None,
    episode_count: int | None = None,
) -> ResolutionDecision:
    """Try each search-term variant of ``title`` and keep the globally best batch."""
    query = canonical_title(title) or title
    chosen: ResolutionDecision | None = None

    for term in generate_search_terms(title, limit=policy.max_terms):
        candidates = await search(term)
        if not candidates:
            continue
        decision = evaluate_candidates(
            query, candidates, policy=policy, term=term, year=year, episode_count=episode_count
        )
        if chosen is None or decision.top_score > chosen.top_score:
            chosen = decision
        if decision.top_score >= policy.stop_early_at:
            break

    if chosen is None:
        return evaluate_candidates(query, [], policy=policy)
    return chosen
