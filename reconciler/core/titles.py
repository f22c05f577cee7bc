"""Title canonicalization used for grouping, similarity and search-term generation."""

from __future__ import annotations

import re
import unicodedata

_BRACKETED_RE = re.compile(r"\([^()]*\)|\[[^\[\]]*\]|【[^【】]*】|〔[^〔〕]*〕|〈[^〈〉]*〉")
_DASH_RE = re.compile(r"[\-‐‑‒–—―−ー－〜～~]+")
_WHITESPACE_RE = re.compile(r"\s+")
_ELLIPSIS_RE = re.compile(r"\.{2,}|…+")
_PUNCTUATION_RE = re.compile(r"[!?。．.・:：,，、;「」『』()\[\]【】〔〕〈〉《》’'‘`“”\"☆★♥♡♪♫/\\#*+=_<>|^-]")

_SEASON_NUMBER_PATTERNS = (
    r"第\s*\d+\s*(?:期|シーズン|クール|部|章)",
    r"シーズン\s*\d+",
    r"(?<![a-z])(?:season|series|cour)\s*\d+(?![a-z])",
    r"(?<![a-z0-9])\d+(?:st|nd|rd|th)\s+(?:season|cour)(?![a-z])",
)
_SEASON_MARKER_PATTERNS = _SEASON_NUMBER_PATTERNS + (
    r"(?<![a-z])(?:the\s+)?final\s+season(?![a-z])",
    r"ファイナルシーズン",
    r"(?<![a-z])part\s*\d+(?![a-z])",
    r"パート\s*\d+",
    r"劇場版",
    r"(?<![a-z])the\s+movie(?![a-z])",
    r"(?<![a-z])movie(?![a-z])",
    r"(?<![a-z])(?:ova|oad|ona)(?![a-z])",
    r"(?<![a-z])specials?(?![a-z])",
    r"特別編",
    r"スペシャル",
)
_SEASON_NUMBER_RE = re.compile("|".join(_SEASON_NUMBER_PATTERNS), re.IGNORECASE)
_SEASON_MARKER_RE = re.compile("|".join(_SEASON_MARKER_PATTERNS), re.IGNORECASE)
_TRAILING_ROMAN_RE = re.compile(r"(?<=\S)\s+(?:ii|iii|iv|v|vi|vii|viii|ix|x)\s*$", re.IGNORECASE)

_TERM_SPLIT_WAVE_RE = re.compile(r"[〜～~]")
_TERM_SPLIT_DASH_RE = re.compile(r"[‐‑‒–—―−－]")
_PAREN_CONTENT_RE = re.compile(r"[（(](.*?)[）)]")


def fold_title(title: str | None) -> str:
    """Character-level folding shared by similarity scoring and exact-match checks.

    Width is folded with NFKC, dash variants collapse to one dash which is then
    dropped together with whitespace and a fixed punctuation set. Ellipsis runs
    collapse to a single ``…``.
    """
    if not title:
        return ""
    folded = unicodedata.normalize("NFKC", title).lower()
    folded = _WHITESPACE_RE.sub("", folded)
    folded = _DASH_RE.sub("-", folded)
    folded = _ELLIPSIS_RE.sub("…", folded)
    return _PUNCTUATION_RE.sub("", folded)


def normalize_title(title: str | None) -> str:
    """Exported series grouping key.

    Seasons, movies and specials of one series map to the same key. It is never
    used to match or link works, since sequels are distinct catalog entries;
    seasonal discovery uses it to count how many series a crawl touched.
    """
    current = title or ""
    while True:
        normalized = _normalize_once(current)
        if normalized == current:
            return normalized
        current = normalized


def _normalize_once(title: str) -> str:
    text = unicodedata.normalize("NFKC", title)
    text = _BRACKETED_RE.sub(" ", text)
    text = _SEASON_MARKER_RE.sub(" ", text)
    text = _TRAILING_ROMAN_RE.sub("", text.strip())
    return fold_title(text)


def strip_annotations(title: str | None) -> str:
    text = unicodedata.normalize("NFKC", (title or "").strip()).lstrip("+")
    text = _BRACKETED_RE.sub(" ", text)
    return _WHITESPACE_RE.sub(" ", text).strip()


def canonical_title(title: str | None) -> str:
    """Display title without annotations or season numbering, used as the resolution query."""
    text = strip_annotations(title)
    text = _SEASON_NUMBER_RE.sub(" ", text)
    return _WHITESPACE_RE.sub(" ", text).strip()


def is_short_ascii(title: str | None, *, max_length: int) -> bool:
    folded = fold_title(title)
    return bool(folded) and len(folded) <= max_length and folded.isascii() and folded.isalnum()


def generate_search_terms(title: str | None, *, limit: int = 3) -> list[str]:
    """Query variants for catalogs that fail on the literal title.

    Order: literal title, annotation/season-stripped title, bracket contents,
    whitespace tokens, wave-dash segments, dash segments.
    """
    literal = (title or "").strip().lstrip("+").strip()
    if not literal:
        return []

    terms: list[str] = [literal]
    stripped = canonical_title(literal)
    if stripped and stripped != literal:
        terms.append(stripped)

    for part in _PAREN_CONTENT_RE.findall(literal):
        cleaned = _SEASON_NUMBER_RE.sub(" ", part).strip()
        if cleaned:
            terms.append(cleaned)

    terms.extend(chunk for chunk in literal.split() if len(chunk) >= 2)
    terms.extend(chunk.strip() for chunk in _TERM_SPLIT_WAVE_RE.split(literal) if len(chunk.strip()) >= 2)
    for chunk in _TERM_SPLIT_DASH_RE.sub("-", literal).split("-"):
        cleaned = canonical_title(chunk)
        if len(cleaned) >= 2:
            terms.append(cleaned)

    unique: list[str] = []
    for term in terms:
        if term not in unique:
            unique.append(term)
    return unique[: max(1, limit)]
