"""Title similarity scoring.

Two independent tracks:

* ``dice_similarity`` - Dice coefficient over character bigrams. This is the only
  track used to decide whether an external record is the same work.
* ``containment_similarity`` - substring containment, used to order free-text
  search results. Containment is a much weaker signal than bigram overlap, so
  the two tracks are never averaged; ``search_rank`` returns them side by side
  for lexicographic ordering.
"""

from __future__ import annotations

from collections import Counter

from reconciler.core.titles import fold_title


def bigrams(folded: str) -> Counter[str]:
    return Counter(folded[index : index + 2] for index in range(len(folded) - 1))


def dice_similarity(left: str | None, right: str | None) -> float:
    a = fold_title(left)
    b = fold_title(right)
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0

    left_grams = bigrams(a)
    right_grams = bigrams(b)
    total = sum(left_grams.values()) + sum(right_grams.values())
    if not left_grams or not right_grams:
        return 0.0
    overlap = sum((left_grams & right_grams).values())
    return (2.0 * overlap) / total


def containment_similarity(left: str | None, right: str | None) -> float:
    a = fold_title(left)
    b = fold_title(right)
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    shorter, longer = (a, b) if len(a) <= len(b) else (b, a)
    if shorter in longer:
        return 0.5 + 0.5 * (len(shorter) / len(longer))
    return 0.0


def search_rank(query: str | None, text: str | None) -> tuple[float, float]:
    """Sort key for consumer-facing text search: bigram track first, containment second."""
    return (dice_similarity(query, text), containment_similarity(query, text))


def is_exact_match(left: str | None, right: str | None) -> bool:
    a = fold_title(left)
    return bool(a) and a == fold_title(right)
