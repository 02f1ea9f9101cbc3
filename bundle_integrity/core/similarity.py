"""
Lexical similarity used to rank multiple-choice options against a stated answer.

Ranking signal only: the score never decides correctness on its own.
"""

from __future__ import annotations

from typing import Callable

from rapidfuzz.distance import Levenshtein

from bundle_integrity.models.schemas import normalize_text

Scorer = Callable[[str, str], float]


def score(a: str, b: str) -> float:
    """
    Normalized Levenshtein similarity of the trimmed, casefolded inputs.

    1.0 for identical text (including two empty strings), 0.0 when one side is
    empty or nothing lines up. Always within [0, 1].
    """
    na = normalize_text(a)
    nb = normalize_text(b)
    if na == nb:
        return 1.0
    if not na or not nb:
        return 0.0
    value = float(Levenshtein.normalized_similarity(na, nb))
    return max(0.0, min(1.0, value))
