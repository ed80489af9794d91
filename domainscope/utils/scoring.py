# File: domainscope/utils/scoring.py
# =============================================================================
# Centralized Score Math
# =============================================================================
# Single source of truth for turning rule penalties into scores and grades.
# Used by: scanner/analyzers/scorer, the CLI summary line.
#
# Scale (higher is better):
#   100     = every rule met
#   90-100  = A
#   80-90   = B
#   70-80   = C
#   60-70   = D
#   < 60    = F
#
# Thresholds are configurable; the ones above are the bundled defaults.
# =============================================================================

from __future__ import annotations

from typing import Iterable, Mapping, Sequence, Tuple

DEFAULT_GRADES: Tuple[Tuple[float, str], ...] = ((90.0, "A"), (80.0, "B"), (70.0, "C"), (60.0, "D"))

GRADE_DESCRIPTIONS = {
    "A": "Excellent, only minor suggestions",
    "B": "Good, a few important fixes",
    "C": "Fair, several issues worth fixing",
    "D": "Poor, significant problems present",
    "F": "Failing, immediate action required",
}


def clip_score(value: float) -> float:
    return max(0.0, min(100.0, value))


def category_score(penalties: Iterable[float]) -> float:
    """
    Start from 100 and subtract every penalty, clipped to [0, 100].

    Penalties are never negative, so adding one can only lower the result.
    """
    return round(clip_score(100.0 - sum(max(0.0, p) for p in penalties)), 1)


def weighted_overall(scores: Mapping[object, float], weights: Mapping[object, float]) -> float:
    """
    Weighted mean of category scores over every weighted category.

    Categories missing from `scores` count as 0 so the denominator never
    changes with the data that happened to arrive.
    """
    total_weight = sum(w for w in weights.values() if w > 0)
    if total_weight <= 0:
        return 0.0
    weighted = sum(clip_score(scores.get(cat, 0.0)) * w for cat, w in weights.items() if w > 0)
    return round(clip_score(weighted / total_weight), 1)


def letter_grade(
    score: float,
    thresholds: Sequence[Tuple[float, str]] = DEFAULT_GRADES,
    fallback: str = "F",
) -> str:
    """
    Map a score to a letter using ordered (min_score, grade) pairs.

    Pairs are checked from the highest minimum down, so a higher score can
    never land in a worse bucket.
    """
    for minimum, grade in sorted(thresholds, key=lambda t: t[0], reverse=True):
        if score >= minimum:
            return grade
    return fallback


def grade_description(grade: str) -> str:
    return GRADE_DESCRIPTIONS.get(grade, "")
