"""
Auto-fix suggestions for multiple-choice records whose answer matches no option.

Each stated answer is scored against every option; the best option becomes the
suggestion and the score gap to the runner-up decides the confidence tier:

- high_confidence: best > 0.80 (typo / casing mismatch)
- clear_winner:    best - second_best > 0.15 and best > 0.40
- best_guess:      best > 0.40 and neither of the above

Nothing at or below 0.40 is suggested. Suggestions are advisory; applying them
is the repair workflow's job and always needs operator confirmation.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence, Set, Tuple

from bundle_integrity.core.similarity import Scorer, score
from bundle_integrity.core.validator import record_key
from bundle_integrity.models.schemas import (
    FixCandidate,
    FixTier,
    MultipleChoiceRecord,
    QuestionRecordBase,
    normalize_text,
)


@dataclass(frozen=True)
class FixThresholds:
    high_confidence: float = 0.80
    min_score: float = 0.40
    clear_margin: float = 0.15

    @classmethod
    def from_settings(cls) -> "FixThresholds":
        from bundle_integrity.utils.settings import get_settings

        settings = get_settings()
        return cls(
            high_confidence=float(settings.autofix_high_confidence),
            min_score=float(settings.autofix_min_score),
            clear_margin=float(settings.autofix_clear_margin),
        )


DEFAULT_THRESHOLDS = FixThresholds()


def classify(
    best: float, second_best: float, thresholds: FixThresholds = DEFAULT_THRESHOLDS
) -> Optional[FixTier]:
    """Tier for a (best, runner-up) score pair, or None when best is too weak."""
    high = best > thresholds.high_confidence
    clear = (best - second_best) > thresholds.clear_margin and best > thresholds.min_score
    guess = best > thresholds.min_score and not high and not clear
    if high:
        return FixTier.HIGH_CONFIDENCE
    if clear:
        return FixTier.CLEAR_WINNER
    if guess:
        return FixTier.BEST_GUESS
    return None


def rank_options(
    answer: str, options: Sequence[str], scorer: Scorer = score
) -> List[Tuple[str, float]]:
    """Options scored against the answer, best first. Ties keep option order."""
    scored = [(opt, float(scorer(answer, opt))) for opt in options]
    scored.sort(key=lambda pair: pair[1], reverse=True)
    return scored


def is_fix_eligible(record: QuestionRecordBase) -> bool:
    if not isinstance(record, MultipleChoiceRecord):
        return False
    if not record.options or not record.answer:
        return False
    target = normalize_text(record.answer)
    return not any(normalize_text(opt) == target for opt in record.options)


def suggest_fix(
    record: MultipleChoiceRecord,
    *,
    record_id: str,
    scorer: Scorer = score,
    thresholds: FixThresholds = DEFAULT_THRESHOLDS,
) -> Optional[FixCandidate]:
    ranked = rank_options(record.answer or "", record.options, scorer)
    best_option, best = ranked[0]
    second_best = ranked[1][1] if len(ranked) > 1 else 0.0
    tier = classify(best, second_best, thresholds)
    if tier is None:
        return None
    return FixCandidate(
        record_id=record_id,
        question_text=record.question,
        original_answer=record.answer or "",
        suggested_answer=best_option,
        # Half-up, so 0.825 shows as 83%.
        confidence_percent=min(100, int(best * 100 + 0.5)),
        is_best_guess=tier is FixTier.BEST_GUESS,
        tier=tier,
    )


def suggest(
    records: Sequence[QuestionRecordBase],
    *,
    scorer: Scorer = score,
    thresholds: FixThresholds = DEFAULT_THRESHOLDS,
) -> List[FixCandidate]:
    """Fix candidates for every eligible record, in record order."""
    out: List[FixCandidate] = []
    for idx, record in enumerate(records or []):
        if not is_fix_eligible(record):
            continue
        candidate = suggest_fix(
            record,  # type: ignore[arg-type]
            record_id=record_key(record, idx),
            scorer=scorer,
            thresholds=thresholds,
        )
        if candidate is not None:
            out.append(candidate)
    return out


def default_selection(candidates: Sequence[FixCandidate]) -> Set[str]:
    """Pre-selected ids for review: every candidate that is not a best guess."""
    return {c.record_id for c in candidates if not c.is_best_guess}
