"""
Content integrity checks.

This module is the stable import surface for the rest of the codebase.
Implementation is split into:
- `validator.py`: kind-specific rules -> invalid ids
- `duplicates.py`: normalized prompt grouping -> duplicate ids
- `autofix.py`: option ranking -> tiered fix candidates
- `similarity.py`: the default lexical scorer
"""

from __future__ import annotations

from typing import Optional, Sequence

from bundle_integrity.core.autofix import (
    FixThresholds,
    classify,
    default_selection,
    suggest,
)
from bundle_integrity.core.duplicates import detect, duplicate_groups
from bundle_integrity.core.similarity import Scorer, score
from bundle_integrity.core.validator import record_key, validate, validation_issues
from bundle_integrity.models.schemas import QuestionRecordBase, ValidationIndex


def build_validation_index(
    records: Sequence[QuestionRecordBase],
    *,
    scorer: Scorer = score,
    thresholds: Optional[FixThresholds] = None,
) -> ValidationIndex:
    """Recompute every derived view from scratch for one record set."""
    issues = validation_issues(records)
    return ValidationIndex(
        record_count=len(records or []),
        invalid_ids=set(issues.keys()),
        duplicate_ids=detect(records),
        fix_candidates=suggest(
            records, scorer=scorer, thresholds=thresholds or FixThresholds()
        ),
        issues=issues,
    )


__all__ = [
    "FixThresholds",
    "Scorer",
    "build_validation_index",
    "classify",
    "default_selection",
    "detect",
    "duplicate_groups",
    "record_key",
    "score",
    "suggest",
    "validate",
    "validation_issues",
]
