from __future__ import annotations

from typing import Dict, List, Sequence, Set

from bundle_integrity.models.schemas import QuestionRecordBase, RecordIssue


def record_key(record: QuestionRecordBase, index: int) -> str:
    """Stable id for derived views; records not yet assigned an id use their position."""
    return record.id or f"temp_{index}"


def validation_issues(
    records: Sequence[QuestionRecordBase],
) -> Dict[str, List[RecordIssue]]:
    """Per-record rule violations, keyed by record id. Valid records are omitted."""
    out: Dict[str, List[RecordIssue]] = {}
    for idx, record in enumerate(records or []):
        found = record.issues()
        if found:
            out[record_key(record, idx)] = list(found)
    return out


def validate(records: Sequence[QuestionRecordBase]) -> Set[str]:
    """
    Ids of records that fail the rule for their kind.

    Pure: recompute from the full record set after every mutation.
    """
    return set(validation_issues(records).keys())
