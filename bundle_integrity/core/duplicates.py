from __future__ import annotations

from typing import Dict, List, Sequence, Set

from bundle_integrity.core.validator import record_key
from bundle_integrity.models.schemas import QuestionRecordBase, normalize_text


def _group_by_text(records: Sequence[QuestionRecordBase]) -> Dict[str, List[str]]:
    groups: Dict[str, List[str]] = {}
    for idx, record in enumerate(records or []):
        groups.setdefault(normalize_text(record.question), []).append(
            record_key(record, idx)
        )
    return groups


def detect(records: Sequence[QuestionRecordBase]) -> Set[str]:
    """
    Ids of records whose normalized prompt text is shared with at least one other
    record in the same set. Uniquely worded records are never flagged.
    """
    seen: Dict[str, List[str]] = {}
    duplicates: Set[str] = set()
    for idx, record in enumerate(records or []):
        rid = record_key(record, idx)
        text = normalize_text(record.question)
        ids = seen.get(text)
        if ids is None:
            seen[text] = [rid]
            continue
        ids.append(rid)
        duplicates.update(ids)
    return duplicates


def duplicate_groups(records: Sequence[QuestionRecordBase]) -> List[List[str]]:
    """Groups of ids sharing one normalized prompt, in first-seen order."""
    return [ids for ids in _group_by_text(records).values() if len(ids) > 1]
