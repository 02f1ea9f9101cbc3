from __future__ import annotations

import random

from bundle_integrity.core.duplicates import detect, duplicate_groups
from bundle_integrity.models.schemas import record_from_dict


def _rec(rid: str, text: str):
    return record_from_dict({"id": rid, "question": text, "options": ["a", "b"], "answer": "a"})


def test_pair_with_same_normalized_text_is_flagged_and_nothing_else() -> None:
    records = [
        _rec("a", "What is 2+2?"),
        _rec("b", "Name a prime."),
        _rec("c", "  what is 2+2?  "),
        _rec("d", "What is 2+3?"),
    ]
    assert detect(records) == {"a", "c"}


def test_triple_flags_every_member() -> None:
    records = [_rec("a", "x"), _rec("b", "X"), _rec("c", "x "), _rec("d", "y")]
    assert detect(records) == {"a", "b", "c"}
    assert duplicate_groups(records) == [["a", "b", "c"]]


def test_membership_is_order_independent() -> None:
    records = [_rec(str(i), t) for i, t in enumerate(["p", "q", "P", "r", "q", "s"])]
    expected = detect(records)
    shuffled = list(records)
    random.Random(7).shuffle(shuffled)
    assert detect(shuffled) == expected == {"0", "2", "1", "4"}


def test_unique_records_produce_nothing() -> None:
    assert detect([_rec("a", "one"), _rec("b", "two")]) == set()
    assert detect([]) == set()
