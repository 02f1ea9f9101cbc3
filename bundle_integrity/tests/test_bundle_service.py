from __future__ import annotations

import asyncio

import pytest

from bundle_integrity.core.autofix import FixThresholds
from bundle_integrity.services import ingestion
from bundle_integrity.services.bundle_service import (
    BUNDLES,
    RECORDS,
    REVIEW_QUEUE,
    BundleService,
    record_doc_id,
)
from bundle_integrity.services.document_store import InMemoryDocumentStore, WriteOp
from bundle_integrity.utils.errors import (
    BundleBusyError,
    BundleNotFoundError,
    FormatError,
    RecordNotFoundError,
)


def _run(coro):
    return asyncio.run(coro)


def _service() -> BundleService:
    return BundleService(InMemoryDocumentStore(), thresholds=FixThresholds())


def _seed(service: BundleService, records):
    bundle = _run(service.create_bundle(title="Fractions", subject="Math", grade=5, tags=["core", " "]))
    _run(ingestion.commit(service, bundle.id, records))
    return bundle


def test_create_and_list_bundles() -> None:
    service = _service()
    b = _run(service.create_bundle(title=" Fractions ", subject="Math", grade=5, tags=["core", " "]))
    assert b.title == "Fractions"
    assert b.subject == "math"
    assert b.question_count == 0
    assert b.is_active is True
    assert b.tags == ["core"]
    _run(service.create_bundle(title="Cells", subject="science", grade=7))

    assert [x.id for x in _run(service.list_bundles(subject="MATH"))] == [b.id]
    assert len(_run(service.list_bundles())) == 2
    with pytest.raises(BundleNotFoundError):
        _run(service.get_bundle("nope"))


def test_revalidate_reads_every_record_of_the_bundle_only() -> None:
    service = _service()
    b1 = _seed(
        service,
        [
            {"id": "a", "question": "Same?", "options": ["1", "2"], "answer": "1"},
            {"id": "b", "question": "same? ", "options": ["1", "2"], "answer": "3"},
        ],
    )
    b2 = _seed(service, [{"id": "a", "question": "Same?", "options": ["1", "2"], "answer": "1"}])

    snap = _run(service.revalidate(b1.id))
    assert snap.index.record_count == 2
    assert snap.index.invalid_ids == {"b"}
    assert snap.index.duplicate_ids == {"a", "b"}
    assert _run(service.revalidate(b2.id)).index.duplicate_ids == set()


def test_update_record_replaces_and_revalidates() -> None:
    service = _service()
    b = _seed(service, [{"id": "a", "question": "2+2?", "options": ["3", "4"], "answer": "5"}])
    assert _run(service.revalidate(b.id)).index.invalid_ids == {"a"}

    snap = _run(service.update_record(b.id, "a", {"question": "2+2?", "options": ["3", "4"], "answer": "4"}))
    assert snap.index.invalid_ids == set()
    assert snap.find("a").answer == "4"
    stored = _run(service.store.get(RECORDS, record_doc_id(b.id, "a")))
    assert stored["bundle_id"] == b.id
    assert stored["updated_at"]

    with pytest.raises(RecordNotFoundError):
        _run(service.update_record(b.id, "zzz", {"question": "x"}))
    with pytest.raises(FormatError):
        _run(service.update_record(b.id, "a", {"options": {"not": "a list"}}))


def test_update_record_respects_bundle_lock() -> None:
    service = _service()
    b = _seed(service, [{"id": "a", "question": "q", "options": ["1", "2"], "answer": "1"}])
    service.locks.acquire(b.id, purpose="ingest")
    with pytest.raises(BundleBusyError):
        _run(service.update_record(b.id, "a", {"question": "q", "options": ["1", "2"], "answer": "2"}))


def test_flag_record_writes_review_queue_snapshot() -> None:
    service = _service()
    b = _seed(service, [{"id": "a", "question": "q", "options": ["1", "2"], "answer": "1"}])
    item_id = _run(service.flag_record(b.id, "a"))
    item = _run(service.store.get(REVIEW_QUEUE, item_id))
    assert item["reason"] == "Flagged manually"
    assert item["status"] == "pending"
    assert item["record_id"] == "a"
    assert item["record_snapshot"]["question"] == "q"
    assert "bundle_id" not in item["record_snapshot"]

    other = _run(service.flag_record(b.id, "a", reason="  wrong figure ", flagged_by="ops"))
    assert _run(service.store.get(REVIEW_QUEUE, other))["reason"] == "wrong figure"


def test_export_views() -> None:
    service = _service()
    b = _seed(
        service,
        [
            {"id": "a", "question": "dup", "options": ["1", "2"], "answer": "1"},
            {"id": "b", "question": "DUP", "options": ["1", "2"], "answer": "1"},
            {"id": "c", "question": "bad", "options": ["1"], "answer": "1"},
        ],
    )
    assert [r["id"] for r in _run(service.export_view(b.id, "invalid"))] == ["c"]
    assert [r["id"] for r in _run(service.export_view(b.id, "duplicates"))] == ["a", "b"]
    template = _run(service.export_view(b.id, "template"))
    assert {t.get("kind", "multiple_choice") for t in template} == {
        "multiple_choice",
        "numeric",
        "short_answer",
    }
    with pytest.raises(FormatError):
        _run(service.export_view(b.id, "everything"))


def test_recount_corrects_counter_drift() -> None:
    service = _service()
    b = _seed(service, [{"id": "a", "question": "q", "options": ["1", "2"], "answer": "1"}])
    _run(service.store.commit_batch([WriteOp.increment(BUNDLES, b.id, {"question_count": 7})]))
    assert _run(service.get_bundle(b.id)).question_count == 8
    assert _run(service.recount(b.id)).question_count == 1
