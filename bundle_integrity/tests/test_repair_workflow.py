from __future__ import annotations

import asyncio

import pytest

from bundle_integrity.core.autofix import FixThresholds
from bundle_integrity.services import ingestion
from bundle_integrity.services.bundle_service import RECORDS, BundleService
from bundle_integrity.services.document_store import InMemoryDocumentStore
from bundle_integrity.services.repair_workflow import RepairState, get_repair_session
from bundle_integrity.utils.errors import (
    BundleBusyError,
    InvalidTransitionError,
    RecordNotFoundError,
    StoreUnavailableError,
    WriteFailure,
)


def _run(coro):
    return asyncio.run(coro)


class _FlakyStore(InMemoryDocumentStore):
    """
    Rejects batches that touch bundle records while `fail_records` is set.
    Record reads fail while `fail_reads` is set; `break_reads_after_write`
    turns that on as soon as a record batch lands.
    """

    def __init__(self) -> None:
        super().__init__()
        self.fail_records = False
        self.write_error: Exception = WriteFailure("store rejected the batch")
        self.fail_reads = False
        self.break_reads_after_write = False

    async def commit_batch(self, ops):
        ops = list(ops)
        touches_records = any(op.collection == RECORDS for op in ops)
        if self.fail_records and touches_records:
            raise self.write_error
        await super().commit_batch(ops)
        if self.break_reads_after_write and touches_records:
            self.fail_reads = True

    async def query(self, collection, filters=None):
        if self.fail_reads and collection == RECORDS:
            raise StoreUnavailableError("record read timed out")
        return await super().query(collection, filters)


RECORDS_FIXTURE = [
    {"id": "hi", "question": "Capital of France?", "options": ["Paris", "London", "Berlin"], "answer": "paris."},
    {"id": "cw", "question": "Sky colour?", "options": ["Red", "Blue"], "answer": "Bleu"},
    {"id": "bg", "question": "Rhymes with mat?", "options": ["cat", "hat"], "answer": "bat"},
    {"id": "ok", "question": "2+2?", "options": ["3", "4"], "answer": "4"},
]


def _setup(store=None):
    service = BundleService(store or InMemoryDocumentStore(), thresholds=FixThresholds())
    bundle = _run(service.create_bundle(title="Mixed", subject="general", grade=3))
    _run(ingestion.commit(service, bundle.id, [dict(r) for r in RECORDS_FIXTURE]))
    return service, bundle.id


def test_review_preselects_all_but_best_guesses() -> None:
    service, bundle_id = _setup()
    session = _run(get_repair_session(service, bundle_id).open_review())
    assert session.state is RepairState.REVIEWING
    assert {c.record_id for c in session.candidates} == {"hi", "cw", "bg"}
    assert session.selected == {"hi", "cw"}
    assert get_repair_session(service, bundle_id) is session


def test_apply_then_revalidate_clears_applied_records() -> None:
    service, bundle_id = _setup()
    session = _run(get_repair_session(service, bundle_id).open_review())
    outcome = _run(session.apply())

    assert outcome.applied_ids == ["cw", "hi"]
    assert session.state is RepairState.IDLE
    assert outcome.snapshot.index.invalid_ids == {"bg"}
    assert [c.record_id for c in session.candidates] == ["bg"]
    assert outcome.snapshot.find("hi").answer == "Paris"
    assert outcome.snapshot.find("cw").answer == "Blue"
    assert not service.locks.is_locked(bundle_id)


def test_toggle_and_select_only_accept_current_candidates() -> None:
    service, bundle_id = _setup()
    session = _run(get_repair_session(service, bundle_id).open_review())
    assert session.toggle("bg") == {"hi", "cw", "bg"}
    assert session.toggle("hi") == {"cw", "bg"}
    with pytest.raises(RecordNotFoundError):
        session.toggle("ok")
    with pytest.raises(RecordNotFoundError):
        session.select(["hi", "nope"])
    assert session.select(["bg"]) == {"bg"}

    outcome = _run(session.apply())
    assert outcome.applied_ids == ["bg"]
    assert outcome.snapshot.find("bg").answer == "cat"
    assert outcome.snapshot.index.invalid_ids == {"hi", "cw"}


def test_operations_outside_reviewing_are_rejected() -> None:
    service, bundle_id = _setup()
    session = get_repair_session(service, bundle_id)
    with pytest.raises(InvalidTransitionError):
        session.toggle("hi")
    with pytest.raises(InvalidTransitionError):
        _run(session.apply())


def test_empty_selection_is_rejected() -> None:
    service, bundle_id = _setup()
    session = _run(get_repair_session(service, bundle_id).open_review())
    session.select([])
    with pytest.raises(InvalidTransitionError):
        _run(session.apply())
    assert session.state is RepairState.REVIEWING


def test_failed_apply_changes_nothing_and_returns_to_reviewing() -> None:
    store = _FlakyStore()
    service, bundle_id = _setup(store)
    session = _run(get_repair_session(service, bundle_id).open_review())
    before = [r.model_dump() for r in _run(service.load_records(bundle_id))]

    store.fail_records = True
    with pytest.raises(WriteFailure):
        _run(session.apply())

    assert session.state is RepairState.REVIEWING
    assert session.last_error == "store rejected the batch"
    assert session.selected == {"hi", "cw"}
    assert [r.model_dump() for r in _run(service.load_records(bundle_id))] == before
    assert not service.locks.is_locked(bundle_id)

    store.fail_records = False
    outcome = _run(session.apply())
    assert outcome.applied_ids == ["cw", "hi"]
    assert session.last_error is None


def test_apply_is_rejected_while_bundle_is_busy() -> None:
    service, bundle_id = _setup()
    session = _run(get_repair_session(service, bundle_id).open_review())
    service.locks.acquire(bundle_id, purpose="ingest")
    with pytest.raises(BundleBusyError):
        _run(session.apply())
    assert session.state is RepairState.REVIEWING


def test_unexpected_write_error_returns_to_reviewing() -> None:
    store = _FlakyStore()
    service, bundle_id = _setup(store)
    session = _run(get_repair_session(service, bundle_id).open_review())

    store.fail_records = True
    store.write_error = RuntimeError("connection reset by peer")
    with pytest.raises(RuntimeError):
        _run(session.apply())

    assert session.state is RepairState.REVIEWING
    assert session.last_error == "connection reset by peer"
    assert not service.locks.is_locked(bundle_id)


def test_revalidate_failure_after_write_leaves_session_idle() -> None:
    store = _FlakyStore()
    service, bundle_id = _setup(store)
    session = _run(get_repair_session(service, bundle_id).open_review())

    store.break_reads_after_write = True
    with pytest.raises(StoreUnavailableError):
        _run(session.apply())

    assert session.state is RepairState.IDLE
    assert session.last_applied == ["cw", "hi"]
    assert session.last_error.startswith("repairs applied; revalidation failed")
    assert session.candidates == []
    assert not service.locks.is_locked(bundle_id)

    store.break_reads_after_write = False
    store.fail_reads = False
    session = _run(session.open_review())
    assert session.state is RepairState.REVIEWING
    assert [c.record_id for c in session.candidates] == ["bg"]
    records = {r.id: r for r in _run(service.load_records(bundle_id))}
    assert records["hi"].answer == "Paris"
    assert records["cw"].answer == "Blue"


def test_edit_after_review_opened_blocks_stale_apply() -> None:
    service, bundle_id = _setup()
    session = _run(get_repair_session(service, bundle_id).open_review())
    assert "cw" in session.selected

    _run(
        service.update_record(
            bundle_id,
            "cw",
            {"question": "Sky colour?", "options": ["Azure", "Crimson"], "answer": "Azure"},
        )
    )
    with pytest.raises(InvalidTransitionError):
        _run(session.apply())

    assert session.state is RepairState.IDLE
    assert session.candidates == []
    assert session.selected == set()
    assert "reopen" in session.last_error
    records = {r.id: r for r in _run(service.load_records(bundle_id))}
    assert records["cw"].answer == "Azure"
    assert records["cw"].options == ["Azure", "Crimson"]
    assert records["hi"].answer == "paris."
    assert not service.locks.is_locked(bundle_id)

    session = _run(session.open_review())
    assert {c.record_id for c in session.candidates} == {"hi", "bg"}
    outcome = _run(session.apply())
    assert outcome.applied_ids == ["hi"]
    assert outcome.snapshot.index.invalid_ids == {"bg"}
    assert outcome.snapshot.find("cw").answer == "Azure"


def test_ingest_after_review_opened_blocks_stale_apply() -> None:
    service, bundle_id = _setup()
    session = _run(get_repair_session(service, bundle_id).open_review())
    _run(
        ingestion.commit(
            service,
            bundle_id,
            [{"id": "new", "question": "3+3?", "options": ["5", "6"], "answer": "6"}],
        )
    )
    with pytest.raises(InvalidTransitionError):
        _run(session.apply())
    assert session.state is RepairState.IDLE
    answers = {r.id: r.answer for r in _run(service.load_records(bundle_id))}
    assert answers["hi"] == "paris."
    assert answers["cw"] == "Bleu"
    assert "new" in answers


def test_own_apply_does_not_stale_the_next_review() -> None:
    service, bundle_id = _setup()
    session = _run(get_repair_session(service, bundle_id).open_review())
    _run(session.apply(["hi"]))
    session = _run(session.open_review())
    outcome = _run(session.apply(["cw"]))
    assert outcome.applied_ids == ["cw"]
