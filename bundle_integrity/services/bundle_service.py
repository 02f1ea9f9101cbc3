from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from bundle_integrity.core.integrity import (
    FixThresholds,
    Scorer,
    build_validation_index,
    record_key,
    score,
)
from bundle_integrity.models.schemas import (
    Bundle,
    QuestionRecord,
    ValidationIndex,
    record_from_dict,
    record_to_document,
)
from bundle_integrity.services.bundle_lock import BundleLockRegistry
from bundle_integrity.services.document_store import (
    BaseDocumentStore,
    WriteOp,
    get_document_store,
)
from bundle_integrity.utils.errors import (
    BundleNotFoundError,
    FormatError,
    RecordNotFoundError,
)
from bundle_integrity.utils.metrics import inc_counter
from bundle_integrity.utils.observability import log_event, trace_span

logger = logging.getLogger(__name__)

BUNDLES = "question_bundles"
RECORDS = "bundle_questions"
REVIEW_QUEUE = "review_queue"

EXPORT_VIEWS = ("invalid", "duplicates", "template")

_CACHED_SERVICE: Optional["BundleService"] = None


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def record_doc_id(bundle_id: str, record_id: str) -> str:
    return f"{bundle_id}__{record_id}"


def record_document(bundle_id: str, record: QuestionRecord) -> Dict[str, Any]:
    doc = record_to_document(record)
    doc["bundle_id"] = str(bundle_id)
    return doc


def starter_template() -> List[Dict[str, Any]]:
    """Example upload covering each record kind."""
    return [
        {
            "question": "What is 5 + 3?",
            "options": ["6", "7", "8", "9"],
            "answer": "8",
            "difficulty": "easy",
            "explanation": "Adding 5 and 3 gives 8.",
        },
        {
            "kind": "numeric",
            "question": "What is 12 x 12?",
            "answer": "144",
            "difficulty": "medium",
        },
        {
            "kind": "short_answer",
            "question": "Explain why the sky looks blue.",
            "model_answer": "Air molecules scatter short blue wavelengths more than red ones.",
            "evaluation_criteria": ["mentions scattering", "links it to wavelength"],
            "difficulty": "hard",
        },
    ]


@dataclass
class BundleSnapshot:
    """Records of one bundle and the index computed from exactly those records."""

    bundle_id: str
    records: List[QuestionRecord]
    index: ValidationIndex

    def find(self, record_id: str) -> Optional[QuestionRecord]:
        for idx, record in enumerate(self.records):
            if record_key(record, idx) == record_id:
                return record
        return None


class BundleService:
    """Bundle reads, single-record edits and bookkeeping on top of a document store."""

    def __init__(
        self,
        store: BaseDocumentStore,
        *,
        locks: Optional[BundleLockRegistry] = None,
        scorer: Scorer = score,
        thresholds: Optional[FixThresholds] = None,
    ):
        self.store = store
        self.locks = locks or BundleLockRegistry()
        self.scorer = scorer
        self.thresholds = thresholds or FixThresholds.from_settings()
        # bundle_id -> RepairSession (owned by services.repair_workflow)
        self.repair_sessions: Dict[str, Any] = {}
        # bundle_id -> number of record writes seen by this process
        self._generations: Dict[str, int] = {}

    def write_generation(self, bundle_id: str) -> int:
        return self._generations.get(str(bundle_id), 0)

    def mark_written(self, bundle_id: str) -> int:
        """Bump the generation; any ValidationIndex computed earlier is now stale."""
        key = str(bundle_id)
        self._generations[key] = self._generations.get(key, 0) + 1
        return self._generations[key]

    # --- Bundles ---

    async def create_bundle(
        self,
        *,
        title: str,
        subject: str,
        grade: int,
        description: Optional[str] = None,
        tags: Optional[List[str]] = None,
        icon: Optional[str] = None,
    ) -> Bundle:
        now = utc_now()
        bundle = Bundle(
            id=f"bnd_{uuid.uuid4().hex[:12]}",
            title=str(title).strip(),
            description=description,
            subject=str(subject).strip().lower(),
            grade=int(grade),
            icon=icon,
            question_count=0,
            is_active=True,
            tags=[str(t).strip() for t in (tags or []) if str(t).strip()],
            created_at=now,
            updated_at=now,
        )
        await self.store.put(BUNDLES, bundle.id, bundle.model_dump(mode="json"))
        log_event(logger, "bundle_created", bundle_id=bundle.id, subject=bundle.subject, grade=bundle.grade)
        return bundle

    async def list_bundles(
        self, *, subject: Optional[str] = None, grade: Optional[int] = None
    ) -> List[Bundle]:
        filters: Dict[str, Any] = {}
        if subject:
            filters["subject"] = str(subject).strip().lower()
        if grade is not None:
            filters["grade"] = int(grade)
        docs = await self.store.query(BUNDLES, filters or None)
        bundles = [Bundle.model_validate(d) for d in docs]
        bundles.sort(key=lambda b: b.updated_at or "", reverse=True)
        return bundles

    async def get_bundle(self, bundle_id: str) -> Bundle:
        doc = await self.store.get(BUNDLES, bundle_id)
        if doc is None:
            raise BundleNotFoundError(f"bundle {bundle_id} not found")
        return Bundle.model_validate(doc)

    # --- Records ---

    async def load_records(self, bundle_id: str) -> List[QuestionRecord]:
        docs = await self.store.query(RECORDS, {"bundle_id": str(bundle_id)})
        records: List[QuestionRecord] = []
        for doc in docs:
            data = dict(doc)
            data.pop("bundle_id", None)
            try:
                records.append(record_from_dict(data))
            except ValidationError as e:
                log_event(
                    logger,
                    "stored_record_unreadable",
                    level="warning",
                    bundle_id=bundle_id,
                    record_id=data.get("id"),
                    error=str(e),
                )
        records.sort(key=lambda r: r.id or "")
        return records

    @trace_span("bundle.revalidate")
    async def revalidate(self, bundle_id: str) -> BundleSnapshot:
        """Fresh read of every record and a from-scratch ValidationIndex."""
        await self.get_bundle(bundle_id)
        records = await self.load_records(bundle_id)
        index = build_validation_index(
            records, scorer=self.scorer, thresholds=self.thresholds
        )
        log_event(
            logger,
            "bundle_revalidated",
            bundle_id=bundle_id,
            records=index.record_count,
            invalid=len(index.invalid_ids),
            duplicates=len(index.duplicate_ids),
            fix_candidates=len(index.fix_candidates),
        )
        return BundleSnapshot(bundle_id=bundle_id, records=records, index=index)

    async def update_record(
        self, bundle_id: str, record_id: str, payload: Dict[str, Any]
    ) -> BundleSnapshot:
        """Replace one record with an operator edit, then revalidate the whole bundle."""
        existing = await self.store.get(RECORDS, record_doc_id(bundle_id, record_id))
        if existing is None:
            raise RecordNotFoundError(f"record {record_id} not found in bundle {bundle_id}")
        data = dict(payload or {})
        data["id"] = record_id
        data["updated_at"] = utc_now()
        try:
            record = record_from_dict(data)
        except ValidationError as e:
            raise FormatError(f"record {record_id} has invalid fields: {e}") from e

        async with self.locks.hold(bundle_id, purpose="edit"):
            await self.store.commit_batch(
                [
                    WriteOp.set(
                        RECORDS,
                        record_doc_id(bundle_id, record_id),
                        record_document(bundle_id, record),
                    )
                ]
            )
            self.mark_written(bundle_id)
        log_event(logger, "record_updated", bundle_id=bundle_id, record_id=record_id)
        return await self.revalidate(bundle_id)

    async def apply_answers(self, bundle_id: str, answers: Dict[str, str]) -> None:
        """
        One request carrying an independent `answer` field update per record.
        The store rejects the whole request on any failure; nothing is half-applied.
        """
        now = utc_now()
        ops = [
            WriteOp.update(
                RECORDS,
                record_doc_id(bundle_id, rid),
                {"answer": answer, "updated_at": now},
            )
            for rid, answer in answers.items()
        ]
        await self.store.commit_batch(ops)
        self.mark_written(bundle_id)
        inc_counter("record_answers_repaired_total", value=float(len(ops)))

    async def flag_record(
        self,
        bundle_id: str,
        record_id: str,
        *,
        reason: Optional[str] = None,
        flagged_by: Optional[str] = None,
    ) -> str:
        """Hand a record to the external review queue with a snapshot of its content."""
        snapshot = await self.store.get(RECORDS, record_doc_id(bundle_id, record_id))
        if snapshot is None:
            raise RecordNotFoundError(f"record {record_id} not found in bundle {bundle_id}")
        snapshot.pop("bundle_id", None)
        item_id = f"rev_{uuid.uuid4().hex[:12]}"
        await self.store.put(
            REVIEW_QUEUE,
            item_id,
            {
                "id": item_id,
                "bundle_id": bundle_id,
                "record_id": record_id,
                "record_snapshot": snapshot,
                "reason": (reason or "").strip() or "Flagged manually",
                "flagged_by": flagged_by,
                "flagged_at": utc_now(),
                "status": "pending",
            },
        )
        log_event(logger, "record_flagged", bundle_id=bundle_id, record_id=record_id, item_id=item_id)
        return item_id

    async def export_view(self, bundle_id: str, view: str) -> List[Dict[str, Any]]:
        if view == "template":
            return starter_template()
        if view not in EXPORT_VIEWS:
            raise FormatError(f"unknown export view: {view}")
        snapshot = await self.revalidate(bundle_id)
        wanted = (
            snapshot.index.invalid_ids if view == "invalid" else snapshot.index.duplicate_ids
        )
        return [
            record_to_document(r)
            for idx, r in enumerate(snapshot.records)
            if record_key(r, idx) in wanted
        ]

    async def recount(self, bundle_id: str) -> Bundle:
        """Reset the aggregate counter to the real record count."""
        bundle = await self.get_bundle(bundle_id)
        async with self.locks.hold(bundle_id, purpose="recount"):
            records = await self.load_records(bundle_id)
            actual = len(records)
            await self.store.commit_batch(
                [
                    WriteOp.update(
                        BUNDLES,
                        bundle_id,
                        {"question_count": actual, "updated_at": utc_now()},
                    )
                ]
            )
        if actual != bundle.question_count:
            log_event(
                logger,
                "bundle_count_drift_corrected",
                level="warning",
                bundle_id=bundle_id,
                stored=bundle.question_count,
                actual=actual,
            )
        return await self.get_bundle(bundle_id)


def get_bundle_service() -> BundleService:
    """Process-wide service bound to the configured document store."""
    global _CACHED_SERVICE
    store = get_document_store()
    if _CACHED_SERVICE is not None and _CACHED_SERVICE.store is store:
        return _CACHED_SERVICE
    _CACHED_SERVICE = BundleService(store)
    return _CACHED_SERVICE
