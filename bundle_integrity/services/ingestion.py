"""
Bundle ingestion: parse an uploaded record set and merge it into a bundle.

Records whose id already exists are only overwritten after explicit operator
confirmation. New records are written in all-or-nothing chunks sized to the
store's batch ceiling; the bundle counter is bumped afterwards and a failure
there is logged, not raised.
"""

from __future__ import annotations

import json
import logging
import random
import string
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence, Set

from pydantic import ValidationError

from bundle_integrity.core.integrity import build_validation_index
from bundle_integrity.models.schemas import QuestionRecord, ValidationIndex, record_from_dict
from bundle_integrity.services.bundle_service import (
    BUNDLES,
    RECORDS,
    BundleService,
    record_doc_id,
    record_document,
    utc_now,
)
from bundle_integrity.services.document_store import WriteOp, chunk_ops
from bundle_integrity.utils.errors import (
    BundleIntegrityError,
    FormatError,
    OverwriteConfirmationRequired,
)
from bundle_integrity.utils.metrics import inc_counter
from bundle_integrity.utils.observability import log_event

logger = logging.getLogger(__name__)

WRAPPER_KEYS = ("questions", "records", "items")

_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_record_id() -> str:
    suffix = "".join(random.choices(_ID_ALPHABET, k=5))
    return f"q_{int(time.time() * 1000)}_{suffix}"


def parse(raw: Any) -> List[Dict[str, Any]]:
    """
    Decode an upload into a list of record dicts.

    Accepts a bare JSON list or an object wrapping one under `questions`,
    `records` or `items`. Anything else fails as a whole.
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8-sig")
        except UnicodeDecodeError as e:
            raise FormatError("upload is not UTF-8 text") from e
    if isinstance(raw, str):
        if not raw.strip():
            raise FormatError("upload is empty")
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise FormatError(f"upload is not valid JSON: {e.msg} (line {e.lineno})") from e
    else:
        data = raw

    if isinstance(data, dict):
        items = None
        for key in WRAPPER_KEYS:
            if isinstance(data.get(key), list):
                items = data[key]
                break
        if items is None:
            raise FormatError(
                "expected a list of records or an object with a 'questions' list"
            )
    elif isinstance(data, list):
        items = data
    else:
        raise FormatError("expected a list of records or an object with a 'questions' list")

    if not items:
        raise FormatError("upload contains no records")
    bad = [i for i, item in enumerate(items) if not isinstance(item, dict)]
    if bad:
        raise FormatError(f"entries at positions {bad[:10]} are not objects")
    return [dict(item) for item in items]


def build_records(candidates: Sequence[Dict[str, Any]]) -> List[QuestionRecord]:
    records: List[QuestionRecord] = []
    for idx, raw in enumerate(candidates):
        try:
            records.append(record_from_dict(raw))
        except ValidationError as e:
            raise FormatError(f"record at position {idx} has invalid fields: {e}") from e
    seen: Set[str] = set()
    repeated: Set[str] = set()
    for record in records:
        if not record.id:
            continue
        if record.id in seen:
            repeated.add(record.id)
        seen.add(record.id)
    if repeated:
        raise FormatError(
            f"record ids repeated within the upload: {', '.join(sorted(repeated))}"
        )
    return records


@dataclass
class IngestionPreview:
    record_count: int
    colliding_ids: List[str]
    index: ValidationIndex


@dataclass
class IngestionResult:
    bundle_id: str
    written: int
    new_ids: List[str] = field(default_factory=list)
    overwritten_ids: List[str] = field(default_factory=list)
    batches: int = 0
    counter_updated: bool = True


async def _existing_ids(service: BundleService, bundle_id: str) -> Set[str]:
    return {r.id for r in await service.load_records(bundle_id) if r.id}


async def preview(service: BundleService, bundle_id: str, raw: Any) -> IngestionPreview:
    """Dry run: what would be written, what collides and what is already invalid."""
    await service.get_bundle(bundle_id)
    records = build_records(parse(raw))
    existing = await _existing_ids(service, bundle_id)
    colliding = sorted({r.id for r in records if r.id and r.id in existing})
    index = build_validation_index(
        records, scorer=service.scorer, thresholds=service.thresholds
    )
    return IngestionPreview(record_count=len(records), colliding_ids=colliding, index=index)


async def commit(
    service: BundleService,
    bundle_id: str,
    candidates: Sequence[Dict[str, Any]],
    *,
    confirm_overwrite: bool = False,
) -> IngestionResult:
    await service.get_bundle(bundle_id)
    if not candidates:
        raise FormatError("upload contains no records")
    records = build_records(candidates)

    async with service.locks.hold(bundle_id, purpose="ingest"):
        existing = await _existing_ids(service, bundle_id)
        colliding = sorted({r.id for r in records if r.id and r.id in existing})
        if colliding and not confirm_overwrite:
            log_event(
                logger,
                "ingest_overwrite_blocked",
                bundle_id=bundle_id,
                colliding=len(colliding),
            )
            raise OverwriteConfirmationRequired(colliding)

        now = utc_now()
        new_ids: List[str] = []
        ops: List[WriteOp] = []
        taken = existing | {r.id for r in records if r.id}
        for record in records:
            if not record.id:
                record.id = generate_record_id()
                while record.id in taken:
                    record.id = generate_record_id()
                taken.add(record.id)
            if record.id not in existing:
                new_ids.append(record.id)
            record.updated_at = now
            ops.append(
                WriteOp.set(
                    RECORDS,
                    record_doc_id(bundle_id, record.id),
                    record_document(bundle_id, record),
                )
            )

        batches = 0
        for chunk in chunk_ops(ops, service.store.max_batch_ops):
            await service.store.commit_batch(chunk)
            service.mark_written(bundle_id)
            batches += 1

        counter_updated = True
        try:
            await service.store.commit_batch(
                [
                    WriteOp.increment(BUNDLES, bundle_id, {"question_count": len(new_ids)}),
                    WriteOp.update(BUNDLES, bundle_id, {"updated_at": now}),
                ]
            )
        except BundleIntegrityError as e:
            counter_updated = False
            log_event(
                logger,
                "bundle_counter_update_failed",
                level="warning",
                bundle_id=bundle_id,
                delta=len(new_ids),
                error_type=e.__class__.__name__,
                error=str(e),
            )

    inc_counter("records_ingested_total", value=float(len(ops)))
    log_event(
        logger,
        "ingest_committed",
        bundle_id=bundle_id,
        written=len(ops),
        new=len(new_ids),
        overwritten=len(colliding),
        batches=batches,
    )
    return IngestionResult(
        bundle_id=bundle_id,
        written=len(ops),
        new_ids=new_ids,
        overwritten_ids=colliding,
        batches=batches,
        counter_updated=counter_updated,
    )


async def ingest_text(
    service: BundleService,
    bundle_id: str,
    raw: Any,
    *,
    confirm_overwrite: bool = False,
) -> IngestionResult:
    return await commit(service, bundle_id, parse(raw), confirm_overwrite=confirm_overwrite)


def result_payload(result: IngestionResult) -> Dict[str, Any]:
    return {
        "bundle_id": result.bundle_id,
        "written": result.written,
        "new_ids": list(result.new_ids),
        "overwritten_ids": list(result.overwritten_ids),
        "batches": result.batches,
        "counter_updated": result.counter_updated,
    }


def preview_payload(p: IngestionPreview) -> Dict[str, Any]:
    return {
        "record_count": p.record_count,
        "colliding_ids": list(p.colliding_ids),
        "invalid_ids": sorted(p.index.invalid_ids),
        "duplicate_ids": sorted(p.index.duplicate_ids),
        "fix_candidates": [c.model_dump(mode="json") for c in p.index.fix_candidates],
    }
