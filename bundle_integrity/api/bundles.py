from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from bundle_integrity.api.auth import require_admin
from bundle_integrity.core.integrity import duplicate_groups
from bundle_integrity.models.schemas import ValidationIndex, record_to_document
from bundle_integrity.services.bundle_service import (
    BundleService,
    BundleSnapshot,
    get_bundle_service,
)
from bundle_integrity.utils.observability import log_event

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/bundles", tags=["bundles"], dependencies=[Depends(require_admin)])


class CreateBundleRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    subject: str = Field(..., min_length=1, max_length=64)
    grade: int = Field(..., ge=0, le=20)
    description: Optional[str] = Field(default=None, max_length=2000)
    icon: Optional[str] = Field(default=None, max_length=64)
    tags: List[str] = Field(default_factory=list)


class FlagRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)
    flagged_by: Optional[str] = Field(default=None, max_length=128)


def index_payload(index: ValidationIndex) -> Dict[str, Any]:
    return {
        "record_count": index.record_count,
        "invalid_ids": sorted(index.invalid_ids),
        "duplicate_ids": sorted(index.duplicate_ids),
        "fix_candidates": [c.model_dump(mode="json") for c in index.fix_candidates],
        "issues": {
            rid: [issue.value for issue in issues] for rid, issues in sorted(index.issues.items())
        },
    }


def snapshot_payload(snapshot: BundleSnapshot, *, include_records: bool = False) -> Dict[str, Any]:
    out: Dict[str, Any] = {"bundle_id": snapshot.bundle_id}
    out.update(index_payload(snapshot.index))
    out["duplicate_groups"] = duplicate_groups(snapshot.records)
    if include_records:
        out["records"] = [record_to_document(r) for r in snapshot.records]
    return out


@router.get("")
async def bundles_list(
    subject: Optional[str] = None,
    grade: Optional[int] = None,
    service: BundleService = Depends(get_bundle_service),
):
    bundles = await service.list_bundles(subject=subject, grade=grade)
    return {"items": [b.model_dump(mode="json") for b in bundles]}


@router.post("", status_code=201)
async def bundles_create(
    payload: CreateBundleRequest,
    request: Request,
    service: BundleService = Depends(get_bundle_service),
):
    bundle = await service.create_bundle(
        title=payload.title,
        subject=payload.subject,
        grade=payload.grade,
        description=payload.description,
        tags=payload.tags,
        icon=payload.icon,
    )
    log_event(
        logger,
        "admin_bundle_created",
        request_id=getattr(getattr(request, "state", None), "request_id", None),
        bundle_id=bundle.id,
    )
    return bundle.model_dump(mode="json")


@router.get("/{bundle_id}")
async def bundles_get(
    bundle_id: str,
    include_records: bool = False,
    service: BundleService = Depends(get_bundle_service),
):
    bundle = await service.get_bundle(bundle_id)
    out = bundle.model_dump(mode="json")
    if include_records:
        out["records"] = [record_to_document(r) for r in await service.load_records(bundle_id)]
    return out


@router.get("/{bundle_id}/validation")
async def bundles_validation(
    bundle_id: str,
    include_records: bool = False,
    service: BundleService = Depends(get_bundle_service),
):
    snapshot = await service.revalidate(bundle_id)
    return snapshot_payload(snapshot, include_records=include_records)


@router.put("/{bundle_id}/records/{record_id}")
async def records_update(
    bundle_id: str,
    record_id: str,
    payload: Dict[str, Any],
    service: BundleService = Depends(get_bundle_service),
):
    snapshot = await service.update_record(bundle_id, record_id, payload)
    record = snapshot.find(record_id)
    out = snapshot_payload(snapshot)
    out["record"] = record_to_document(record) if record is not None else None
    return out


@router.post("/{bundle_id}/records/{record_id}/flag", status_code=201)
async def records_flag(
    bundle_id: str,
    record_id: str,
    payload: Optional[FlagRequest] = None,
    service: BundleService = Depends(get_bundle_service),
):
    payload = payload or FlagRequest()
    item_id = await service.flag_record(
        bundle_id, record_id, reason=payload.reason, flagged_by=payload.flagged_by
    )
    return {"ok": True, "item_id": item_id}


@router.get("/{bundle_id}/export")
async def bundles_export(
    bundle_id: str,
    view: str = Query(default="invalid", pattern="^(invalid|duplicates|template)$"),
    service: BundleService = Depends(get_bundle_service),
):
    records = await service.export_view(bundle_id, view)
    return {"bundle_id": bundle_id, "view": view, "count": len(records), "questions": records}


@router.post("/{bundle_id}/recount")
async def bundles_recount(
    bundle_id: str,
    service: BundleService = Depends(get_bundle_service),
):
    bundle = await service.recount(bundle_id)
    return bundle.model_dump(mode="json")
