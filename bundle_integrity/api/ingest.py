from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, File, HTTPException, Request, UploadFile, status
from pydantic import BaseModel, Field, model_validator

from bundle_integrity.api.auth import require_admin
from bundle_integrity.services import ingestion
from bundle_integrity.services.bundle_service import BundleService, get_bundle_service
from bundle_integrity.utils.observability import log_event
from bundle_integrity.utils.settings import get_settings

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/bundles/{bundle_id}/ingest",
    tags=["ingest"],
    dependencies=[Depends(require_admin)],
)


class PreviewRequest(BaseModel):
    raw: str = Field(..., min_length=1)


class CommitRequest(BaseModel):
    raw: Optional[str] = None
    questions: Optional[List[Dict[str, Any]]] = None
    confirm_overwrite: bool = False

    @model_validator(mode="after")
    def _one_source(self):
        if (self.raw is None) == (self.questions is None):
            raise ValueError("provide exactly one of `raw` or `questions`")
        return self


def _check_size(size: int) -> None:
    limit = int(get_settings().max_upload_bytes)
    if size > limit:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"upload exceeds {limit} bytes",
        )


def _log_commit(request: Request, bundle_id: str, result: ingestion.IngestionResult) -> None:
    log_event(
        logger,
        "admin_ingest_committed",
        request_id=getattr(getattr(request, "state", None), "request_id", None),
        bundle_id=bundle_id,
        written=result.written,
        new=len(result.new_ids),
    )


@router.post("/preview")
async def ingest_preview(
    bundle_id: str,
    payload: PreviewRequest,
    service: BundleService = Depends(get_bundle_service),
):
    _check_size(len(payload.raw.encode("utf-8")))
    p = await ingestion.preview(service, bundle_id, payload.raw)
    return ingestion.preview_payload(p)


@router.post("/commit")
async def ingest_commit(
    bundle_id: str,
    payload: CommitRequest,
    request: Request,
    service: BundleService = Depends(get_bundle_service),
):
    if payload.raw is not None:
        _check_size(len(payload.raw.encode("utf-8")))
        candidates = ingestion.parse(payload.raw)
    else:
        candidates = ingestion.parse(payload.questions)
    result = await ingestion.commit(
        service, bundle_id, candidates, confirm_overwrite=payload.confirm_overwrite
    )
    _log_commit(request, bundle_id, result)
    return ingestion.result_payload(result)


@router.post("/upload")
async def ingest_upload(
    bundle_id: str,
    request: Request,
    file: UploadFile = File(...),
    confirm_overwrite: bool = False,
    service: BundleService = Depends(get_bundle_service),
):
    try:
        raw = await file.read()
    except Exception as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"read upload failed: {e}")
    if not raw:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="empty file")
    _check_size(len(raw))
    result = await ingestion.ingest_text(
        service, bundle_id, raw, confirm_overwrite=confirm_overwrite
    )
    _log_commit(request, bundle_id, result)
    out = ingestion.result_payload(result)
    out["filename"] = (file.filename or "").strip() or "upload.json"
    return out
