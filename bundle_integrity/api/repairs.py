from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from bundle_integrity.api.auth import require_admin
from bundle_integrity.api.bundles import snapshot_payload
from bundle_integrity.services.bundle_service import BundleService, get_bundle_service
from bundle_integrity.services.repair_workflow import get_repair_session
from bundle_integrity.utils.observability import log_event

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/bundles/{bundle_id}/repairs",
    tags=["repairs"],
    dependencies=[Depends(require_admin)],
)


class ToggleRequest(BaseModel):
    record_id: Optional[str] = Field(default=None, min_length=1)
    record_ids: Optional[List[str]] = None


class ApplyRequest(BaseModel):
    record_ids: Optional[List[str]] = None


@router.post("/review")
async def repairs_open(
    bundle_id: str,
    service: BundleService = Depends(get_bundle_service),
):
    await service.get_bundle(bundle_id)
    session = await get_repair_session(service, bundle_id).open_review()
    return session.view()


@router.get("")
async def repairs_view(
    bundle_id: str,
    service: BundleService = Depends(get_bundle_service),
):
    await service.get_bundle(bundle_id)
    return get_repair_session(service, bundle_id).view()


@router.post("/toggle")
async def repairs_toggle(
    bundle_id: str,
    payload: ToggleRequest,
    service: BundleService = Depends(get_bundle_service),
):
    """`record_id` flips one candidate; `record_ids` replaces the whole selection."""
    await service.get_bundle(bundle_id)
    session = get_repair_session(service, bundle_id)
    if payload.record_ids is not None:
        session.select(payload.record_ids)
    elif payload.record_id:
        session.toggle(payload.record_id)
    return session.view()


@router.post("/apply")
async def repairs_apply(
    bundle_id: str,
    request: Request,
    payload: Optional[ApplyRequest] = None,
    service: BundleService = Depends(get_bundle_service),
):
    await service.get_bundle(bundle_id)
    session = get_repair_session(service, bundle_id)
    outcome = await session.apply(payload.record_ids if payload else None)
    log_event(
        logger,
        "admin_repairs_applied",
        request_id=getattr(getattr(request, "state", None), "request_id", None),
        bundle_id=bundle_id,
        applied=len(outcome.applied_ids),
    )
    out = session.view()
    out["applied_ids"] = list(outcome.applied_ids)
    out["validation"] = snapshot_payload(outcome.snapshot)
    return out
