"""
API router aggregation.

`bundle_integrity/main.py` imports `bundle_integrity.api.routes.router` and mounts it under `/api/v1`.
"""

from __future__ import annotations

from fastapi import APIRouter

from bundle_integrity.api import bundles as bundles_api
from bundle_integrity.api import ingest as ingest_api
from bundle_integrity.api import repairs as repairs_api

router = APIRouter()
router.include_router(bundles_api.router)
router.include_router(repairs_api.router)
router.include_router(ingest_api.router)
