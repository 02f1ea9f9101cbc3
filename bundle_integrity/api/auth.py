from __future__ import annotations

from typing import Optional

from fastapi import Header, HTTPException

from bundle_integrity.utils.settings import get_settings


def check_admin_token(*, token: Optional[str]) -> None:
    settings = get_settings()
    if not getattr(settings, "admin_api_enabled", False):
        raise HTTPException(status_code=404, detail="admin api disabled")
    expected = str(getattr(settings, "admin_token", "") or "").strip()
    if not expected:
        raise HTTPException(status_code=403, detail="admin token not configured")
    if str(token or "").strip() != expected:
        raise HTTPException(status_code=403, detail="forbidden")


async def require_admin(
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
) -> None:
    """Router-level dependency guarding every bundle administration endpoint."""
    check_admin_token(token=x_admin_token)
