from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

from bundle_integrity.utils.errors import BundleBusyError
from bundle_integrity.utils.observability import log_event

logger = logging.getLogger(__name__)


class BundleLockRegistry:
    """
    Per-bundle write guard for a single-process, single-operator deployment.

    Acquiring a lock that is already held fails immediately with
    BundleBusyError instead of waiting. Session-local only: two processes do
    not see each other's locks.
    """

    def __init__(self) -> None:
        self._held: Dict[str, tuple[str, float]] = {}

    def is_locked(self, bundle_id: str) -> bool:
        return str(bundle_id) in self._held

    def holder(self, bundle_id: str) -> Optional[str]:
        entry = self._held.get(str(bundle_id))
        return entry[0] if entry else None

    def acquire(self, bundle_id: str, *, purpose: str) -> None:
        key = str(bundle_id)
        current = self._held.get(key)
        if current is not None:
            raise BundleBusyError(
                f"bundle {key} is busy ({current[0]} in progress); retry when it finishes"
            )
        self._held[key] = (str(purpose), time.monotonic())

    def release(self, bundle_id: str) -> None:
        entry = self._held.pop(str(bundle_id), None)
        if entry is not None:
            log_event(
                logger,
                "bundle_lock_released",
                level="debug",
                bundle_id=str(bundle_id),
                purpose=entry[0],
                held_ms=int((time.monotonic() - entry[1]) * 1000),
            )

    @asynccontextmanager
    async def hold(self, bundle_id: str, *, purpose: str) -> AsyncIterator[None]:
        self.acquire(bundle_id, purpose=purpose)
        try:
            yield
        finally:
            self.release(bundle_id)
