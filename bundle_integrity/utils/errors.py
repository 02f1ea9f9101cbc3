from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCode(str, Enum):
    # 4xx - Client errors
    INVALID_REQUEST = "E4000"
    FORMAT_ERROR = "E4001"
    NOT_FOUND = "E4004"
    UNAUTHORIZED = "E4010"
    FORBIDDEN = "E4030"
    CONFLICT = "E4090"
    OVERWRITE_CONFIRMATION_REQUIRED = "E4091"
    BUNDLE_BUSY = "E4092"
    INVALID_TRANSITION = "E4093"
    PAYLOAD_TOO_LARGE = "E4130"
    VALIDATION_ERROR = "E4220"
    RATE_LIMITED = "E4290"

    # 5xx - Service errors
    SERVICE_ERROR = "E5000"
    WRITE_FAILED = "E5020"
    STORE_UNAVAILABLE = "E5030"


class BundleIntegrityError(Exception):
    """Base error for the bundle integrity engine."""

    code: ErrorCode = ErrorCode.SERVICE_ERROR
    http_status: int = 500

    def details(self) -> Optional[Dict[str, Any]]:
        return None


class FormatError(BundleIntegrityError):
    """Ingestion input is not JSON or carries no record list."""

    code = ErrorCode.FORMAT_ERROR
    http_status = 400


class WriteFailure(BundleIntegrityError):
    """A batched write or field update was rejected; nothing was applied."""

    code = ErrorCode.WRITE_FAILED
    http_status = 502


class StoreUnavailableError(BundleIntegrityError):
    """Document store is not configured or cannot be reached."""

    code = ErrorCode.STORE_UNAVAILABLE
    http_status = 503


class BatchLimitExceeded(BundleIntegrityError):
    """A single batch carried more operations than the store allows."""

    code = ErrorCode.INVALID_REQUEST
    http_status = 500


class BundleNotFoundError(BundleIntegrityError):
    code = ErrorCode.NOT_FOUND
    http_status = 404


class RecordNotFoundError(BundleIntegrityError):
    code = ErrorCode.NOT_FOUND
    http_status = 404


class BundleBusyError(BundleIntegrityError):
    """Another write already holds the bundle lock."""

    code = ErrorCode.BUNDLE_BUSY
    http_status = 409


class InvalidTransitionError(BundleIntegrityError):
    """Repair workflow operation not allowed in the current state."""

    code = ErrorCode.INVALID_TRANSITION
    http_status = 409


class OverwriteConfirmationRequired(BundleIntegrityError):
    """Ingestion would overwrite existing record ids without operator consent."""

    code = ErrorCode.OVERWRITE_CONFIRMATION_REQUIRED
    http_status = 409

    def __init__(self, colliding_ids: List[str]):
        self.colliding_ids = list(colliding_ids)
        sample = self.colliding_ids[0] if self.colliding_ids else ""
        super().__init__(
            f"{len(self.colliding_ids)} record id(s) already exist (e.g. {sample}); "
            "confirm overwrite to proceed"
        )

    def details(self) -> Optional[Dict[str, Any]]:
        return {"colliding_ids": list(self.colliding_ids)}


def error_code_for_http_status(status_code: int) -> ErrorCode:
    if status_code == 401:
        return ErrorCode.UNAUTHORIZED
    if status_code == 403:
        return ErrorCode.FORBIDDEN
    if status_code == 404:
        return ErrorCode.NOT_FOUND
    if status_code == 409:
        return ErrorCode.CONFLICT
    if status_code == 413:
        return ErrorCode.PAYLOAD_TOO_LARGE
    if status_code == 422:
        return ErrorCode.VALIDATION_ERROR
    if status_code == 429:
        return ErrorCode.RATE_LIMITED
    if 400 <= int(status_code) < 500:
        return ErrorCode.INVALID_REQUEST
    return ErrorCode.SERVICE_ERROR


def build_error_payload(
    *,
    code: ErrorCode,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    request_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Canonical error shape for every HTTP error response.

    - `error` is the primary string message
    - `message` is kept as an alias for readability
    """
    payload: Dict[str, Any] = {"code": str(code.value), "error": str(message), "message": str(message)}
    if details is not None:
        payload["details"] = details
    if request_id:
        payload["request_id"] = str(request_id)
    return payload
