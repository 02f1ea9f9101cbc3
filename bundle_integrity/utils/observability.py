from __future__ import annotations

import json
import time
import logging
import inspect
from functools import wraps
from typing import Any, Dict, Optional


def _safe_value(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_safe_value(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _safe_value(v) for k, v in value.items()}
    try:
        return str(value)
    except Exception:
        return repr(value)


def log_event(logger, event: str, *, level: str = "info", **fields: Any) -> None:
    """
    Emit a single-line JSON log with a stable `event` key.
    This is best-effort and must never raise.
    """
    try:
        from bundle_integrity.security.safety import sanitize_value_for_log

        payload: Dict[str, Any] = {"event": event}
        for k, v in fields.items():
            if v is None:
                continue
            payload[str(k)] = sanitize_value_for_log(_safe_value(v))
        line = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
        fn = getattr(logger, level, None) or getattr(logger, "info", None)
        if fn:
            fn(line)
    except Exception:
        return


def trace_span(name: str) -> Any:
    """
    Lightweight tracing decorator.
    Emits trace_start/trace_end events via log_event; works for sync and async callables.
    """

    def decorator(fn):
        logger = logging.getLogger(fn.__module__)

        def _end(start: float, exc: Optional[BaseException] = None) -> None:
            elapsed_ms = int((time.monotonic() - start) * 1000)
            if exc is None:
                log_event(logger, "trace_end", span=name, elapsed_ms=elapsed_ms)
                return
            log_event(
                logger,
                "trace_end",
                level="warning",
                span=name,
                elapsed_ms=elapsed_ms,
                error_type=exc.__class__.__name__,
                error=str(exc),
            )

        if inspect.iscoroutinefunction(fn):

            @wraps(fn)
            async def async_wrapper(*args, **kwargs):
                start = time.monotonic()
                log_event(logger, "trace_start", span=name)
                try:
                    result = await fn(*args, **kwargs)
                except Exception as e:
                    _end(start, e)
                    raise
                _end(start)
                return result

            return async_wrapper

        @wraps(fn)
        def wrapper(*args, **kwargs):
            start = time.monotonic()
            log_event(logger, "trace_start", span=name)
            try:
                result = fn(*args, **kwargs)
            except Exception as e:
                _end(start, e)
                raise
            _end(start)
            return result

        return wrapper

    return decorator


def get_request_id_from_headers(headers: Any) -> Optional[str]:
    """
    Extract a correlation id from common headers.
    - X-Request-Id
    - X-Correlation-Id
    Returns stripped string or None.
    """
    try:
        for key in ("x-request-id", "x-correlation-id"):
            v = headers.get(key) if hasattr(headers, "get") else None
            if not v:
                continue
            s = str(v).strip()
            if s:
                return s
    except Exception:
        return None
    return None
