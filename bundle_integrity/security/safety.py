from __future__ import annotations

import re
from typing import Any, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

_RE_EMAIL = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")

# Secret-ish patterns. Keep conservative to avoid over-redacting question text.
_RE_BEARER = re.compile(r"(?i)\bBearer\s+[A-Za-z0-9._-]{10,}\b")
_RE_SUPABASE_KEY = re.compile(r"\bsb_(?:secret|publishable)_[A-Za-z0-9_-]{10,}\b")
_RE_JWT = re.compile(
    r"\beyJ[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,}\b"
)
_RE_HTTP_URL = re.compile(r"https?://[^\s)]+")

# Keys whose values never reach a log line, whatever they contain.
_SECRET_KEYS = {"admin_token", "supabase_key", "authorization", "x-admin-token", "apikey"}

_MAX_LOG_TEXT = 2000


def redact_url_query_params(
    url: str,
    *,
    redact_params: Tuple[str, ...] = (
        "access_token",
        "apikey",
        "authorization",
        "token",
        "sig",
        "signature",
    ),
) -> str:
    try:
        s = str(url or "").strip()
        if not s:
            return s
        parts = urlsplit(s)
        if not parts.scheme or not parts.netloc or not parts.query:
            return s
        redact_set = {p.lower() for p in redact_params}
        q = []
        for k, v in parse_qsl(parts.query, keep_blank_values=True):
            if str(k).lower() in redact_set:
                q.append((k, "***"))
            else:
                q.append((k, v))
        new_query = urlencode(q, doseq=True)
        return urlunsplit(
            (parts.scheme, parts.netloc, parts.path, new_query, parts.fragment)
        )
    except Exception:
        return ""


def redact_secrets(text: str) -> str:
    if not text:
        return ""
    s = str(text)
    s = _RE_BEARER.sub("Bearer ***", s)
    s = _RE_SUPABASE_KEY.sub("sb_***", s)
    s = _RE_JWT.sub("***.***.***", s)
    return s


def sanitize_text_for_log(text: str) -> str:
    s = str(text or "")
    s = _RE_HTTP_URL.sub(lambda m: redact_url_query_params(m.group(0)), s)
    s = redact_secrets(s)
    s = _RE_EMAIL.sub("***@***", s)
    if len(s) > _MAX_LOG_TEXT:
        s = s[:_MAX_LOG_TEXT] + "..."
    return s


def sanitize_value_for_log(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return sanitize_text_for_log(value)
    if isinstance(value, (list, tuple, set)):
        return [sanitize_value_for_log(v) for v in value]
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            key = str(k)
            if key.lower() in _SECRET_KEYS:
                out[key] = "***"
            else:
                out[key] = sanitize_value_for_log(v)
        return out
    return sanitize_text_for_log(str(value))
