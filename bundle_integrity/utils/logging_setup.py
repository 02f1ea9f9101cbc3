from __future__ import annotations

import logging
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Iterable, Optional

# Package logger plus the server loggers that matter when reading an incident.
SERVICE_LOGGERS = ("bundle_integrity", "uvicorn.error", "uvicorn.access")
# Store clients log every HTTP round trip at INFO.
QUIET_LOGGERS = ("httpx", "httpcore", "hpack", "postgrest", "supabase", "realtime")

FILE_HANDLER_NAME = "bundle_integrity.file"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
BACKUP_DAYS = 14

PROJECT_ROOT = Path(__file__).resolve().parents[2]


def parse_level(value: object, default: int = logging.INFO) -> int:
    level = logging.getLevelName(str(value or "").strip().upper())
    return level if isinstance(level, int) else default


def resolve_log_path(raw: str) -> Optional[Path]:
    """Relative paths land under the project root; blank disables file logging."""
    raw = str(raw or "").strip()
    if not raw:
        return None
    path = Path(raw).expanduser()
    return path if path.is_absolute() else PROJECT_ROOT / path


def quiet_store_clients(names: Iterable[str] = QUIET_LOGGERS) -> None:
    for name in names:
        logging.getLogger(name).setLevel(logging.WARNING)


def _attach(logger: logging.Logger, path: Path, level: int) -> bool:
    if any(h.get_name() == FILE_HANDLER_NAME for h in logger.handlers):
        return False
    handler = TimedRotatingFileHandler(
        filename=str(path), when="midnight", backupCount=BACKUP_DAYS, encoding="utf-8"
    )
    handler.set_name(FILE_HANDLER_NAME)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)
    if logger.level == logging.NOTSET or logger.level > level:
        logger.setLevel(level)
    # Keep service lines out of whatever the root logger prints.
    logger.propagate = False
    return True


def configure_logging(settings, *, loggers: Iterable[str] = SERVICE_LOGGERS) -> Optional[Path]:
    """
    Route the service loggers into one daily-rotating file.

    Reads LOG_TO_FILE, LOG_FILE_PATH and LOG_LEVEL from settings. Safe to call
    on every app start: loggers that already carry the handler are skipped.
    Returns the log file path, or None when file logging is off.
    """
    quiet_store_clients()
    if not getattr(settings, "log_to_file", False):
        return None
    path = resolve_log_path(getattr(settings, "log_file_path", ""))
    if path is None:
        return None
    path.parent.mkdir(parents=True, exist_ok=True)
    level = parse_level(getattr(settings, "log_level", "INFO"))
    for name in loggers:
        _attach(logging.getLogger(name), path, level)
    return path


def detach_file_logging(loggers: Iterable[str] = SERVICE_LOGGERS) -> None:
    for name in loggers:
        logger = logging.getLogger(name)
        for handler in [h for h in logger.handlers if h.get_name() == FILE_HANDLER_NAME]:
            logger.removeHandler(handler)
            handler.close()
        logger.propagate = True
