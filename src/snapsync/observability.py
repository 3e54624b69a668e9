"""Logging for snapsync.

One ``snapsync`` logger per process. Each process writes its own rotating
file, ``snapsync_<start time>.log``, and copies WARNING and above to stderr.
Every helper takes keyword fields that are appended to the message as
compact JSON.
"""

from __future__ import annotations

import json
import logging
import os
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Optional


LOGGER_NAME = "snapsync"

ENV_LOG_DIR = "SNAPSYNC_LOG_DIR"
ENV_LOG_LEVEL = "SNAPSYNC_LOG_LEVEL"
ENV_LOG_MAX_BYTES = "SNAPSYNC_LOG_MAX_BYTES"
ENV_LOG_BACKUP_COUNT = "SNAPSYNC_LOG_BACKUP_COUNT"
ENV_LOG_DISABLE_FILE = "SNAPSYNC_LOG_DISABLE_FILE"

DEFAULT_LOG_DIR = Path.home() / ".snapsync" / "logs"
DEFAULT_MAX_BYTES = 10 * 1024 * 1024
DEFAULT_BACKUP_COUNT = 5

LINE_FORMAT = "[%(levelname)s %(asctime)s] %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"

_configured = False
_process_stamp: Optional[str] = None


def _compact(data: Dict[str, Any]) -> str:
    return json.dumps(data, separators=(",", ":"), sort_keys=True, default=str)


def level_from_env() -> int:
    """``SNAPSYNC_LOG_LEVEL`` as a logging level; unknown names mean INFO."""
    name = os.getenv(ENV_LOG_LEVEL, "INFO").upper()
    level = getattr(logging, name, None)
    return level if isinstance(level, int) else logging.INFO


def session_log_path() -> Optional[Path]:
    """File this process logs to, or None when file logging is off."""
    global _process_stamp
    if os.getenv(ENV_LOG_DISABLE_FILE, "").lower() in ("1", "true", "yes"):
        return None
    if _process_stamp is None:
        _process_stamp = datetime.now(timezone.utc).strftime("%Y-%m-%d_%H%M%S")

    directory = Path(os.getenv(ENV_LOG_DIR, DEFAULT_LOG_DIR))
    directory.mkdir(parents=True, exist_ok=True)
    return directory / f"snapsync_{_process_stamp}.log"


def _handlers(level: int) -> List[logging.Handler]:
    handlers: List[logging.Handler] = []
    path = session_log_path()
    if path is not None:
        handlers.append(
            RotatingFileHandler(
                str(path),
                maxBytes=int(os.getenv(ENV_LOG_MAX_BYTES, DEFAULT_MAX_BYTES)),
                backupCount=int(os.getenv(ENV_LOG_BACKUP_COUNT, DEFAULT_BACKUP_COUNT)),
            )
        )
        handlers[-1].setLevel(level)

    console = logging.StreamHandler()
    console.setLevel(max(level, logging.WARNING))
    handlers.append(console)
    return handlers


def get_logger() -> logging.Logger:
    """The ``snapsync`` logger, set up from the environment on first use."""
    global _configured
    logger = logging.getLogger(LOGGER_NAME)
    if _configured:
        return logger

    _configured = True
    level = level_from_env()
    logger.handlers.clear()
    logger.setLevel(level)
    formatter = logging.Formatter(LINE_FORMAT, datefmt=DATE_FORMAT)
    for handler in _handlers(level):
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    return logger


def reset_logging() -> None:
    """Drop the handlers so the next log call rereads the environment."""
    global _configured, _process_stamp
    logging.getLogger(LOGGER_NAME).handlers.clear()
    _configured = False
    _process_stamp = None


def _emit(level: int, message: str, fields: Dict[str, Any]) -> None:
    logger = get_logger()
    if not logger.isEnabledFor(level):
        return
    logger.log(level, f"{message} {_compact(fields)}" if fields else message)


def log_action(
    action: str,
    *,
    outcome: str = "ok",
    duration_ms: Optional[float] = None,
    **fields: Any,
) -> None:
    """Log one JSON object describing a finished action.

    The object always holds ``ts``, ``action`` and ``outcome``; ``duration_ms``
    is rounded to two decimals. Values JSON cannot encode are logged as
    their ``str()``.
    """
    record: Dict[str, Any] = {
        "ts": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f") + "Z",
        "action": action,
        "outcome": outcome,
    }
    if duration_ms is not None:
        record["duration_ms"] = round(duration_ms, 2)
    record.update(fields)
    get_logger().info(_compact(record))


def log_debug(message: str, **fields: Any) -> None:
    _emit(logging.DEBUG, message, fields)


def log_info(message: str, **fields: Any) -> None:
    _emit(logging.INFO, message, fields)


def log_warning(message: str, **fields: Any) -> None:
    _emit(logging.WARNING, message, fields)


def log_error(message: str, **fields: Any) -> None:
    _emit(logging.ERROR, message, fields)


@contextmanager
def timeit(action: str, **fields: Any):
    """Run a block and log it as ``action`` with its duration.

    The block gets a dict; whatever it stores there is logged too. An
    exception is logged with outcome ``error`` and then re-raised.
    """
    started = time.perf_counter()
    extra: Dict[str, Any] = {}
    error: Optional[str] = None
    try:
        yield extra
    except Exception as exc:
        error = str(exc)
        raise
    finally:
        data = {**fields, **extra}
        if error is not None:
            data["error"] = error
        log_action(
            action,
            outcome="ok" if error is None else "error",
            duration_ms=(time.perf_counter() - started) * 1000.0,
            **data,
        )
