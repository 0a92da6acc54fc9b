# sessionkeeper/core/logging.py
from __future__ import annotations

import json
import logging
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterator

# ---- Correlation-ID context ----------------------------------------------------
# Holds the HTTP request id, or "sweep-<hex>" / "tick-<hex>" for background passes.
_correlation_ctx: ContextVar[str] = ContextVar("correlation_id", default="-")

def set_correlation_id(value: str) -> None:
    _correlation_ctx.set(value)

def get_correlation_id() -> str:
    return _correlation_ctx.get()

@contextmanager
def correlation_scope(prefix: str) -> Iterator[str]:
    """Bind a fresh "<prefix>-<hex>" id for the duration of the block."""
    cid = f"{prefix}-{uuid.uuid4().hex[:10]}"
    token = _correlation_ctx.set(cid)
    try:
        yield cid
    finally:
        _correlation_ctx.reset(token)

class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id()
        return True

# ---- JSON formatter --------------------------------------------------------------
_RESERVED = frozenset((
    "args", "msg", "exc_info", "exc_text", "stack_info", "pathname", "lineno",
    "levelname", "levelno", "name", "created", "msecs", "relativeCreated",
    "thread", "threadName", "process", "processName", "taskName", "module",
    "filename", "funcName",
))

class JsonFormatter(logging.Formatter):
    def _ts(self, record: logging.LogRecord) -> str:
        return datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="milliseconds")

    def format(self, record: logging.LogRecord) -> str:
        try:
            doc = {
                "ts": self._ts(record),
                "lvl": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
                "correlation_id": getattr(record, "correlation_id", "-"),
                "where": f"{record.module}:{record.lineno}",
            }
            # extra=... fields, only when JSON-serializable
            for key, value in record.__dict__.items():
                if key in _RESERVED or key in doc:
                    continue
                try:
                    json.dumps(value)
                except (TypeError, ValueError):
                    value = repr(value)
                doc[key] = value
            if record.exc_info:
                doc["exc"] = self.formatException(record.exc_info)
            return json.dumps(doc, ensure_ascii=False)
        except Exception as e:  # logging must never take the process down
            return json.dumps({"ts": self._ts(record), "lvl": "ERROR", "logger": "logging",
                               "msg": f"formatting-error: {e!r}"}, ensure_ascii=False)

# ---- Setup -----------------------------------------------------------------------
def setup_logging(log_dir: str = "logs", level: str = "INFO",
                  max_bytes: int = 1_048_576, backups: int = 7) -> None:
    path = Path(log_dir)
    path.mkdir(parents=True, exist_ok=True)

    file_handler = RotatingFileHandler(path / "sessionkeeper.log",
                                       maxBytes=max_bytes, backupCount=backups,
                                       encoding="utf-8")
    console_handler = logging.StreamHandler()

    formatter = JsonFormatter()
    cid_filter = CorrelationIdFilter()
    for handler in (file_handler, console_handler):
        handler.setFormatter(formatter)
        handler.addFilter(cid_filter)

    root = logging.getLogger()
    root.setLevel(level.upper())

    # Reset handlers to avoid double-logging on reload
    for h in list(root.handlers):
        root.removeHandler(h)
    root.addHandler(file_handler)
    root.addHandler(console_handler)

    for noisy in ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi"):
        logging.getLogger(noisy).setLevel(level.upper())
    # request lines from httpx would echo validator URLs on every sweep
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
