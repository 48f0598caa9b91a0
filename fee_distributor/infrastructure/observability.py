"""Structured Logging — JSON lines with pass context for the reconciliation worker.

Invariants:
    - Every line has timestamp, level, logger and message
    - Known operational fields (pass_id, batch_key, transfer_ref, error_code, ...)
      are emitted when set, whether passed via extra= or bound with pass_context()
    - Explicit extra= values win over bound context
    - setup_logging() is idempotent: calling it twice never duplicates output

Design Decisions:
    - contextvars for pass_id: every log line written during a pass (repository,
      network client, executor) is correlated without threading ids through calls
    - stdlib logging only; the formatter is the single place fields are chosen
"""

import json
import logging
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone

EXTRA_FIELDS = (
    "pass_id", "batch_key", "attempt", "transfer_ref", "error_code",
    "outcome", "cursor", "recipients", "holder_id", "path",
)

_bound: ContextVar[dict] = ContextVar("log_context", default={})

_HANDLER_NAME = "fee_distributor"
_NOISY_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "aiosqlite")


@contextmanager
def pass_context(**fields):
    """Bind fields (e.g. pass_id) to every log line emitted inside the block."""
    token = _bound.set({**_bound.get(), **fields})
    try:
        yield
    finally:
        _bound.reset(token)


class ContextFilter(logging.Filter):
    """Copies bound context onto records that did not set the field themselves."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _bound.get().items():
            if getattr(record, key, None) is None:
                setattr(record, key, value)
        return True


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        line = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        line.update(
            (key, getattr(record, key))
            for key in EXTRA_FIELDS
            if getattr(record, key, None) is not None
        )
        if record.exc_info:
            line["exception"] = self.formatException(record.exc_info)
        return json.dumps(line, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO", fmt: str = "json") -> None:
    root = logging.getLogger()
    for handler in list(root.handlers):
        if handler.get_name() == _HANDLER_NAME:
            root.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.set_name(_HANDLER_NAME)
    handler.addFilter(ContextFilter())
    handler.setFormatter(
        JSONFormatter() if fmt == "json"
        else logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"),
    )
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
