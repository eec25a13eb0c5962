"""
Structured JSON logging for the loan pipeline.

Every record under the ``loan_kernel`` logger becomes one JSON object per
line: envelope (ts, level, logger, message, thread), the pipeline ids bound
in ``LogContext``, the record's ``extra`` fields, and for exceptions the
error code and structured attributes of ``LoanKernelError`` subclasses.

Context ids are carried in contextvars, so each worker thread and each
intake call sees only its own application / conversation / worker ids.
"""

__all__ = [
    "StructuredFormatter",
    "LogContext",
    "get_logger",
    "configure_logging",
    "reset_logging",
]

import json
import logging
import sys
import threading
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Iterator
from uuid import UUID

_LOGGER_PREFIX = "loan_kernel"

# Ids that identify the unit of work a record belongs to
CONTEXT_FIELDS = (
    "correlation_id",
    "application_id",
    "conversation_id",
    "actor",
    "worker_id",
)

_context_vars: dict[str, ContextVar[str | None]] = {
    name: ContextVar(f"loan_log_{name}", default=None) for name in CONTEXT_FIELDS
}


def _context_var(name: str) -> ContextVar[str | None]:
    try:
        return _context_vars[name]
    except KeyError:
        raise TypeError(f"Unknown log context field: {name}") from None


class LogContext:
    """Pipeline ids attached to every record logged in the current context."""

    @staticmethod
    def set(**fields: Any) -> None:
        """Set fields for the rest of the current context; None values are ignored."""
        for name, value in fields.items():
            var = _context_var(name)
            if value is not None:
                var.set(str(value))

    @staticmethod
    def get_all() -> dict[str, str]:
        values = {name: var.get() for name, var in _context_vars.items()}
        return {name: value for name, value in values.items() if value is not None}

    @staticmethod
    def clear() -> None:
        for var in _context_vars.values():
            var.set(None)

    @staticmethod
    @contextmanager
    def bind(**fields: Any) -> Iterator[None]:
        """Set fields for the ``with`` block, restoring the previous values on exit."""
        tokens = []
        try:
            for name, value in fields.items():
                var = _context_var(name)
                if value is not None:
                    tokens.append((var, var.set(str(value))))
            yield
        finally:
            for var, token in reversed(tokens):
                var.reset(token)


# ---------------------------------------------------------------------------
# JSON Formatter
# ---------------------------------------------------------------------------

# Attributes every LogRecord has; anything else on a record came from ``extra``
_RECORD_ATTRS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "taskName"}


def _json_default(obj: Any) -> Any:
    if isinstance(obj, (UUID, Decimal)):
        return str(obj)
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    return str(obj)


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "thread": record.threadName,
            **LogContext.get_all(),
        }
        for key, value in vars(record).items():
            if key not in _RECORD_ATTRS:
                payload.setdefault(key, value)

        if record.exc_info and record.exc_info[1] is not None:
            payload.update(self._exception_fields(record.exc_info[1]))
            payload["traceback"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=_json_default)

    @staticmethod
    def _exception_fields(exc: BaseException) -> dict[str, Any]:
        fields: dict[str, Any] = {
            "exc_type": type(exc).__name__,
            "exc_message": str(exc),
        }
        code = getattr(exc, "code", None)
        if code is not None:
            fields["exc_code"] = code
        # LoanKernelError subclasses keep their details as public attributes
        fields.update(
            (f"exc_{name}", value)
            for name, value in vars(exc).items()
            if not name.startswith("_") and name != "code"
        )
        return fields


def get_logger(name: str) -> logging.Logger:
    """Logger under the loan_kernel namespace, e.g. ``get_logger("services.queue")``."""
    return logging.getLogger(f"{_LOGGER_PREFIX}.{name}")


_configured = False
_lock = threading.Lock()


def configure_logging(
    *,
    level: int | str = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """Attach one JSON handler to the loan_kernel logger.  Later calls are no-ops."""
    global _configured
    with _lock:
        if _configured:
            return
        _configured = True

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())

    logger = logging.getLogger(_LOGGER_PREFIX)
    logger.setLevel(level)
    logger.propagate = False

    handler = handler or logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(StructuredFormatter())
    logger.addHandler(handler)


def reset_logging() -> None:
    """Undo configure_logging(). FOR TESTING ONLY."""
    global _configured
    with _lock:
        _configured = False
    logger = logging.getLogger(_LOGGER_PREFIX)
    logger.handlers.clear()
    logger.setLevel(logging.WARNING)
