"""
Structured JSON logging for the approval engine.

Every record is one JSON object per line: ``ts``, ``level``, ``logger`` and
``message``, then the fields bound in ``LogContext``, then the ``extra``
fields of the call.  Exceptions add ``exc_type``, ``exc_message``,
``exc_code`` and one ``exc_<attr>`` per public attribute of the error.

Usage:
    logger = get_logger("services.escalation")
    with LogContext.bind(operation="escalation_sweep"):
        logger.info("approval_step_escalated", extra={"step_id": str(step_id)})
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
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Iterator
from uuid import UUID

# ---------------------------------------------------------------------------
# Context propagation
# ---------------------------------------------------------------------------


class LogContext:
    """Operation-scoped log fields, isolated per thread and per task."""

    FIELDS = ("correlation_id", "operation", "expense_id", "step_id", "actor_id")

    _fields: ContextVar[dict[str, str] | None] = ContextVar(
        "approval_log_context", default=None
    )

    @classmethod
    def set(cls, **fields: str | None) -> None:
        """Merge ``fields`` into the current context; None values are ignored."""
        unknown = sorted(set(fields) - set(cls.FIELDS))
        if unknown:
            raise TypeError(f"Unknown log context field(s): {', '.join(unknown)}")
        cls._fields.set({**cls.get_all(), **cls._clean(fields)})

    @classmethod
    def get_all(cls) -> dict[str, str]:
        return dict(cls._fields.get() or {})

    @classmethod
    def clear(cls) -> None:
        cls._fields.set({})

    @classmethod
    @contextmanager
    def bind(cls, **fields: Any) -> Iterator[type["LogContext"]]:
        """Bind fields for the duration of a block, then restore the previous
        context.  Names outside ``FIELDS`` and None values are dropped."""
        known = {k: v for k, v in fields.items() if k in cls.FIELDS}
        token = cls._fields.set({**cls.get_all(), **cls._clean(known)})
        try:
            yield cls
        finally:
            cls._fields.reset(token)

    @staticmethod
    def _clean(fields: dict[str, Any]) -> dict[str, str]:
        return {k: str(v) for k, v in fields.items() if v is not None}


# ---------------------------------------------------------------------------
# JSON Formatter
# ---------------------------------------------------------------------------

# Attributes every LogRecord carries; anything else came in through ``extra``.
_RECORD_ATTRIBUTES = frozenset(logging.makeLogRecord({}).__dict__) | {
    "message",
    "asctime",
    "taskName",
}


def _json_default(value: Any) -> Any:
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return str(value)


def _exception_fields(exc: BaseException) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "exc_type": type(exc).__name__,
        "exc_message": str(exc),
    }
    code = getattr(exc, "code", None)
    if code is not None:
        fields["exc_code"] = code
    for name, value in vars(exc).items():
        if not name.startswith("_") and name != "code":
            fields[f"exc_{name}"] = value
    return fields


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **LogContext.get_all(),
        }
        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRIBUTES:
                payload.setdefault(key, value)

        if record.exc_info and record.exc_info[1] is not None:
            payload.update(_exception_fields(record.exc_info[1]))
            payload["traceback"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=_json_default)


# ---------------------------------------------------------------------------
# Logger factory
# ---------------------------------------------------------------------------

_LOGGER_PREFIX = "approval_engine"
_PLAIN_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def get_logger(name: str) -> logging.Logger:
    """Logger ``approval_engine.<name>``."""
    return logging.getLogger(f"{_LOGGER_PREFIX}.{name}")


# ---------------------------------------------------------------------------
# Initialization
# ---------------------------------------------------------------------------

_configured = False
_lock = threading.Lock()


def configure_logging(
    *,
    level: int | str = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
    json_output: bool = True,
) -> None:
    """Attach one handler to the ``approval_engine`` logger.

    Only the first call after start-up (or after ``reset_logging``) has an
    effect.  With ``json_output=False`` records are plain text lines and the
    context and extra fields are omitted.
    """
    global _configured
    with _lock:
        if _configured:
            return
        _configured = True

    target = handler if handler is not None else logging.StreamHandler(stream or sys.stderr)
    target.setFormatter(
        StructuredFormatter() if json_output else logging.Formatter(_PLAIN_FORMAT)
    )

    root = logging.getLogger(_LOGGER_PREFIX)
    root.setLevel(level)
    root.propagate = False
    root.addHandler(target)


def reset_logging() -> None:
    """Remove the handler and allow ``configure_logging`` again.  Tests only."""
    global _configured
    with _lock:
        _configured = False
    root = logging.getLogger(_LOGGER_PREFIX)
    root.handlers.clear()
    root.setLevel(logging.WARNING)
