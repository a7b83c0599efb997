"""
Structured JSON logging for the reconciliation kernel.

Every record under the ``recon_kernel`` logger is one JSON line.  Fields
bound with ``LogContext.bind`` (company, actor, run, record being decided)
are stamped on each line written inside the ``with`` block, so a run can be
followed end to end by filtering on ``run_id``, and a single payout's
decisions by ``record_ref``.

A ReconciliationError attached to a record (``logger.exception`` or
``exc_info=True``) is rendered under ``error`` with its code and structured
attributes, e.g. the from/to status of a rejected transition.
"""

__all__ = [
    "CONTEXT_FIELDS",
    "LogContext",
    "StructuredFormatter",
    "configure_logging",
    "get_logger",
    "reset_logging",
]

import json
import logging
import sys
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

LOGGER_NAMESPACE = "recon_kernel"

CONTEXT_FIELDS = ("company_id", "actor_id", "run_id", "record_ref", "trace_id")

_context_vars: dict[str, ContextVar[str | None]] = {
    name: ContextVar(f"recon_log_{name}", default=None) for name in CONTEXT_FIELDS
}


class LogContext:
    """Run-scoped log fields, isolated per thread and per asyncio task."""

    @staticmethod
    def get(name: str) -> str | None:
        var = _context_vars.get(name)
        return var.get() if var is not None else None

    @staticmethod
    def get_all() -> dict[str, str]:
        bound = {name: var.get() for name, var in _context_vars.items()}
        return {name: value for name, value in bound.items() if value is not None}

    @staticmethod
    def clear() -> None:
        for var in _context_vars.values():
            var.set(None)

    @staticmethod
    @contextmanager
    def bind(**fields: Any) -> Iterator[None]:
        """
        Stamp ``fields`` on every record logged inside the block.

        None values leave the current binding alone.  Inner binds shadow
        outer ones and the outer value is back once the block exits.

        Raises:
            TypeError: a field is not one of CONTEXT_FIELDS.
        """
        unknown = set(fields) - set(CONTEXT_FIELDS)
        if unknown:
            raise TypeError(f"Unknown log context field(s): {sorted(unknown)}")

        tokens = [
            (_context_vars[name], _context_vars[name].set(str(value)))
            for name, value in fields.items()
            if value is not None
        ]
        try:
            yield
        finally:
            for var, token in reversed(tokens):
                var.reset(token)


# Attributes every LogRecord carries; anything else came in through ``extra``.
_RECORD_ATTRS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "taskName"}


def _json_default(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=str)
    return str(value)


def _error_fields(exc: BaseException) -> dict[str, Any]:
    error: dict[str, Any] = {"type": type(exc).__name__, "message": str(exc)}
    code = getattr(exc, "code", None)
    if code is not None:
        error["code"] = code
    for name, value in vars(exc).items():
        if not name.startswith("_") and name not in error:
            error[name] = value
    return error


class StructuredFormatter(logging.Formatter):
    """
    One JSON object per record.

    Key precedence, lowest first: bound LogContext fields, then ``extra``
    fields; the ts/level/logger/message header always wins.
    """

    def format(self, record: logging.LogRecord) -> str:
        line: dict[str, Any] = dict(LogContext.get_all())
        line.update(
            (key, value)
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRS
        )
        line.update(
            ts=datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            level=record.levelname,
            logger=record.name,
            message=record.getMessage(),
        )

        if record.exc_info and record.exc_info[1] is not None:
            line["error"] = _error_fields(record.exc_info[1])
            line["error"]["traceback"] = self.formatException(record.exc_info)

        return json.dumps(line, default=_json_default)


def get_logger(name: str) -> logging.Logger:
    """Logger ``recon_kernel.<name>``."""
    return logging.getLogger(f"{LOGGER_NAMESPACE}.{name}")


_configured = False
_lock = threading.Lock()


def configure_logging(
    *,
    level: int = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """
    Attach one structured handler to the ``recon_kernel`` logger.

    Later calls are no-ops until reset_logging().  Records do not
    propagate to the root logger, so host applications keep their own
    formatting.
    """
    global _configured
    with _lock:
        if _configured:
            return
        _configured = True

    namespace = logging.getLogger(LOGGER_NAMESPACE)
    namespace.setLevel(level)
    namespace.propagate = False

    if handler is None:
        handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(StructuredFormatter())
    namespace.addHandler(handler)


def reset_logging() -> None:
    """Undo configure_logging(); used by the test suite."""
    global _configured
    with _lock:
        _configured = False
    namespace = logging.getLogger(LOGGER_NAMESPACE)
    namespace.handlers.clear()
    namespace.setLevel(logging.WARNING)
