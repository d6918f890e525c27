"""
Structured JSON logging for allocation work.

Every record under the ``pharmacy_kernel`` logger becomes one JSON line:

    {"ts": ..., "level": ..., "logger": ..., "message": "batch_decremented",
     "product_id": "PARA-500", "transaction_id": "...",      <- bound context
     "strip_qty_before": 3, "strip_qty_after": 2, ...,       <- extra=
     "stock_delta": {"strip_qty": -1, "tablet_qty": 0}}      <- derived

Records logged with an exception attached carry ``exc_type`` and
``exc_message``.  Kernel errors also carry ``exc_code``, ``exc_retryable``
and their structured fields as ``exc_<field>`` (an override rejection adds
``exc_problem_reasons``); they are business outcomes, so no traceback is
attached.  Any other exception gets a ``traceback``.
"""

__all__ = [
    "StructuredFormatter",
    "allocation_context",
    "configure_logging",
    "current_context",
    "get_logger",
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

from pharmacy_kernel.exceptions import AllocationValidationError, PharmacyKernelError

_LOGGER_PREFIX = "pharmacy_kernel"

CONTEXT_FIELDS = ("product_id", "transaction_id", "sales_line_id", "actor_id")

# Quantities logged as <field>_before / <field>_after pairs
_STOCK_FIELDS = ("strip_qty", "tablet_qty")

_STDLIB_KEYS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "taskName"}


# ---------------------------------------------------------------------------
# Allocation context
# ---------------------------------------------------------------------------

_context: ContextVar[dict[str, str] | None] = ContextVar(
    "allocation_log_context", default=None
)


def current_context() -> dict[str, str]:
    """Fields bound by the innermost ``allocation_context`` block."""
    return dict(_context.get() or {})


@contextmanager
def allocation_context(**fields: str | None) -> Iterator[None]:
    """
    Bind allocation identifiers to every record logged inside the block.

    None values leave an outer binding in place.  Unknown names raise
    TypeError so a typo never silently drops a field.
    """
    unknown = set(fields) - set(CONTEXT_FIELDS)
    if unknown:
        raise TypeError(f"Unknown log context fields: {sorted(unknown)}")

    merged = current_context()
    merged.update({k: v for k, v in fields.items() if v is not None})
    token = _context.set(merged)
    try:
        yield
    finally:
        _context.reset(token)


# ---------------------------------------------------------------------------
# JSON formatter
# ---------------------------------------------------------------------------


def _json_default(value: Any) -> Any:
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return str(value)


def _stock_delta(payload: dict[str, Any]) -> dict[str, int]:
    delta: dict[str, int] = {}
    for field in _STOCK_FIELDS:
        before = payload.get(f"{field}_before")
        after = payload.get(f"{field}_after")
        if isinstance(before, int) and isinstance(after, int):
            delta[field] = after - before
    return delta


class StructuredFormatter(logging.Formatter):
    """Formats each log record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(current_context())

        for key, val in vars(record).items():
            if key not in _STDLIB_KEYS and key not in payload:
                payload[key] = val

        delta = _stock_delta(payload)
        if delta:
            payload["stock_delta"] = delta

        if record.exc_info and record.exc_info[1] is not None:
            payload.update(self._exception_fields(record.exc_info))

        return json.dumps(payload, default=_json_default)

    def _exception_fields(self, exc_info) -> dict[str, Any]:
        exc = exc_info[1]
        fields: dict[str, Any] = {
            "exc_type": type(exc).__name__,
            "exc_message": str(exc),
        }
        if not isinstance(exc, PharmacyKernelError):
            fields["traceback"] = self.formatException(exc_info)
            return fields

        fields["exc_code"] = exc.code
        fields["exc_retryable"] = exc.retryable
        for key, val in vars(exc).items():
            if not key.startswith("_") and key not in ("args", "code", "retryable"):
                fields[f"exc_{key}"] = val
        if isinstance(exc, AllocationValidationError):
            fields["exc_problem_reasons"] = sorted(
                {p.get("reason", "unknown") for p in exc.problems}
            )
        return fields


# ---------------------------------------------------------------------------
# Logger factory and setup
# ---------------------------------------------------------------------------


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the pharmacy_kernel namespace."""
    return logging.getLogger(f"{_LOGGER_PREFIX}.{name}")


_configured = False
_lock = threading.Lock()


def configure_logging(
    *,
    level: int = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
    force: bool = False,
) -> logging.Logger:
    """
    Attach a JSON handler to the pharmacy_kernel logger.

    Only the first call takes effect unless ``force`` is set, in which case
    existing handlers are replaced.
    """
    global _configured
    kernel_logger = logging.getLogger(_LOGGER_PREFIX)
    with _lock:
        if _configured and not force:
            return kernel_logger

        for existing in list(kernel_logger.handlers):
            kernel_logger.removeHandler(existing)
        if handler is None:
            handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(StructuredFormatter())
        kernel_logger.addHandler(handler)
        kernel_logger.setLevel(level)
        kernel_logger.propagate = False
        _configured = True
    return kernel_logger
