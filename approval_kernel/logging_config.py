"""
Structured JSON logging for the approval kernel.

Every record under the ``approval_kernel`` logger is rendered as one JSON
object per line: a fixed envelope (ts, level, logger, message), the
request-scoped ``LogContext`` fields, the record's ``extra`` fields, and,
when an exception is attached, its type, message, ``code`` and public
attributes.

Services bind context around a unit of work::

    with LogContext.bind(request_id=request_id, actor_id=approver_id):
        logger.info("decision_recorded", extra={"step_index": 2})
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
from contextvars import ContextVar, Token
from datetime import UTC, date, datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping
from uuid import UUID

_LOGGER_PREFIX = "approval_kernel"

_CONTEXT_FIELDS = (
    "correlation_id",
    "request_id",
    "instance_id",
    "actor_id",
    "template_id",
)

_EMPTY: Mapping[str, str] = MappingProxyType({})

_context: ContextVar[Mapping[str, str]] = ContextVar("approval_log_context", default=_EMPTY)


def _merged(values: Mapping[str, Any]) -> Mapping[str, str]:
    current = dict(_context.get())
    for key, val in values.items():
        if key in _CONTEXT_FIELDS and val is not None:
            current[key] = str(val)
    return MappingProxyType(current)


# ---------------------------------------------------------------------------
# Context propagation
# ---------------------------------------------------------------------------


class LogContext:
    """
    Request-scoped log fields, isolated per thread and per asyncio task.

    Only the names in ``_CONTEXT_FIELDS`` are carried; ``None`` never
    overwrites a value.  Values are stored as strings so UUIDs can be
    passed directly.
    """

    @staticmethod
    def set(
        *,
        correlation_id: Any = None,
        request_id: Any = None,
        instance_id: Any = None,
        actor_id: Any = None,
        template_id: Any = None,
    ) -> None:
        _context.set(_merged({
            "correlation_id": correlation_id,
            "request_id": request_id,
            "instance_id": instance_id,
            "actor_id": actor_id,
            "template_id": template_id,
        }))

    @staticmethod
    def get_all() -> dict[str, str]:
        return dict(_context.get())

    @staticmethod
    def clear() -> None:
        _context.set(_EMPTY)

    @staticmethod
    def bind(**fields: Any) -> "_Binding":
        """Set fields for the duration of a ``with`` block, then restore."""
        return _Binding(fields)


class _Binding:

    def __init__(self, fields: Mapping[str, Any]):
        self._fields = fields
        self._token: Token | None = None

    def __enter__(self) -> type[LogContext]:
        self._token = _context.set(_merged(self._fields))
        return LogContext

    def __exit__(self, *exc: Any) -> None:
        if self._token is not None:
            _context.reset(self._token)
            self._token = None


# ---------------------------------------------------------------------------
# JSON Formatter
# ---------------------------------------------------------------------------

# Attributes every LogRecord has; anything else arrived through ``extra``
_RECORD_ATTRIBUTES: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "taskName"}


def _json_default(obj: Any) -> Any:
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, (set, frozenset, tuple)):
        return sorted(str(v) for v in obj)
    return str(obj)


class StructuredFormatter(logging.Formatter):
    """One JSON object per record.  Context fields win over ``extra``."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(_context.get())

        for key, val in vars(record).items():
            if key not in _RECORD_ATTRIBUTES:
                payload.setdefault(key, val)

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
        # Kernel errors expose their structured attributes (node ids, versions, ...)
        for name, val in vars(exc).items():
            if not name.startswith("_") and name not in ("args", "code"):
                fields[f"exc_{name}"] = val
        return fields


# ---------------------------------------------------------------------------
# Logger factory and initialization
# ---------------------------------------------------------------------------


def get_logger(name: str) -> logging.Logger:
    """Child of the ``approval_kernel`` logger, e.g. ``services.workflow_engine``."""
    return logging.getLogger(f"{_LOGGER_PREFIX}.{name}")


_configured = False
_lock = threading.Lock()


def configure_logging(
    *,
    level: int | str = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """
    Attach one JSON handler to the ``approval_kernel`` logger.

    Only the first call has an effect until ``reset_logging()``.  ``level``
    takes either a number or a name such as ``"DEBUG"``.
    """
    global _configured
    with _lock:
        if _configured:
            return
        _configured = True

    target = handler or logging.StreamHandler(stream or sys.stderr)
    target.setFormatter(StructuredFormatter())

    root = logging.getLogger(_LOGGER_PREFIX)
    root.setLevel(level.upper() if isinstance(level, str) else level)
    root.propagate = False
    root.addHandler(target)


def reset_logging() -> None:
    """Drop handlers and allow configure_logging() again.  Tests only."""
    global _configured
    with _lock:
        _configured = False
    root = logging.getLogger(_LOGGER_PREFIX)
    root.handlers.clear()
    root.setLevel(logging.WARNING)
