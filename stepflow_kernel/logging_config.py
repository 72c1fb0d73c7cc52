"""
Structured JSON logging for the batch engine.

Every record is one JSON object per line.  Besides the standard fields
(``ts``, ``level``, ``logger``, ``message``) a record carries:

    - the fields bound in ``LogContext`` for the running job and step
      (``correlation_id``, ``job_name``, ``job_execution_id``,
      ``step_name``, ``step_execution_id``);
    - every ``extra=`` key passed by the caller;
    - for records logged with an exception: ``exc_type``, ``exc_message``,
      ``exc_code`` and the exception's public attributes as ``exc_<name>``,
      ``exc_cause_type`` when the error wraps another, and ``traceback``.

Loggers live under the ``stepflow`` namespace (``get_logger("batch.step")``
is ``stepflow.batch.step``) and do not propagate to the root logger once
``configure_logging`` has run.
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
from collections.abc import Mapping
from contextvars import ContextVar
from datetime import UTC, date, datetime
from enum import Enum
from types import MappingProxyType
from typing import Any
from uuid import UUID

_LOGGER_PREFIX = "stepflow"

# =============================================================================
# Run context
# =============================================================================

_EMPTY: Mapping[str, str] = MappingProxyType({})

_run_fields: ContextVar[Mapping[str, str]] = ContextVar(
    "stepflow_log_run_fields", default=_EMPTY,
)


class LogContext:
    """Fields identifying the job and step a record was emitted for.

    Values live in one ContextVar, so a launcher thread running one job
    never sees the fields of another.  ``None`` values are ignored by both
    ``set`` and ``bind``.
    """

    FIELDS: tuple[str, ...] = (
        "correlation_id",
        "job_name",
        "job_execution_id",
        "step_name",
        "step_execution_id",
    )

    @classmethod
    def _merged(cls, values: Mapping[str, Any]) -> Mapping[str, str]:
        unknown = set(values) - set(cls.FIELDS)
        if unknown:
            raise TypeError(f"unknown log context field(s): {sorted(unknown)}")
        fields = dict(_run_fields.get())
        fields.update({k: str(v) for k, v in values.items() if v is not None})
        return MappingProxyType(fields)

    @classmethod
    def set(cls, **values: Any) -> None:
        _run_fields.set(cls._merged(values))

    @classmethod
    def get_all(cls) -> dict[str, str]:
        return dict(_run_fields.get())

    @classmethod
    def clear(cls) -> None:
        _run_fields.set(_EMPTY)

    @classmethod
    def bind(cls, **values: Any) -> "_Binding":
        """Set fields for the duration of a ``with`` block."""
        return _Binding(cls._merged(values))


class _Binding:
    def __init__(self, fields: Mapping[str, str]):
        self._fields = fields
        self._token: Any = None

    def __enter__(self) -> type[LogContext]:
        self._token = _run_fields.set(self._fields)
        return LogContext

    def __exit__(self, *exc: Any) -> None:
        _run_fields.reset(self._token)
        self._token = None


# =============================================================================
# JSON formatter
# =============================================================================

_STDLIB_KEYS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "taskName"}

_SKIPPED_EXC_ATTRS = frozenset({"args", "code"})


def _encode(obj: Any) -> Any:
    """json ``default`` hook for values found in batch log payloads."""
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, BaseException):
        return f"{type(obj).__name__}: {obj}"
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    exit_code = getattr(obj, "exit_code", None)
    if isinstance(exit_code, str):
        return exit_code
    if isinstance(obj, (set, frozenset)):
        return sorted(obj, key=str)
    if isinstance(obj, Mapping):
        return dict(obj)
    return str(obj)


class StructuredFormatter(logging.Formatter):
    """Formats each log record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(_run_fields.get())
        payload.update(
            (key, val)
            for key, val in vars(record).items()
            if key not in _STDLIB_KEYS and key not in payload
        )
        if record.exc_info and record.exc_info[1] is not None:
            payload.update(self._exception_fields(record.exc_info[1]))
            payload["traceback"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=_encode)

    @staticmethod
    def _exception_fields(exc: BaseException) -> dict[str, Any]:
        fields: dict[str, Any] = {
            "exc_type": type(exc).__name__,
            "exc_message": str(exc),
        }
        code = getattr(exc, "code", None)
        if code is not None:
            fields["exc_code"] = code
        for name, value in vars(exc).items():
            if not name.startswith("_") and name not in _SKIPPED_EXC_ATTRS:
                fields[f"exc_{name}"] = value
        cause = exc.__cause__ or exc.__context__
        if cause is not None:
            fields["exc_cause_type"] = type(cause).__name__
        return fields


# =============================================================================
# Setup
# =============================================================================


def get_logger(name: str) -> logging.Logger:
    """Logger ``stepflow.<name>``."""
    return logging.getLogger(f"{_LOGGER_PREFIX}.{name}")


_configured = False
_lock = threading.Lock()


def configure_logging(
    *,
    level: int | str = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """Install the JSON handler on the ``stepflow`` logger.

    Only the first call has an effect until ``reset_logging()``.  ``level``
    may be a number or a level name such as ``"DEBUG"``.
    """
    global _configured
    if isinstance(level, str):
        name = level
        level = logging.getLevelName(name.upper())
        if not isinstance(level, int):
            raise ValueError(f"unknown log level: {name}")

    with _lock:
        if _configured:
            return
        _configured = True

        target = handler if handler is not None else logging.StreamHandler(
            stream or sys.stderr
        )
        target.setFormatter(StructuredFormatter())

        base = logging.getLogger(_LOGGER_PREFIX)
        base.setLevel(level)
        base.propagate = False
        base.addHandler(target)


def reset_logging() -> None:
    """Remove the handler and restore defaults. FOR TESTING ONLY."""
    global _configured
    with _lock:
        _configured = False
        base = logging.getLogger(_LOGGER_PREFIX)
        for h in list(base.handlers):
            base.removeHandler(h)
        base.setLevel(logging.NOTSET)
        base.propagate = True
