"""
Structured logging -- one JSON object per line for every reconciliation event.

Responsibility:
    Give every module a logger under the ``recon`` namespace and render its
    records as JSON lines that carry the run-scoped identifiers (tenant,
    run, actor, correlation and trace ids) without the caller passing them
    on every call.

Architecture position:
    Kernel.  Imported by every layer; imports nothing from the project
    except at format time, where exception fields are read generically.

Invariants enforced:
    - Event names are the log message; structured values travel in
      ``extra={...}`` and land as top-level JSON keys.
    - Context fields never overwrite the envelope (ts, level, logger,
      message); record extras never overwrite context fields.
    - ``configure_logging`` installs at most one handler until
      ``reset_logging`` is called.

Audit relevance:
    A nightly run binds ``run_id`` once in ``MatchingService.run``; every
    decision, warning and trace line emitted during that run can then be
    selected by that id.

Usage:
    from recon_kernel.logging_config import LogContext, get_logger

    logger = get_logger("engines.matching.pipeline")
    with LogContext.bind(tenant_id="tenant-1", run_id=run_id):
        logger.info("pipeline_completed", extra={"final_count": 3})
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
# Run-scoped context
# ---------------------------------------------------------------------------

_CONTEXT_FIELDS = ("correlation_id", "tenant_id", "run_id", "actor_id", "trace_id")

_context_vars: dict[str, ContextVar[str | None]] = {
    name: ContextVar(f"recon_log_{name}", default=None) for name in _CONTEXT_FIELDS
}


class LogContext:
    """
    Identifiers attached to every log line emitted in the current context.

    Backed by ContextVars, so concurrent runs in threads or tasks each see
    their own values.
    """

    @staticmethod
    def set(
        *,
        correlation_id: str | None = None,
        tenant_id: str | None = None,
        run_id: str | None = None,
        actor_id: str | None = None,
        trace_id: str | None = None,
    ) -> None:
        """Update the given fields; ``None`` leaves a field untouched."""
        values = {
            "correlation_id": correlation_id,
            "tenant_id": tenant_id,
            "run_id": run_id,
            "actor_id": actor_id,
            "trace_id": trace_id,
        }
        for name, value in values.items():
            if value is not None:
                _context_vars[name].set(value)

    @staticmethod
    def get_all() -> dict[str, str]:
        return {
            name: var.get()
            for name, var in _context_vars.items()
            if var.get() is not None
        }

    @staticmethod
    def clear() -> None:
        for var in _context_vars.values():
            var.set(None)

    @staticmethod
    @contextmanager
    def bind(**fields: str | None) -> Iterator[type["LogContext"]]:
        """
        Set fields for the duration of a ``with`` block, then restore them.

        Names outside the known context fields are ignored so callers can
        pass through a wider mapping.
        """
        tokens = [
            (_context_vars[name], _context_vars[name].set(value))
            for name, value in fields.items()
            if value is not None and name in _context_vars
        ]
        try:
            yield LogContext
        finally:
            for var, token in reversed(tokens):
                var.reset(token)


# ---------------------------------------------------------------------------
# JSON rendering
# ---------------------------------------------------------------------------

# Attributes every LogRecord carries; anything else on a record came from extra=.
_RECORD_ATTRS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "taskName"}


def _json_default(value: Any) -> Any:
    """Render the value types that show up in decision and run payloads."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (Decimal, UUID)):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=str)
    return str(value)


def _exception_fields(exc: BaseException) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "exc_type": type(exc).__name__,
        "exc_message": str(exc),
    }
    code = getattr(exc, "code", None)
    if code is not None:
        fields["exc_code"] = code
    # ReconKernelError subclasses keep their context as public attributes.
    for attr, value in vars(exc).items():
        if attr != "code" and not attr.startswith("_"):
            fields[f"exc_{attr}"] = value
    return fields


class StructuredFormatter(logging.Formatter):
    """Render a record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name, value in LogContext.get_all().items():
            entry.setdefault(name, value)
        for attr, value in vars(record).items():
            if attr not in _RECORD_ATTRS:
                entry.setdefault(attr, value)

        if record.exc_info and record.exc_info[1] is not None:
            entry.update(_exception_fields(record.exc_info[1]))
            entry["traceback"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=_json_default)


# ---------------------------------------------------------------------------
# Logger factory and setup
# ---------------------------------------------------------------------------

_ROOT_NAME = "recon"

_setup_lock = threading.Lock()
_installed_handler: logging.Handler | None = None


def get_logger(name: str) -> logging.Logger:
    """Logger ``recon.<name>``; ``name`` mirrors the module path, e.g. ``services.matching``."""
    return logging.getLogger(f"{_ROOT_NAME}.{name}")


def configure_logging(
    *,
    level: int = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """
    Attach a JSON handler to the ``recon`` logger.

    Only the first call takes effect; later calls are no-ops until
    ``reset_logging``.  ``handler`` wins over ``stream``; with neither,
    lines go to stderr.
    """
    global _installed_handler
    with _setup_lock:
        if _installed_handler is not None:
            return
        target = handler or logging.StreamHandler(stream or sys.stderr)
        target.setFormatter(StructuredFormatter())

        root = logging.getLogger(_ROOT_NAME)
        root.setLevel(level)
        root.propagate = False
        root.addHandler(target)
        _installed_handler = target


def reset_logging() -> None:
    """Detach the installed handler and restore defaults. Test use only."""
    global _installed_handler
    with _setup_lock:
        root = logging.getLogger(_ROOT_NAME)
        root.handlers.clear()
        root.setLevel(logging.WARNING)
        root.propagate = True
        _installed_handler = None
