"""
recon_engines.tracer -- RECON_ENGINE_TRACE records for matching stages.

Responsibility:
    ``@traced_engine`` wraps a pure matching stage (candidate selection,
    relation building, subset search, resolution, lifecycle evaluation)
    and logs one debug record per call: which stage ran, which snapshot it
    saw (an input fingerprint), how long it took and how many results it
    produced.

Architecture position:
    Engines.  The wrapped functions stay pure; the decorator only reads
    their arguments and writes a log line.

Invariants enforced:
    - The fingerprint depends only on the selected arguments' content.
      Documents, transactions and candidates are reduced to their kind and
      id, so two calls over the same snapshot share a fingerprint no matter
      how the objects were built.
    - Fingerprints are the first 16 hex chars of ``hash_payload``.

Failure modes:
    - A fingerprint field that is not bound in a call is recorded as null.
    - Exceptions from the wrapped stage propagate unchanged; no trace is
      written for a failed call.

Usage:
    @traced_engine("subset_sum", "1.0", fingerprint_fields=("candidates", "target"))
    def subset_sum_docs_to_amount(candidates, target, config):
        ...
"""

from __future__ import annotations

import functools
import inspect
import time
from collections.abc import Callable, Mapping, Sized
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any

from recon_kernel.logging_config import get_logger
from recon_kernel.utils.hashing import hash_payload

_logger = get_logger("engines.tracer")

TRACE_EVENT = "RECON_ENGINE_TRACE"


def _reduce(value: Any) -> Any:
    """Shrink an argument to the part that identifies it in a snapshot."""
    if value is None or isinstance(value, (str, int, float, bool, Decimal, date, Enum)):
        return value
    if isinstance(value, Mapping):
        return {str(k): _reduce(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_reduce(v) for v in value]
    if isinstance(value, (set, frozenset)):
        return sorted(str(_reduce(v)) for v in value)
    record_id = getattr(value, "id", None)
    if isinstance(record_id, str):
        return f"{type(value).__name__}:{record_id}"
    # Candidates carry the record they point at.
    for attr in ("document", "transaction"):
        inner = getattr(value, attr, None)
        if inner is not None:
            return f"{type(value).__name__}>{_reduce(inner)}"
    # Decisions and other frozen value objects have a stable repr.
    return repr(value)


def compute_input_fingerprint(
    fingerprint_fields: tuple[str, ...],
    arguments: Mapping[str, Any],
) -> str:
    payload = {name: _reduce(arguments.get(name)) for name in fingerprint_fields}
    return hash_payload(payload)[:16]


def _result_size(result: Any) -> int | None:
    if isinstance(result, Sized) and not isinstance(result, str):
        return len(result)
    return None


def traced_engine(
    engine_name: str,
    engine_version: str,
    fingerprint_fields: tuple[str, ...] = (),
) -> Callable:
    """
    Decorate a matching stage so each call emits RECON_ENGINE_TRACE.

    ``fingerprint_fields`` names the parameters (positional or keyword)
    that identify the input snapshot.
    """

    def decorator(func: Callable) -> Callable:
        signature = inspect.signature(func)

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            fingerprint = None
            if fingerprint_fields:
                bound = signature.bind_partial(*args, **kwargs)
                fingerprint = compute_input_fingerprint(fingerprint_fields, bound.arguments)

            started = time.perf_counter()
            result = func(*args, **kwargs)
            elapsed_ms = (time.perf_counter() - started) * 1000

            _logger.debug(
                TRACE_EVENT,
                extra={
                    "trace_type": TRACE_EVENT,
                    "engine_name": engine_name,
                    "engine_version": engine_version,
                    "input_fingerprint": fingerprint,
                    "result_count": _result_size(result),
                    "duration_ms": round(elapsed_ms, 2),
                },
            )
            return result

        return wrapper

    return decorator
