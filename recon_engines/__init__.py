"""
Module: recon_engines
Responsibility:
    Package entrypoint for the pure reconciliation engines.  Higher layers
    (recon_services) import from here or from ``recon_engines.matching``.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import recon_kernel and recon_config.
    MUST NOT import recon_services.

Invariants enforced:
    - Purity: engines never read the clock; "now" is an explicit argument
      or comes from an injected Clock.
    - Decimal-only arithmetic for amounts and confidences.
    - Determinism: identical inputs always produce identical outputs.

Audit relevance:
    Engine entry points are traced via ``@traced_engine`` (see
    ``recon_engines.tracer``), emitting RECON_ENGINE_TRACE log records.

Usage:
    from recon_engines import MatchingEngine
    from recon_engines.matching.projection import to_apply_ops
"""

from recon_kernel.logging_config import get_logger

logger = get_logger("engines")

from recon_engines.matching import (  # noqa: E402
    MatchDecision,
    MatchingEngine,
    PipelineResult,
    resolve_conflicts,
    to_apply_ops,
    to_audit_record,
)

__all__ = [
    "MatchDecision",
    "MatchingEngine",
    "PipelineResult",
    "resolve_conflicts",
    "to_apply_ops",
    "to_audit_record",
]
