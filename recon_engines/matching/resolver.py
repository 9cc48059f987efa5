"""
recon_engines.matching.resolver -- Global conflict resolution.

Responsibility:
    Turn the raw decisions of all matching phases into a conflict-free
    set: binding decisions (final / partial) never share a transaction
    or a document.  Losers are demoted to ambiguous suggestions.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    Last step of ``recon_engines.matching.pipeline``.

Invariants enforced:
    - Normalization: ids sorted and unique, confidence clamped to [0, 1],
      reason codes unique in first-seen order.
    - A binding decision without tx ids or doc ids becomes ambiguous
      (INVALID_FINAL_MISSING_IDS).  A binding many_to_many becomes
      ambiguous (INVALID_FINAL_MANY_TO_MANY).
    - Duplicates by ``state|relation|tx:...|doc:...`` keep the first one.
    - Binding decisions are accepted greedily in priority order; a
      decision touching an already used id is demoted to ambiguous with
      confidence at most 0.6 (CONFLICT_DEMOTED).
    - Suggestions with the exact id sets of an accepted decision are
      dropped.

Failure modes:
    None.  Malformed decisions are demoted, never raised.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, replace
from decimal import Decimal

from recon_engines.matching.types import MatchDecision, MatchState, RelationType
from recon_engines.tracer import traced_engine
from recon_kernel.logging_config import get_logger

logger = get_logger("engines.resolver")

INVALID_FINAL_MISSING_IDS = "INVALID_FINAL_MISSING_IDS"
INVALID_FINAL_MANY_TO_MANY = "INVALID_FINAL_MANY_TO_MANY"
CONFLICT_DEMOTED = "CONFLICT_DEMOTED"

DEMOTED_CONFIDENCE_CAP = Decimal("0.6")

_STATE_RANK = {
    MatchState.FINAL: 0,
    MatchState.PARTIAL: 1,
    MatchState.SUGGESTED: 2,
    MatchState.AMBIGUOUS: 3,
}

_RELATION_RANK = {
    RelationType.ONE_TO_ONE: 0,
    RelationType.ONE_TO_MANY: 1,
    RelationType.MANY_TO_ONE: 2,
    RelationType.MANY_TO_MANY: 3,
}


@dataclass(frozen=True)
class Resolved:
    """Accepted binding decisions, ordered suggestions, and both together."""

    final: tuple[MatchDecision, ...]
    suggestions: tuple[MatchDecision, ...]
    all: tuple[MatchDecision, ...]


# ---------------------------------------------------------------------------
# Normalization and ordering
# ---------------------------------------------------------------------------


def normalize_decision(decision: MatchDecision) -> MatchDecision:
    state = decision.state
    reasons = list(decision.reason_codes)
    tx_ids = tuple(sorted(set(decision.tx_ids)))
    doc_ids = tuple(sorted(set(decision.doc_ids)))

    if decision.is_binding and (not tx_ids or not doc_ids):
        state = MatchState.AMBIGUOUS
        reasons.append(INVALID_FINAL_MISSING_IDS)
    elif decision.is_binding and decision.relation_type == RelationType.MANY_TO_MANY:
        state = MatchState.AMBIGUOUS
        reasons.append(INVALID_FINAL_MANY_TO_MANY)

    return replace(
        decision,
        state=state,
        tx_ids=tx_ids,
        doc_ids=doc_ids,
        reason_codes=tuple(reasons),
    )


def resolver_key(decision: MatchDecision) -> str:
    return (
        f"{decision.state.value}|{decision.relation_type.value}"
        f"|tx:{','.join(decision.tx_ids)}|doc:{','.join(decision.doc_ids)}"
    )


def priority_key(decision: MatchDecision) -> tuple:
    """Sort key: state, hardness, relation, confidence desc, size, key."""
    hard = 0 if any(code.startswith("HARD_") for code in decision.reason_codes) else 1
    return (
        _STATE_RANK.get(decision.state, 4),
        hard,
        _RELATION_RANK.get(decision.relation_type, 4),
        -decision.confidence,
        len(decision.tx_ids) + len(decision.doc_ids),
        resolver_key(decision),
    )


def has_overlap(a: MatchDecision, b: MatchDecision) -> bool:
    return bool(set(a.tx_ids) & set(b.tx_ids)) or bool(set(a.doc_ids) & set(b.doc_ids))


def _dedupe(decisions: Iterable[MatchDecision]) -> list[MatchDecision]:
    seen: dict[str, MatchDecision] = {}
    for decision in decisions:
        seen.setdefault(resolver_key(decision), decision)
    return list(seen.values())


def demote_decision(decision: MatchDecision, reason: str) -> MatchDecision:
    return replace(
        decision,
        state=MatchState.AMBIGUOUS,
        confidence=min(decision.confidence, DEMOTED_CONFIDENCE_CAP),
        reason_codes=decision.reason_codes + (reason,),
    )


def _same_ids(decision: MatchDecision, accepted: Sequence[MatchDecision]) -> bool:
    return any(
        decision.tx_ids == other.tx_ids and decision.doc_ids == other.doc_ids
        for other in accepted
    )


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


@traced_engine("resolver", "1.0", fingerprint_fields=("decisions",))
def resolve_conflicts(decisions: Sequence[MatchDecision]) -> Resolved:
    deduped = _dedupe(normalize_decision(d) for d in decisions)

    binding = sorted((d for d in deduped if d.is_binding), key=priority_key)
    non_binding = [d for d in deduped if not d.is_binding]

    accepted: list[MatchDecision] = []
    demoted: list[MatchDecision] = []
    used_tx: set[str] = set()
    used_doc: set[str] = set()

    for decision in binding:
        if used_tx.intersection(decision.tx_ids) or used_doc.intersection(decision.doc_ids):
            demoted.append(demote_decision(decision, CONFLICT_DEMOTED))
            continue
        accepted.append(decision)
        used_tx.update(decision.tx_ids)
        used_doc.update(decision.doc_ids)

    suggestions = sorted(
        (d for d in non_binding + demoted if not _same_ids(d, accepted)),
        key=priority_key,
    )

    logger.info(
        "conflicts_resolved",
        extra={
            "input_count": len(decisions),
            "final_count": len(accepted),
            "demoted_count": len(demoted),
            "suggestion_count": len(suggestions),
        },
    )
    return Resolved(
        final=tuple(accepted),
        suggestions=tuple(suggestions),
        all=tuple(accepted) + tuple(suggestions),
    )
