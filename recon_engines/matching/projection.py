"""
recon_engines.matching.projection -- Decision to persistence-operation projection.

Responsibility:
    Convert a ``MatchDecision`` into a minimal, idempotent set of storage
    operations (``ApplyOp``) plus one flattened ``AuditRecord``.  This is
    the only place where a decision turns into link-state mutations.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  The operations are
    executed by a ``MatchRepository`` in ``recon_services``.

Invariants enforced:
    - final / partial decisions carry at least one transaction id and one
      document id; many_to_many is never final / partial.  Violations
      are rejected with zero operations, never coerced.
    - many_to_many projects to at most one ``upsert_group`` and never
      to edges or entity updates.
    - Edge count per relation: one_to_one 1, many_to_one one per
      document, one_to_many one per transaction.
    - Entity updates (``update_doc``, ``update_tx``,
      ``update_invoice_line_item``) only for final / partial states.
    - Ids are de-duplicated and sorted; records carry no wall-clock value
      unless ``now`` is supplied.

Failure modes:
    - ``assert_decision_persistable`` raises DecisionNotPersistableError.
      ``to_apply_ops`` catches it at the boundary, logs
      ``decision_rejected`` and returns ``()``.

Audit relevance:
    ``decision_key`` is the stable identity of a decision across runs and
    the deduplication key of audit rows.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, ClassVar, Union

from recon_engines.matching.types import (
    UNKNOWN_TENANT,
    LinkState,
    MatchDecision,
    MatchedBy,
    MatchState,
    RelationType,
)
from recon_kernel.exceptions import DecisionNotPersistableError
from recon_kernel.logging_config import get_logger

logger = get_logger("engines.projection")

MISSING_IDS_FOR_FINAL = "missing_ids_for_final"
INVALID_FINAL_MANY_TO_MANY = "invalid_final_many_to_many"

_BINDING_STATES = (MatchState.FINAL, MatchState.PARTIAL)
_ZERO = Decimal("0")


# ---------------------------------------------------------------------------
# Operation shapes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UpsertEdgeOp:
    kind: ClassVar[str] = "upsert_edge"

    tenant_id: str
    doc_id: str
    tx_id: str
    link_state: LinkState
    relation_type: RelationType
    match_group_id: str | None
    match_state: MatchState
    confidence: Decimal
    reason_codes: tuple[str, ...]
    inputs: Mapping[str, Any]
    matched_by: MatchedBy
    created_at: datetime | None

    def as_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "tenant_id": self.tenant_id,
            "doc_id": self.doc_id,
            "tx_id": self.tx_id,
            "link_state": self.link_state.value,
            "relation_type": self.relation_type.value,
            "match_group_id": self.match_group_id,
            "match_state": self.match_state.value,
            "confidence": self.confidence,
            "reason_codes": list(self.reason_codes),
            "inputs": dict(self.inputs),
            "matched_by": self.matched_by.value,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass(frozen=True)
class UpsertGroupOp:
    kind: ClassVar[str] = "upsert_group"

    tenant_id: str
    match_group_id: str
    relation_type: RelationType
    match_state: MatchState
    confidence: Decimal
    reason_codes: tuple[str, ...]
    inputs: Mapping[str, Any]
    created_at: datetime | None

    def as_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "tenant_id": self.tenant_id,
            "match_group_id": self.match_group_id,
            "relation_type": self.relation_type.value,
            "match_state": self.match_state.value,
            "confidence": self.confidence,
            "reason_codes": list(self.reason_codes),
            "inputs": dict(self.inputs),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass(frozen=True)
class UpdateDocOp:
    kind: ClassVar[str] = "update_doc"

    tenant_id: str
    doc_id: str
    link_state: LinkState
    open_amount: Decimal | None = None

    def as_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "kind": self.kind,
            "doc_id": self.doc_id,
            "tenant_id": self.tenant_id,
            "link_state": self.link_state.value,
        }
        if self.open_amount is not None:
            out["open_amount"] = self.open_amount
        return out


@dataclass(frozen=True)
class UpdateTxOp:
    kind: ClassVar[str] = "update_tx"

    tenant_id: str
    tx_id: str
    link_state: LinkState

    def as_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "tx_id": self.tx_id,
            "tenant_id": self.tenant_id,
            "link_state": self.link_state.value,
        }


@dataclass(frozen=True)
class UpdateLineItemOp:
    kind: ClassVar[str] = "update_invoice_line_item"

    tenant_id: str
    invoice_id: str
    line_item_id: str | None
    line_index: int | None
    link_state: LinkState
    open_amount: Decimal
    match_group_id: str | None

    def as_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "tenant_id": self.tenant_id,
            "invoice_id": self.invoice_id,
            "line_item_id": self.line_item_id,
            "line_index": self.line_index,
            "link_state": self.link_state.value,
            "open_amount": self.open_amount,
            "match_group_id": self.match_group_id,
        }


ApplyOp = Union[UpsertEdgeOp, UpsertGroupOp, UpdateDocOp, UpdateTxOp, UpdateLineItemOp]


@dataclass(frozen=True)
class AuditRecord:
    """Flattened, deterministic record of one decision."""

    tenant_id: str
    event_time: datetime | None
    decision_key: str
    state: MatchState
    relation_type: RelationType
    tx_ids: tuple[str, ...]
    doc_ids: tuple[str, ...]
    match_group_id: str | None
    confidence: Decimal
    reason_codes: tuple[str, ...]
    inputs: Mapping[str, Any] = field(default_factory=dict)
    matched_by: MatchedBy = MatchedBy.SYSTEM

    def as_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "event_time": self.event_time.isoformat() if self.event_time else None,
            "decision_key": self.decision_key,
            "state": self.state.value,
            "relation_type": self.relation_type.value,
            "tx_ids": list(self.tx_ids),
            "doc_ids": list(self.doc_ids),
            "match_group_id": self.match_group_id,
            "confidence": self.confidence,
            "reason_codes": list(self.reason_codes),
            "inputs": dict(self.inputs),
            "matched_by": self.matched_by.value,
        }


@dataclass(frozen=True)
class EdgeDocRef:
    tenant_id: str
    match_group_id: str
    doc_id: str


@dataclass(frozen=True)
class EdgeTxRef:
    tenant_id: str
    match_group_id: str
    tx_id: str


@dataclass(frozen=True)
class MatchedItemRef:
    id: str | None
    line_index: int | None


# ---------------------------------------------------------------------------
# Keys and validation
# ---------------------------------------------------------------------------


def _sorted_unique(ids: Iterable[str]) -> tuple[str, ...]:
    return tuple(sorted(set(ids)))


def decision_key(decision: MatchDecision) -> str:
    """``state|relation|tx:a,b|doc:c|grp:g`` over sorted unique ids."""
    tx_ids = ",".join(_sorted_unique(decision.tx_ids))
    doc_ids = ",".join(_sorted_unique(decision.doc_ids))
    group = decision.match_group_id or ""
    return (
        f"{decision.state.value}|{decision.relation_type.value}"
        f"|tx:{tx_ids}|doc:{doc_ids}|grp:{group}"
    )


def inferred_link_state(decision: MatchDecision) -> LinkState:
    if decision.state == MatchState.FINAL:
        return LinkState.LINKED
    if decision.state == MatchState.PARTIAL:
        return LinkState.PARTIAL
    return LinkState.SUGGESTED


def check_decision_persistable(decision: MatchDecision) -> str | None:
    """Rejection reason, or ``None`` when the decision may be persisted."""
    if decision.state not in _BINDING_STATES:
        return None
    if not decision.tx_ids or not decision.doc_ids:
        return MISSING_IDS_FOR_FINAL
    if decision.relation_type == RelationType.MANY_TO_MANY:
        return INVALID_FINAL_MANY_TO_MANY
    return None


def assert_decision_persistable(decision: MatchDecision) -> None:
    """Raise DecisionNotPersistableError for final/partial policy violations."""
    reason = check_decision_persistable(decision)
    if reason is not None:
        raise DecisionNotPersistableError(decision_key(decision), reason)


def _tenant(decision: MatchDecision) -> str:
    value = decision.inputs.get("tenant_id")
    return str(value) if value else UNKNOWN_TENANT


def extract_matched_item_refs(inputs: Mapping[str, Any]) -> tuple[MatchedItemRef, ...]:
    """
    Line items settled by a decision.

    Reads ``matched_item_refs`` (``[{"id", "line_index"}]``) and falls back
    to ``matched_item_ids`` (``"<id>"`` or ``"line:<index>"`` strings).
    """
    out: list[MatchedItemRef] = []
    seen: set[str] = set()

    def push(ref: MatchedItemRef) -> None:
        key = f"id:{ref.id}" if ref.id else f"line:{ref.line_index if ref.line_index is not None else -1}"
        if key in seen:
            return
        seen.add(key)
        out.append(ref)

    refs = inputs.get("matched_item_refs")
    if isinstance(refs, Sequence) and not isinstance(refs, str):
        for entry in refs:
            if not isinstance(entry, Mapping):
                continue
            raw_id = entry.get("id")
            item_id = raw_id.strip() if isinstance(raw_id, str) and raw_id.strip() else None
            raw_index = entry.get("line_index")
            line_index = raw_index if isinstance(raw_index, int) and not isinstance(raw_index, bool) else None
            if item_id is None and line_index is None:
                continue
            push(MatchedItemRef(id=item_id, line_index=line_index))
        return tuple(out)

    ids = inputs.get("matched_item_ids")
    if isinstance(ids, Sequence) and not isinstance(ids, str):
        for value in ids:
            if not isinstance(value, str) or not value.strip():
                continue
            trimmed = value.strip()
            if trimmed.startswith("line:"):
                suffix = trimmed[5:]
                push(MatchedItemRef(id=None, line_index=int(suffix) if suffix.isdigit() else None))
            else:
                push(MatchedItemRef(id=trimmed, line_index=None))
    return tuple(out)


# ---------------------------------------------------------------------------
# Projection
# ---------------------------------------------------------------------------


def _doc_open_amount(decision: MatchDecision) -> Decimal | None:
    if decision.state == MatchState.FINAL:
        return decision.open_amount_after if decision.open_amount_after is not None else _ZERO
    return decision.open_amount_after


def to_apply_ops(decision: MatchDecision, now: datetime | None = None) -> tuple[ApplyOp, ...]:
    """Idempotent storage operations for one decision; ``()`` when rejected."""
    try:
        assert_decision_persistable(decision)
    except DecisionNotPersistableError as exc:
        logger.warning(
            "decision_rejected",
            extra={"decision_key": exc.decision_key, "reason": exc.reason},
        )
        return ()

    tenant_id = _tenant(decision)
    tx_ids = _sorted_unique(decision.tx_ids)
    doc_ids = _sorted_unique(decision.doc_ids)
    link_state = inferred_link_state(decision)
    group_id = decision.match_group_id
    inputs = dict(decision.inputs)

    def edge(doc_id: str, tx_id: str) -> UpsertEdgeOp:
        return UpsertEdgeOp(
            tenant_id=tenant_id,
            doc_id=doc_id,
            tx_id=tx_id,
            link_state=link_state,
            relation_type=decision.relation_type,
            match_group_id=group_id,
            match_state=decision.state,
            confidence=decision.confidence,
            reason_codes=decision.reason_codes,
            inputs=inputs,
            matched_by=decision.matched_by,
            created_at=now,
        )

    def group() -> UpsertGroupOp:
        return UpsertGroupOp(
            tenant_id=tenant_id,
            match_group_id=group_id or "",
            relation_type=decision.relation_type,
            match_state=decision.state,
            confidence=decision.confidence,
            reason_codes=decision.reason_codes,
            inputs=inputs,
            created_at=now,
        )

    ops: list[ApplyOp] = []
    relation = decision.relation_type

    if relation == RelationType.MANY_TO_MANY:
        return (group(),) if group_id else ()

    if relation == RelationType.ONE_TO_ONE:
        if doc_ids and tx_ids:
            ops.append(edge(doc_ids[0], tx_ids[0]))
    elif relation == RelationType.MANY_TO_ONE:
        if tx_ids:
            ops.extend(edge(doc_id, tx_ids[0]) for doc_id in doc_ids)
        if group_id:
            ops.append(group())
    elif relation == RelationType.ONE_TO_MANY:
        if doc_ids:
            ops.extend(edge(doc_ids[0], tx_id) for tx_id in tx_ids)
        if group_id:
            ops.append(group())

    if decision.state in _BINDING_STATES:
        open_amount = _doc_open_amount(decision)
        ops.extend(
            UpdateDocOp(tenant_id=tenant_id, doc_id=doc_id, link_state=link_state, open_amount=open_amount)
            for doc_id in doc_ids
        )
        ops.extend(
            UpdateTxOp(tenant_id=tenant_id, tx_id=tx_id, link_state=link_state)
            for tx_id in tx_ids
        )
        if len(doc_ids) == 1:
            ops.extend(
                UpdateLineItemOp(
                    tenant_id=tenant_id,
                    invoice_id=doc_ids[0],
                    line_item_id=ref.id,
                    line_index=ref.line_index,
                    link_state=LinkState.LINKED,
                    open_amount=_ZERO,
                    match_group_id=group_id,
                )
                for ref in extract_matched_item_refs(inputs)
            )

    return tuple(ops)


def to_audit_record(decision: MatchDecision, now: datetime | None = None) -> AuditRecord:
    return AuditRecord(
        tenant_id=_tenant(decision),
        event_time=now,
        decision_key=decision_key(decision),
        state=decision.state,
        relation_type=decision.relation_type,
        tx_ids=_sorted_unique(decision.tx_ids),
        doc_ids=_sorted_unique(decision.doc_ids),
        match_group_id=decision.match_group_id,
        confidence=decision.confidence,
        reason_codes=decision.reason_codes,
        inputs=dict(decision.inputs),
        matched_by=decision.matched_by,
    )


def project_unique_edge_refs(
    ops: Iterable[ApplyOp],
) -> tuple[tuple[EdgeDocRef, ...], tuple[EdgeTxRef, ...]]:
    """Unique (group, doc) and (group, tx) references of grouped edges."""
    doc_refs: dict[tuple[str, str], EdgeDocRef] = {}
    tx_refs: dict[tuple[str, str], EdgeTxRef] = {}
    for op in ops:
        if not isinstance(op, UpsertEdgeOp) or not op.match_group_id:
            continue
        doc_refs.setdefault(
            (op.match_group_id, op.doc_id),
            EdgeDocRef(tenant_id=op.tenant_id, match_group_id=op.match_group_id, doc_id=op.doc_id),
        )
        tx_refs.setdefault(
            (op.match_group_id, op.tx_id),
            EdgeTxRef(tenant_id=op.tenant_id, match_group_id=op.match_group_id, tx_id=op.tx_id),
        )
    return tuple(doc_refs.values()), tuple(tx_refs.values())
