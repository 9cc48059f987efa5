"""
recon_services.sql_repository -- SQLAlchemy implementation of MatchRepository.

Responsibility:
    Apply the persistence operations projected from decisions to the
    relational store, append audit rows, and read transaction history
    for subscription detection.

Architecture position:
    Services -- the only module that writes match results to the database.
    Reads ``recon_kernel.models``; projections come from
    ``recon_engines.matching.projection``.

Invariants enforced:
    - Idempotent apply: edges are unique per (tenant, doc, tx) and groups
      per (tenant, match_group_id); re-applying updates in place.
    - Audit rows are unique per (decision_key, event_time); replaying a run
      at the same clock time writes nothing new.
    - ``inputs`` are stored as canonical JSON (Decimals as strings).
    - The repository never commits; the caller owns the transaction
      (see ``recon_kernel.db.engine.session_scope``).

Failure modes:
    - RepositoryError on integrity violations during flush.
    - Updates for documents, transactions or line items that are not
      stored are skipped with a warning.

Usage:
    with session_scope() as session:
        repo = SqlMatchRepository(session, clock)
        repo.apply_matches(result.final)
"""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from recon_engines.matching.projection import (
    ApplyOp,
    UpdateDocOp,
    UpdateLineItemOp,
    UpdateTxOp,
    UpsertEdgeOp,
    UpsertGroupOp,
    to_apply_ops,
    to_audit_record,
)
from recon_engines.matching.types import (
    Direction,
    LinkState,
    MatchDecision,
    Transaction,
    TxHistoryOptions,
    tenant_key,
)
from recon_kernel.domain.clock import Clock, SystemClock
from recon_kernel.exceptions import RepositoryError
from recon_kernel.logging_config import get_logger
from recon_kernel.models import (
    BankTransactionModel,
    DocumentLineItemModel,
    DocumentModel,
    MatchAuditModel,
    MatchEdgeModel,
    MatchGroupModel,
)
from recon_kernel.utils.hashing import canonicalize_json

logger = get_logger("services.sql_repository")


def json_safe(value: Mapping[str, Any]) -> dict[str, Any]:
    """Round-trip through canonical JSON so Decimal/date values become strings."""
    return json.loads(canonicalize_json(dict(value)))


class SqlMatchRepository:
    """
    MatchRepository backed by a SQLAlchemy session.

    Contract:
        Given resolved decisions, persist their edges, groups, entity link
        states and audit records with upsert semantics.

    Guarantees:
        - Calling ``apply_matches`` twice with the same decisions leaves
          exactly one edge per pair and one group per match_group_id.
        - Timestamps missing from ops are taken from the injected clock.

    Non-goals:
        - Does NOT commit or roll back.
        - Does NOT create entity rows; only updates existing ones.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    def apply_matches(self, decisions: Sequence[MatchDecision]) -> None:
        self._apply_decisions(decisions, "apply_matches")

    def save_suggestions(self, decisions: Sequence[MatchDecision]) -> None:
        self._apply_decisions(decisions, "save_suggestions")

    def audit(self, decisions: Sequence[MatchDecision]) -> None:
        now = self._clock.now_utc()
        written = 0
        for decision in decisions:
            record = to_audit_record(decision, now)
            exists = self._session.execute(
                select(MatchAuditModel.id).where(
                    MatchAuditModel.decision_key == record.decision_key,
                    MatchAuditModel.event_time == record.event_time,
                )
            ).scalar_one_or_none()
            if exists is not None:
                continue
            self._session.add(
                MatchAuditModel(
                    tenant_id=record.tenant_id,
                    event_time=record.event_time,
                    decision_key=record.decision_key,
                    state=record.state.value,
                    relation_type=record.relation_type.value,
                    tx_ids=list(record.tx_ids),
                    doc_ids=list(record.doc_ids),
                    match_group_id=record.match_group_id,
                    confidence=record.confidence,
                    reason_codes=list(record.reason_codes),
                    inputs=json_safe(record.inputs),
                    matched_by=record.matched_by.value,
                )
            )
            written += 1
        self._flush("audit")
        logger.info("audit_records_written", extra={"written": written, "total": len(decisions)})

    def load_tx_history(self, tenant_id: str, options: TxHistoryOptions) -> list[Transaction]:
        cutoff = self._clock.now_utc().date() - timedelta(days=options.lookback_days)
        stmt = (
            select(BankTransactionModel)
            .where(BankTransactionModel.tenant_id == tenant_key(tenant_id))
            .where(BankTransactionModel.booking_date >= cutoff)
        )
        if options.vendor_key:
            stmt = stmt.where(BankTransactionModel.vendor_key == options.vendor_key)
        stmt = stmt.order_by(BankTransactionModel.booking_date.desc()).limit(options.limit)
        rows = self._session.execute(stmt).scalars().all()
        return [_transaction_from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Op application
    # ------------------------------------------------------------------

    def _apply_decisions(self, decisions: Sequence[MatchDecision], operation: str) -> None:
        now = self._clock.now_utc()
        op_count = 0
        for decision in decisions:
            for op in to_apply_ops(decision, now):
                self.apply_op(op, now)
                op_count += 1
        self._flush(operation)
        logger.info(
            "match_ops_applied",
            extra={"operation": operation, "decision_count": len(decisions), "op_count": op_count},
        )

    def apply_op(self, op: ApplyOp, now: datetime | None = None) -> None:
        now = now or self._clock.now_utc()
        if isinstance(op, UpsertEdgeOp):
            self._upsert_edge(op, now)
        elif isinstance(op, UpsertGroupOp):
            self._upsert_group(op, now)
        elif isinstance(op, UpdateDocOp):
            self._update_doc(op, now)
        elif isinstance(op, UpdateTxOp):
            self._update_tx(op, now)
        elif isinstance(op, UpdateLineItemOp):
            self._update_line_item(op)
        else:
            raise RepositoryError("apply_op", f"unsupported op {type(op).__name__}")

    def _upsert_edge(self, op: UpsertEdgeOp, now: datetime) -> None:
        edge = self._session.execute(
            select(MatchEdgeModel).where(
                MatchEdgeModel.tenant_id == op.tenant_id,
                MatchEdgeModel.doc_id == op.doc_id,
                MatchEdgeModel.tx_id == op.tx_id,
            )
        ).scalar_one_or_none()
        if edge is None:
            edge = MatchEdgeModel(
                tenant_id=op.tenant_id,
                doc_id=op.doc_id,
                tx_id=op.tx_id,
                created_at=op.created_at or now,
            )
            self._session.add(edge)
        edge.link_state = op.link_state.value
        edge.relation_type = op.relation_type.value
        edge.match_group_id = op.match_group_id
        edge.match_state = op.match_state.value
        edge.confidence = op.confidence
        edge.reason_codes = list(op.reason_codes)
        edge.inputs = json_safe(op.inputs)
        edge.matched_by = op.matched_by.value

    def _upsert_group(self, op: UpsertGroupOp, now: datetime) -> None:
        group = self._session.execute(
            select(MatchGroupModel).where(
                MatchGroupModel.tenant_id == op.tenant_id,
                MatchGroupModel.match_group_id == op.match_group_id,
            )
        ).scalar_one_or_none()
        if group is None:
            group = MatchGroupModel(
                tenant_id=op.tenant_id,
                match_group_id=op.match_group_id,
                created_at=op.created_at or now,
            )
            self._session.add(group)
        group.relation_type = op.relation_type.value
        group.match_state = op.match_state.value
        group.confidence = op.confidence
        group.reason_codes = list(op.reason_codes)
        group.inputs = json_safe(op.inputs)

    def _update_doc(self, op: UpdateDocOp, now: datetime) -> None:
        doc = self._session.execute(
            select(DocumentModel).where(
                DocumentModel.tenant_id == op.tenant_id,
                DocumentModel.external_id == op.doc_id,
            )
        ).scalar_one_or_none()
        if doc is None:
            logger.warning("document_not_found", extra={"tenant_id": op.tenant_id, "doc_id": op.doc_id})
            return
        doc.link_state = op.link_state.value
        if op.open_amount is not None:
            doc.open_amount = op.open_amount
        doc.updated_at = now

    def _update_tx(self, op: UpdateTxOp, now: datetime) -> None:
        tx = self._session.execute(
            select(BankTransactionModel).where(
                BankTransactionModel.tenant_id == op.tenant_id,
                BankTransactionModel.external_id == op.tx_id,
            )
        ).scalar_one_or_none()
        if tx is None:
            logger.warning("transaction_not_found", extra={"tenant_id": op.tenant_id, "tx_id": op.tx_id})
            return
        tx.link_state = op.link_state.value
        tx.updated_at = now

    def _update_line_item(self, op: UpdateLineItemOp) -> None:
        stmt = select(DocumentLineItemModel).where(
            DocumentLineItemModel.tenant_id == op.tenant_id,
            DocumentLineItemModel.document_id == op.invoice_id,
        )
        if op.line_item_id:
            stmt = stmt.where(DocumentLineItemModel.line_item_id == op.line_item_id)
        else:
            stmt = stmt.where(DocumentLineItemModel.line_index == op.line_index)
        item = self._session.execute(stmt).scalar_one_or_none()
        if item is None:
            logger.warning(
                "line_item_not_found",
                extra={
                    "tenant_id": op.tenant_id,
                    "doc_id": op.invoice_id,
                    "line_item_id": op.line_item_id,
                    "line_index": op.line_index,
                },
            )
            return
        item.link_state = op.link_state.value
        item.open_amount = op.open_amount
        item.match_group_id = op.match_group_id

    def _flush(self, operation: str) -> None:
        try:
            self._session.flush()
        except IntegrityError as exc:
            logger.error("repository_flush_failed", extra={"operation": operation})
            raise RepositoryError(operation, str(exc.orig)) from exc


def _transaction_from_row(row: BankTransactionModel) -> Transaction:
    return Transaction(
        id=row.external_id,
        tenant_id=row.tenant_id,
        amount=Decimal(row.amount) if row.amount is not None else None,
        direction=Direction(row.direction),
        currency=row.currency,
        foreign_amount=row.foreign_amount,
        foreign_currency=row.foreign_currency,
        booking_date=row.booking_date,
        link_state=LinkState(row.link_state),
        iban=row.iban,
        reference=row.reference,
        counterparty_name=row.counterparty_name,
        vendor_norm=row.vendor_key,
        is_recurring_hint=row.is_recurring_hint,
    )
