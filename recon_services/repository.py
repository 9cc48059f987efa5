"""
recon_services.repository -- Storage contract for match results.

Responsibility:
    Define the four operations the matching service needs from storage
    and provide an in-memory implementation for tests and dry runs.

Architecture position:
    Services -- I/O boundary contract.  Engines never see a repository.

Invariants enforced:
    - ``apply_matches`` only receives binding (final / partial) decisions;
      ``save_suggestions`` only non-binding ones.
    - Applying the same decisions twice leaves storage unchanged.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import date, datetime, timedelta
from typing import Protocol, runtime_checkable

from recon_engines.matching.projection import (
    AuditRecord,
    ApplyOp,
    to_apply_ops,
    to_audit_record,
)
from recon_engines.matching.types import MatchDecision, Transaction, TxHistoryOptions, tenant_key
from recon_engines.matching.vendor import tx_vendor_key
from recon_kernel.logging_config import get_logger

logger = get_logger("services.repository")


@runtime_checkable
class MatchRepository(Protocol):
    """Protocol for persisting decisions and reading transaction history.

    Implementations: InMemoryMatchRepository, SqlMatchRepository.
    """

    def apply_matches(self, decisions: Sequence[MatchDecision]) -> None:
        ...

    def save_suggestions(self, decisions: Sequence[MatchDecision]) -> None:
        ...

    def audit(self, decisions: Sequence[MatchDecision]) -> None:
        ...

    def load_tx_history(self, tenant_id: str, options: TxHistoryOptions) -> list[Transaction]:
        """Most recent transactions of the tenant, newest first."""
        ...


class InMemoryMatchRepository:
    """
    MatchRepository that records projected ops and audit records in lists.

    Ops are keyed the same way the SQL tables are unique, so re-applying a
    decision replaces the earlier op instead of adding a second one.
    """

    def __init__(
        self,
        history: Sequence[Transaction] = (),
        now: datetime | None = None,
    ):
        self._history = list(history)
        self._now = now
        self._ops: dict[tuple, ApplyOp] = {}
        self.audit_records: list[AuditRecord] = []

    @property
    def ops(self) -> list[ApplyOp]:
        return list(self._ops.values())

    def _record(self, decisions: Sequence[MatchDecision]) -> None:
        for decision in decisions:
            for op in to_apply_ops(decision, self._now):
                self._ops[_op_identity(op)] = op

    def apply_matches(self, decisions: Sequence[MatchDecision]) -> None:
        self._record(decisions)

    def save_suggestions(self, decisions: Sequence[MatchDecision]) -> None:
        self._record(decisions)

    def audit(self, decisions: Sequence[MatchDecision]) -> None:
        self.audit_records.extend(to_audit_record(d, self._now) for d in decisions)

    def load_tx_history(self, tenant_id: str, options: TxHistoryOptions) -> list[Transaction]:
        key = tenant_key(tenant_id)
        cutoff = (
            self._now.date() - timedelta(days=options.lookback_days) if self._now else date.min
        )
        rows = [
            tx for tx in self._history
            if tenant_key(tx.tenant_id) == key
            and (tx.effective_date or date.min) >= cutoff
            and (options.vendor_key is None or tx_vendor_key(tx) == options.vendor_key)
        ]
        rows.sort(key=lambda tx: tx.effective_date or date.min, reverse=True)
        return rows[: options.limit]


def _op_identity(op: ApplyOp) -> tuple:
    if op.kind == "upsert_edge":
        return (op.kind, op.tenant_id, op.doc_id, op.tx_id)
    if op.kind == "upsert_group":
        return (op.kind, op.tenant_id, op.match_group_id)
    if op.kind == "update_doc":
        return (op.kind, op.tenant_id, op.doc_id)
    if op.kind == "update_tx":
        return (op.kind, op.tenant_id, op.tx_id)
    return (op.kind, op.tenant_id, op.invoice_id, op.line_item_id, op.line_index)
