"""
Module: recon_kernel.models.match
Responsibility: ORM persistence for match results -- document/transaction
    edges, match groups and the append-only decision audit trail.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - One edge per (tenant_id, doc_id, tx_id); re-applying a decision
      updates the edge in place (idempotent apply).
    - One group per (tenant_id, match_group_id).
    - Audit rows are unique per (decision_key, event_time): replaying the
      same run at the same clock time never duplicates the trail.

Audit relevance:
    match_audit_records is the replayable history of every decision the
    engine produced, including ambiguous and suggested ones.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from recon_kernel.db.base import Base


class MatchEdgeModel(Base):
    """Link between one document and one transaction produced by a decision."""

    __tablename__ = "match_edges"
    __table_args__ = (
        UniqueConstraint("tenant_id", "doc_id", "tx_id", name="uq_match_edge_pair"),
        Index("idx_match_edge_group", "tenant_id", "match_group_id"),
    )

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    doc_id: Mapped[str] = mapped_column(String(128), nullable=False)
    tx_id: Mapped[str] = mapped_column(String(128), nullable=False)

    link_state: Mapped[str] = mapped_column(String(20), nullable=False)
    relation_type: Mapped[str] = mapped_column(String(20), nullable=False)
    match_group_id: Mapped[str | None] = mapped_column(String(80), nullable=True)
    match_state: Mapped[str] = mapped_column(String(20), nullable=False)
    confidence: Mapped[Decimal] = mapped_column(nullable=False)
    reason_codes: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    inputs: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    matched_by: Mapped[str] = mapped_column(String(10), nullable=False)
    created_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return f"<MatchEdge {self.doc_id}<->{self.tx_id} {self.match_state}>"


class MatchGroupModel(Base):
    """Correlates all edges of one multi-entity decision."""

    __tablename__ = "match_groups"
    __table_args__ = (
        UniqueConstraint("tenant_id", "match_group_id", name="uq_match_group"),
    )

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    match_group_id: Mapped[str] = mapped_column(String(80), nullable=False)
    relation_type: Mapped[str] = mapped_column(String(20), nullable=False)
    match_state: Mapped[str] = mapped_column(String(20), nullable=False)
    confidence: Mapped[Decimal] = mapped_column(nullable=False)
    reason_codes: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    inputs: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return f"<MatchGroup {self.match_group_id} {self.relation_type} {self.match_state}>"


class MatchAuditModel(Base):
    """Append-only record of a single engine decision."""

    __tablename__ = "match_audit_records"
    __table_args__ = (
        UniqueConstraint("decision_key", "event_time", name="uq_match_audit_key_time"),
        Index("idx_match_audit_tenant_time", "tenant_id", "event_time"),
    )

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_time: Mapped[datetime] = mapped_column(nullable=False)
    decision_key: Mapped[str] = mapped_column(String(2048), nullable=False)
    state: Mapped[str] = mapped_column(String(20), nullable=False)
    relation_type: Mapped[str] = mapped_column(String(20), nullable=False)
    tx_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    doc_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    match_group_id: Mapped[str | None] = mapped_column(String(80), nullable=True)
    confidence: Mapped[Decimal] = mapped_column(nullable=False)
    reason_codes: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    inputs: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    matched_by: Mapped[str] = mapped_column(String(10), nullable=False)

    def __repr__(self) -> str:
        return f"<MatchAudit {self.decision_key} @ {self.event_time}>"
