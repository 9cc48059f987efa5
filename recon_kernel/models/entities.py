"""
Module: recon_kernel.models.entities
Responsibility: ORM persistence for the two sides of reconciliation --
    accounting documents (with their line items) and bank transactions.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - (tenant_id, external_id) is unique per entity table.
    - Monetary columns are Numeric(38, 9); never float.

Audit relevance:
    link_state and open_amount are the only columns the matching engine
    mutates, and only through apply operations (see
    recon_services.sql_repository).
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import Boolean, Date, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from recon_kernel.db.base import Base


class DocumentModel(Base):
    """
    Persistent accounting document (invoice, receipt, contract).

    Contract:
        ``open_amount`` is the authoritative remaining claim once set;
        ``link_state`` tightens from unlinked/suggested to partial to linked.
    """

    __tablename__ = "documents"
    __table_args__ = (
        UniqueConstraint("tenant_id", "external_id", name="uq_document_tenant_external"),
        Index("idx_document_tenant_link_state", "tenant_id", "link_state"),
    )

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    external_id: Mapped[str] = mapped_column(String(128), nullable=False)

    amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    open_amount: Mapped[Decimal | None] = mapped_column(nullable=True)

    link_state: Mapped[str] = mapped_column(String(20), nullable=False, default="unlinked")

    invoice_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    invoice_no: Mapped[str | None] = mapped_column(String(64), nullable=True)
    vendor_norm: Mapped[str | None] = mapped_column(String(255), nullable=True)

    updated_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return f"<Document {self.tenant_id}:{self.external_id} {self.link_state}>"


class DocumentLineItemModel(Base):
    """
    Line item of a document, matched individually by the item-first phase.

    Either ``line_item_id`` or ``line_index`` identifies the item within
    its document.
    """

    __tablename__ = "document_line_items"
    __table_args__ = (
        Index("idx_line_item_document", "tenant_id", "document_id"),
    )

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    document_id: Mapped[str] = mapped_column(String(128), nullable=False)
    line_item_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    line_index: Mapped[int | None] = mapped_column(Integer, nullable=True)

    amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    open_amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    link_state: Mapped[str] = mapped_column(String(20), nullable=False, default="unlinked")
    match_group_id: Mapped[str | None] = mapped_column(String(80), nullable=True)

    def __repr__(self) -> str:
        ref = self.line_item_id or f"line:{self.line_index}"
        return f"<DocumentLineItem {self.document_id}/{ref} {self.link_state}>"


class BankTransactionModel(Base):
    """
    Persistent bank transaction.

    Contract:
        ``amount`` is unsigned; ``direction`` ("in"/"out") carries the sign.
        Rows double as the history source for subscription detection.
    """

    __tablename__ = "bank_transactions"
    __table_args__ = (
        UniqueConstraint("tenant_id", "external_id", name="uq_bank_tx_tenant_external"),
        Index("idx_bank_tx_tenant_vendor_date", "tenant_id", "vendor_key", "booking_date"),
    )

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    external_id: Mapped[str] = mapped_column(String(128), nullable=False)

    amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    direction: Mapped[str] = mapped_column(String(3), nullable=False)
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    foreign_amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    foreign_currency: Mapped[str | None] = mapped_column(String(3), nullable=True)

    booking_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    link_state: Mapped[str] = mapped_column(String(20), nullable=False, default="unlinked")

    iban: Mapped[str | None] = mapped_column(String(34), nullable=True)
    reference: Mapped[str | None] = mapped_column(String(512), nullable=True)
    counterparty_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    vendor_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_recurring_hint: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    updated_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return f"<BankTransaction {self.tenant_id}:{self.external_id} {self.amount} {self.direction}>"
