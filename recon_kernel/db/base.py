"""
Module: recon_kernel.db.base
Responsibility: Declarative base shared by the reconciliation store's tables
    (documents, line items, transactions, match edges, groups, audit).
Architecture position: Kernel > DB.  Imported by every module in models/;
    imports nothing from the project.

Invariants enforced:
    - Rows are keyed by a surrogate uuid4 ``id``.  The ids the matching
      engine works with (document and transaction ids, group ids) are
      ordinary columns and never double as primary keys.
    - Monetary columns annotated ``Decimal`` are Numeric(38, 9); amounts are
      never stored as float.
    - Timestamps annotated ``datetime`` are timezone-aware.
    - Constraint and index names follow one convention so schema diffs
      across SQLite and PostgreSQL stay comparable.
"""

from datetime import datetime
from decimal import Decimal
from typing import ClassVar
from uuid import UUID, uuid4

from sqlalchemy import DateTime, MetaData, Numeric, Uuid
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    """Base class for reconciliation store models."""

    metadata = MetaData(naming_convention=NAMING_CONVENTION)

    type_annotation_map: ClassVar[dict] = {
        Decimal: Numeric(38, 9),
        datetime: DateTime(timezone=True),
        UUID: Uuid(),
    }

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
