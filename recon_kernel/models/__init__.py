"""ORM models for the reconciliation store."""

from recon_kernel.models.entities import (
    BankTransactionModel,
    DocumentLineItemModel,
    DocumentModel,
)
from recon_kernel.models.match import (
    MatchAuditModel,
    MatchEdgeModel,
    MatchGroupModel,
)

__all__ = [
    "BankTransactionModel",
    "DocumentLineItemModel",
    "DocumentModel",
    "MatchAuditModel",
    "MatchEdgeModel",
    "MatchGroupModel",
]
