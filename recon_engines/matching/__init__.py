"""
Document/transaction matching.

Pure engines that decide which bank transactions settle which accounting
documents.  Modules, leaves first:

    canonicalize  text, vendor and identifier normalization
    vendor        fuzzy vendor compatibility
    amounts       cent rounding, tolerance, currency-aware amount lookup
    windowing     date windows around invoice and due dates
    ingestion     raw records -> Document / Transaction
    candidates    candidate pairs with feature vectors
    relations     1:1, N:1, 1:N and N:M relation detection
    subset_sum    bounded subset-sum over document amounts
    matchers      per-relation rule cascades -> MatchDecision
    prepass       hard-key finals before relation detection
    item_first    line-item allocation
    resolver      global conflict resolution
    projection    MatchDecision -> persistence ops and audit records
    doc_lifecycle / tx_lifecycle   classification of unmatched entities
    partition     tenant / link-state buckets
    pipeline      MatchingEngine orchestrating all of the above
"""

from recon_engines.matching.ingestion import document_from_record, transaction_from_record
from recon_engines.matching.pipeline import (
    MatchingEngine,
    PipelineOptions,
    PipelineResult,
    PipelineStats,
)
from recon_engines.matching.projection import (
    AuditRecord,
    assert_decision_persistable,
    decision_key,
    project_unique_edge_refs,
    to_apply_ops,
    to_audit_record,
)
from recon_engines.matching.resolver import Resolved, resolve_conflicts
from recon_engines.matching.types import (
    Direction,
    DocLifecycleResult,
    Document,
    LineItem,
    LinkState,
    MatchDecision,
    MatchState,
    RelationType,
    Transaction,
    TxHistoryOptions,
    TxLifecycleResult,
)

__all__ = [
    "AuditRecord",
    "Direction",
    "DocLifecycleResult",
    "Document",
    "LineItem",
    "LinkState",
    "MatchDecision",
    "MatchState",
    "MatchingEngine",
    "PipelineOptions",
    "PipelineResult",
    "PipelineStats",
    "RelationType",
    "Resolved",
    "Transaction",
    "TxHistoryOptions",
    "TxLifecycleResult",
    "assert_decision_persistable",
    "decision_key",
    "document_from_record",
    "project_unique_edge_refs",
    "resolve_conflicts",
    "to_apply_ops",
    "to_audit_record",
    "transaction_from_record",
]
