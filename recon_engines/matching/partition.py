"""
recon_engines.matching.partition -- Tenant/link-state partitioning.

Responsibility:
    Split a snapshot into the entities that can be matched against each
    other and those that can only be explained by lifecycle rules.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    First step of ``recon_engines.matching.pipeline``.

Invariants enforced:
    - Entities are grouped by normalized tenant (missing -> "__unknown__").
    - Only matchable link states (unlinked, suggested, partial) take part.
    - A tenant with matchable documents and matchable transactions goes
      to ``doc_tx``; otherwise its documents go to ``doc_only`` and its
      transactions to ``tx_only``.
    - Input order is preserved inside every bucket.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from recon_engines.matching.candidates import is_matchable_link_state
from recon_engines.matching.types import Document, Transaction, tenant_key


@dataclass(frozen=True)
class PartitionMeta:
    tenant_count: int
    doc_tx_docs: int
    doc_tx_txs: int
    doc_only: int
    tx_only: int
    skipped_docs: int
    skipped_txs: int


@dataclass(frozen=True)
class Partitions:
    doc_tx_docs: tuple[Document, ...]
    doc_tx_txs: tuple[Transaction, ...]
    doc_only: tuple[Document, ...]
    tx_only: tuple[Transaction, ...]
    meta: PartitionMeta


def partition_by_link_state(
    docs: Sequence[Document],
    txs: Sequence[Transaction],
) -> Partitions:
    matchable_docs = [doc for doc in docs if is_matchable_link_state(doc.link_state)]
    matchable_txs = [tx for tx in txs if is_matchable_link_state(tx.link_state)]

    doc_tenants = {tenant_key(doc.tenant_id) for doc in matchable_docs}
    tx_tenants = {tenant_key(tx.tenant_id) for tx in matchable_txs}
    paired = doc_tenants & tx_tenants

    doc_tx_docs = tuple(d for d in matchable_docs if tenant_key(d.tenant_id) in paired)
    doc_only = tuple(d for d in matchable_docs if tenant_key(d.tenant_id) not in paired)
    doc_tx_txs = tuple(t for t in matchable_txs if tenant_key(t.tenant_id) in paired)
    tx_only = tuple(t for t in matchable_txs if tenant_key(t.tenant_id) not in paired)

    return Partitions(
        doc_tx_docs=doc_tx_docs,
        doc_tx_txs=doc_tx_txs,
        doc_only=doc_only,
        tx_only=tx_only,
        meta=PartitionMeta(
            tenant_count=len(doc_tenants | tx_tenants),
            doc_tx_docs=len(doc_tx_docs),
            doc_tx_txs=len(doc_tx_txs),
            doc_only=len(doc_only),
            tx_only=len(tx_only),
            skipped_docs=len(docs) - len(matchable_docs),
            skipped_txs=len(txs) - len(matchable_txs),
        ),
    )
