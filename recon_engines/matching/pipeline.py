"""
recon_engines.matching.pipeline -- End-to-end reconciliation run over a snapshot.

Responsibility:
    Orchestrate the pure matching phases over one snapshot of documents
    and transactions: partitioning, lifecycle evaluation, hard-key
    prepass, line-item-first phase, per-transaction candidate generation,
    relation detection, rule cascades and global conflict resolution.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    Called by ``recon_services.matching_service.MatchingService``, which
    loads transaction history and persists the resolved decisions.

Invariants enforced:
    - Every emitted decision carries ``inputs["tenant_id"]`` (transaction
      tenant first, then document tenant, else "__unknown__").
    - Transactions classified ``subscription_tx`` are flagged recurring
      and may match already linked documents of their tenant.
    - The result is conflict-free: binding decisions never share ids.

Failure modes:
    None for data defects; malformed entities simply yield no candidates.

Audit relevance:
    ``PipelineStats`` records how many entities each phase consumed so a
    run can be reconstructed from logs.

Usage:
    from recon_engines.matching.pipeline import MatchingEngine

    engine = MatchingEngine(config)
    result = engine.run(docs, txs, now=date(2025, 1, 31))
    for decision in result.decisions:
        ...
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, replace
from datetime import date, datetime

from recon_config.schema import MatchingConfig
from recon_engines.matching.candidates import candidates_for_tx
from recon_engines.matching.doc_lifecycle import evaluate_doc_lifecycle
from recon_engines.matching.item_first import run_item_first_phase
from recon_engines.matching.matchers import match_relation
from recon_engines.matching.partition import PartitionMeta, partition_by_link_state
from recon_engines.matching.prepass import prepass_hard_matches
from recon_engines.matching.relations import detect_relations_for_tx
from recon_engines.matching.resolver import Resolved, resolve_conflicts
from recon_engines.matching.tx_lifecycle import evaluate_tx_lifecycle
from recon_engines.matching.types import (
    UNKNOWN_TENANT,
    DocLifecycleResult,
    Document,
    LinkState,
    MatchDecision,
    Transaction,
    TxLifecycleKind,
    TxLifecycleResult,
    tenant_key,
)
from recon_kernel.domain.clock import Clock, SystemClock
from recon_kernel.logging_config import get_logger

logger = get_logger("engines.pipeline")


@dataclass(frozen=True)
class PipelineOptions:
    """Run limits. ``None`` or non-positive values disable a limit."""

    tenant_filter: str | None = None
    max_docs: int | None = None
    max_txs: int | None = None
    max_relations_per_tx: int | None = None


@dataclass(frozen=True)
class PipelineStats:
    partitions: PartitionMeta
    prepass_final: int
    item_first_decisions: int
    relation_txs: int
    relation_docs: int
    relations: int
    generated_decisions: int
    final: int
    suggestions: int


@dataclass(frozen=True)
class PipelineResult:
    decisions: tuple[MatchDecision, ...]
    final: tuple[MatchDecision, ...]
    suggestions: tuple[MatchDecision, ...]
    doc_lifecycle: tuple[DocLifecycleResult, ...]
    tx_lifecycle: tuple[TxLifecycleResult, ...]
    stats: PipelineStats


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _apply_tenant_filter(items: Sequence, tenant_filter: str | None) -> list:
    if not tenant_filter:
        return list(items)
    key = tenant_key(tenant_filter)
    return [item for item in items if tenant_key(item.tenant_id) == key]


def _apply_limit(items: list, limit: int | None) -> list:
    if not limit or limit <= 0:
        return items
    return items[:limit]


def _dedupe_by_id(items: Iterable) -> list:
    seen: set[str] = set()
    out = []
    for item in items:
        if item.id in seen:
            continue
        seen.add(item.id)
        out.append(item)
    return out


def _linked_docs_for_tenant(docs: Sequence[Document], tenant_id: str | None) -> list[Document]:
    key = tenant_key(tenant_id)
    return [
        doc for doc in docs
        if tenant_key(doc.tenant_id) == key and doc.link_state == LinkState.LINKED
    ]


def inject_tenant_id(
    decision: MatchDecision,
    docs_by_id: Mapping[str, Document],
    txs_by_id: Mapping[str, Transaction],
) -> MatchDecision:
    if decision.inputs.get("tenant_id"):
        return decision
    tenant: str | None = None
    if decision.tx_ids and decision.tx_ids[0] in txs_by_id:
        tenant = txs_by_id[decision.tx_ids[0]].tenant_id
    if not tenant and decision.doc_ids and decision.doc_ids[0] in docs_by_id:
        tenant = docs_by_id[decision.doc_ids[0]].tenant_id
    return decision.with_inputs(tenant_id=tenant or UNKNOWN_TENANT)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class MatchingEngine:
    """
    Pure reconciliation engine over an in-memory snapshot.

    Contract:
        Given documents, transactions and optional per-transaction
        history, return resolved decisions plus lifecycle results for
        entities without a counterpart.

    Guarantees:
        - Deterministic for a fixed snapshot, config and ``now``.
        - Performs no I/O.

    Non-goals:
        - Does NOT persist anything (see ``MatchingService``).
        - Does NOT load history; callers pass it as ``tx_history``.
    """

    def __init__(
        self,
        config: MatchingConfig | None = None,
        options: PipelineOptions | None = None,
        clock: Clock | None = None,
    ):
        self._config = config or MatchingConfig()
        self._options = options or PipelineOptions()
        self._clock = clock or SystemClock()

    @property
    def config(self) -> MatchingConfig:
        return self._config

    def run(
        self,
        docs: Sequence[Document],
        txs: Sequence[Transaction],
        now: date | datetime | None = None,
        tx_history: Mapping[str, Sequence[Transaction]] | None = None,
    ) -> PipelineResult:
        cfg = self._config
        opts = self._options
        today = now if now is not None else self._clock.today()
        history = tx_history or {}

        docs_in = _apply_limit(_apply_tenant_filter(docs, opts.tenant_filter), opts.max_docs)
        txs_in = _apply_limit(_apply_tenant_filter(txs, opts.tenant_filter), opts.max_txs)
        docs_by_id = {doc.id: doc for doc in docs_in}
        txs_by_id = {tx.id: tx for tx in txs_in}

        parts = partition_by_link_state(docs_in, txs_in)
        doc_lifecycle = tuple(evaluate_doc_lifecycle(doc, today, cfg) for doc in parts.doc_only)
        tx_lifecycle = tuple(
            evaluate_tx_lifecycle(tx, today, cfg, history.get(tx.id)) for tx in parts.tx_only
        )
        subscription_tx_ids = {
            result.tx_id for result in tx_lifecycle if result.kind == TxLifecycleKind.SUBSCRIPTION_TX
        }

        prepass = prepass_hard_matches(parts.doc_tx_docs, parts.doc_tx_txs, cfg)
        item_first = run_item_first_phase(prepass.remaining_docs, prepass.remaining_txs, cfg)
        decisions: list[MatchDecision] = [*prepass.final, *item_first.decisions]

        relation_docs = list(item_first.remaining_docs)
        relation_txs = _dedupe_by_id([*item_first.remaining_txs, *parts.tx_only])

        relation_count = 0
        for tx in relation_txs:
            include_linked = tx.id in subscription_tx_ids
            tx_for_matching = tx
            docs_for_tx = relation_docs
            pool = relation_txs
            if include_linked:
                if not tx.is_recurring_hint:
                    tx_for_matching = replace(tx, is_recurring_hint=True)
                    pool = [tx_for_matching if item.id == tx.id else item for item in relation_txs]
                docs_for_tx = _dedupe_by_id(
                    [*relation_docs, *_linked_docs_for_tenant(docs_in, tx.tenant_id)]
                )

            candidates = candidates_for_tx(tx_for_matching, docs_for_tx, cfg, include_linked)
            relations = detect_relations_for_tx(tx_for_matching, candidates, pool, cfg)
            relation_count += len(relations)
            for relation in relations.limited(opts.max_relations_per_tx):
                decision = match_relation(relation, cfg)
                if decision is not None:
                    decisions.append(decision)

        enriched = [inject_tenant_id(d, docs_by_id, txs_by_id) for d in decisions]
        resolved: Resolved = resolve_conflicts(enriched)

        stats = PipelineStats(
            partitions=parts.meta,
            prepass_final=len(prepass.final),
            item_first_decisions=len(item_first.decisions),
            relation_txs=len(relation_txs),
            relation_docs=len(relation_docs),
            relations=relation_count,
            generated_decisions=len(decisions),
            final=len(resolved.final),
            suggestions=len(resolved.suggestions),
        )
        logger.info(
            "pipeline_completed",
            extra={
                "doc_count": len(docs_in),
                "tx_count": len(txs_in),
                "prepass_final": stats.prepass_final,
                "item_first_decisions": stats.item_first_decisions,
                "relations": relation_count,
                "final_count": stats.final,
                "suggestion_count": stats.suggestions,
            },
        )
        return PipelineResult(
            decisions=resolved.all,
            final=resolved.final,
            suggestions=resolved.suggestions,
            doc_lifecycle=doc_lifecycle,
            tx_lifecycle=tx_lifecycle,
            stats=stats,
        )
