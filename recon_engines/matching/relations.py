"""
recon_engines.matching.relations -- Typed relation detection.

Responsibility:
    Group the candidates of one seed entity into typed relations:
    one-to-one, many-to-one (several documents, one transaction; solved
    by subset-sum), one-to-many (one document, several partial payments)
    and many-to-many (exact-sum hypothesis or diagnostic cluster).

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    Consumes ``DocCandidate`` / ``TxCandidate`` from
    ``recon_engines.matching.candidates``; feeds the rule cascades in
    ``recon_engines.matching.matchers``.

Invariants enforced:
    - Every relation stays inside one tenant and one currency.
    - many_to_one is only emitted for 2..``subset_sum.max_candidates``
      candidates; above the bound a many-to-many cluster is raised.
    - one_to_many is emitted even for a single seed transaction so a lone
      partial payment can still produce a ``partial`` decision, but only
      when the transaction is a possible partial payment of exactly one
      document and no cluster is raised.  Otherwise the transaction goes
      into the cluster and nothing is attributed.
    - Clusters are bounded to 20 documents and 20 transactions.
    - many_to_many is a fallback for genuine ambiguity, never a primary
      relation.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import TypeVar

from recon_config.schema import MatchingConfig
from recon_engines.matching.amounts import (
    amount_compatible,
    doc_target_amount,
    sum_amounts,
    tx_amount_for_currency,
    tx_supports_currency,
)
from recon_engines.matching.candidates import (
    candidates_for_tx,
    is_amount_resolvable,
    pair_vendor_compatible,
)
from recon_engines.matching.canonicalize import (
    canon_compact,
    contains_keyword,
    identifiers_equal,
    join_text,
)
from recon_engines.matching.types import (
    ClusterHypothesis,
    DocCandidate,
    Document,
    ManyToManyRelation,
    ManyToOneRelation,
    OneToManyRelation,
    OneToOneRelation,
    RelationSet,
    Transaction,
    TxCandidate,
    tenant_key,
)
from recon_engines.matching.vendor import (
    doc_party_norm_for_tx,
    tx_vendor_key,
    vendor_compatible,
    vendor_not_mismatched,
)
from recon_engines.matching.windowing import calc_window
from recon_engines.tracer import traced_engine
from recon_kernel.logging_config import get_logger

logger = get_logger("engines.relations")

CLUSTER_LIMIT = 20
RELATED_TX_LIMIT = 10
EXACT_SUM_HYPOTHESIS = "many_to_many_exact_sum"

_T = TypeVar("_T", Document, Transaction)


def _unique_by_id(items: Iterable[_T]) -> tuple[_T, ...]:
    seen: set[str] = set()
    out: list[_T] = []
    for item in items:
        if item.id in seen:
            continue
        seen.add(item.id)
        out.append(item)
    return tuple(out)


# ---------------------------------------------------------------------------
# Predicates
# ---------------------------------------------------------------------------


def is_one_to_one_plausible(candidate: DocCandidate, tx: Transaction, cfg: MatchingConfig) -> bool:
    """Resolvable amount plus an identity flag, the date window or the override."""
    doc = candidate.document
    if not tx_supports_currency(tx, doc.currency):
        return False
    if not is_amount_resolvable(doc, tx, cfg):
        return False
    features = candidate.features
    return features.identity_match or features.in_window or features.out_of_window_override


def is_potential_partial_flow(candidate: DocCandidate, tx: Transaction, cfg: MatchingConfig) -> bool:
    """
    The transaction may be one of several payments against the document.

    True on partial-payment wording, on an identity match whose amount
    does not fit, or when the transaction is smaller than the document
    and no document amount candidate resolves it.
    """
    doc = candidate.document
    features = candidate.features
    if features.partial_keywords:
        return True
    tx_amount = tx_amount_for_currency(tx, doc.currency)
    target = doc_target_amount(doc)
    if features.identity_match and not amount_compatible(target, tx_amount, cfg):
        return True
    if tx_amount is None or target is None:
        return False
    return tx_amount < target and not is_amount_resolvable(doc, tx, cfg)


def has_batch_keywords(doc: Document, tx: Transaction, cfg: MatchingConfig) -> bool:
    haystack = join_text(tx.text_norm, tx.reference, tx.vendor_norm, doc.text_norm, doc.vendor_norm)
    return contains_keyword(haystack, cfg.keywords.batch_payment)


def is_potential_batch_flow(candidate: DocCandidate, tx: Transaction, cfg: MatchingConfig) -> bool:
    """The transaction may settle several documents at once."""
    doc = candidate.document
    if candidate.features.partial_keywords:
        return True
    if not amount_compatible(doc_target_amount(doc), tx_amount_for_currency(tx, doc.currency), cfg):
        return True
    return has_batch_keywords(doc, tx, cfg)


def group_key_for_cluster(tx: Transaction, doc: Document | None = None) -> str:
    """``tenant|currency|vendor|iban`` key grouping transactions into a cluster."""
    vendor = tx.vendor_norm or (doc.vendor_norm if doc else None) or ""
    iban = tx.iban or (doc.iban if doc else None) or ""
    return "|".join((
        tenant_key(tx.tenant_id),
        (tx.currency or "").upper(),
        vendor.lower(),
        canon_compact(iban),
    ))


# ---------------------------------------------------------------------------
# Building blocks
# ---------------------------------------------------------------------------


def _same_scope(candidates: Sequence[DocCandidate], tx: Transaction) -> list[DocCandidate]:
    tenant = tenant_key(tx.tenant_id)
    return [
        candidate for candidate in candidates
        if tenant_key(candidate.document.tenant_id) == tenant
        and tx_supports_currency(tx, candidate.document.currency)
    ]


def _many_to_one_candidates(candidates: Sequence[DocCandidate], tx: Transaction) -> list[DocCandidate]:
    filtered = list(candidates)
    vendor = tx_vendor_key(tx)
    if vendor:
        filtered = [
            candidate for candidate in filtered
            if vendor_compatible(doc_party_norm_for_tx(candidate.document, tx), vendor)
        ]
    if any(candidate.features.invoice_no_equal for candidate in filtered):
        filtered = [candidate for candidate in filtered if candidate.features.invoice_no_equal]
    return filtered


def find_related_txs(
    doc: Document,
    seed: Transaction,
    pool: Iterable[Transaction],
    cfg: MatchingConfig,
    limit: int = RELATED_TX_LIMIT,
) -> tuple[Transaction, ...]:
    """Further payments that may belong to the same document."""
    window = calc_window(doc, cfg)
    tenant = tenant_key(doc.tenant_id)
    related: list[Transaction] = []
    for tx in pool:
        if tx.id == seed.id:
            continue
        if tenant_key(tx.tenant_id) != tenant:
            continue
        if not tx_supports_currency(tx, doc.currency):
            continue
        if not window.contains(tx.booking_date):
            continue
        if doc.iban and tx.iban and not identifiers_equal(doc.iban, tx.iban):
            continue
        if not vendor_not_mismatched(doc, tx):
            continue
        if doc.e2e_id and tx.e2e_id and not identifiers_equal(doc.e2e_id, tx.e2e_id):
            continue
        related.append(tx)
        if len(related) >= limit:
            break
    return tuple(related)


def build_exact_many_to_many(
    tx: Transaction,
    candidates: Sequence[DocCandidate],
    pool: Iterable[Transaction],
    cfg: MatchingConfig,
) -> ManyToManyRelation | None:
    """Vendor-filtered documents whose total balances a window-filtered transaction set."""
    if len(candidates) < 2:
        return None
    vendor = tx_vendor_key(tx)
    if vendor:
        candidates = [
            candidate for candidate in candidates
            if vendor_compatible(doc_party_norm_for_tx(candidate.document, tx), vendor)
        ]
    if len(candidates) < 2:
        return None

    docs = [candidate.document for candidate in candidates]
    currency = docs[0].currency
    if any(doc.currency != currency for doc in docs):
        return None
    windows = [calc_window(doc, cfg) for doc in docs]
    tenant = tenant_key(tx.tenant_id)

    txs: list[Transaction] = [tx]
    for other in pool:
        if other.id == tx.id:
            continue
        if tenant_key(other.tenant_id) != tenant:
            continue
        if not tx_supports_currency(other, currency):
            continue
        other_vendor = tx_vendor_key(other)
        if vendor and other_vendor and not vendor_compatible(vendor, other_vendor):
            continue
        if other.booking_date is None:
            continue
        if not any(window.contains(other.booking_date) for window in windows):
            continue
        txs.append(other)
    if len(txs) < 2:
        return None

    tx_amounts = [tx_amount_for_currency(item, currency) for item in txs]
    if any(amount is None for amount in tx_amounts):
        return None
    sum_docs = sum_amounts(
        target for target in (doc_target_amount(doc) for doc in docs) if target is not None
    )
    if not amount_compatible(sum_docs, sum_amounts(tx_amounts), cfg):
        return None

    unique_txs = _unique_by_id(txs)
    unique_docs = _unique_by_id(docs)
    return ManyToManyRelation(
        txs=unique_txs,
        documents=unique_docs,
        hypothesis=ClusterHypothesis(
            key=EXACT_SUM_HYPOTHESIS,
            size_docs=len(unique_docs),
            size_txs=len(unique_txs),
        ),
    )


def _cluster(
    tx: Transaction,
    docs: Sequence[Document],
    pool: Iterable[Transaction],
) -> ManyToManyRelation:
    cluster_docs = _unique_by_id(docs[:CLUSTER_LIMIT])
    anchor = cluster_docs[0] if cluster_docs else None
    key = group_key_for_cluster(tx, anchor)
    peers = [other for other in pool if group_key_for_cluster(other, anchor) == key]
    cluster_txs = _unique_by_id([tx, *peers])[:CLUSTER_LIMIT]
    return ManyToManyRelation(
        txs=cluster_txs,
        documents=cluster_docs,
        hypothesis=ClusterHypothesis(
            key=key,
            size_docs=len(cluster_docs),
            size_txs=len(cluster_txs),
        ),
    )


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------


@traced_engine("relations_for_tx", "1.0", fingerprint_fields=("tx", "doc_candidates"))
def detect_relations_for_tx(
    tx: Transaction,
    doc_candidates: Sequence[DocCandidate],
    tx_pool: Sequence[Transaction],
    cfg: MatchingConfig,
) -> RelationSet:
    """All relations seeded by one transaction."""
    filtered = _same_scope(doc_candidates, tx)
    m2o_candidates = _many_to_one_candidates(filtered, tx)
    max_candidates = cfg.subset_sum.max_candidates

    one_to_one = tuple(
        OneToOneRelation(tx=tx, candidate=candidate)
        for candidate in filtered
        if is_one_to_one_plausible(candidate, tx, cfg)
    )

    many_to_one: tuple[ManyToOneRelation, ...] = ()
    if 2 <= len(m2o_candidates) <= max_candidates:
        many_to_one = (ManyToOneRelation(tx=tx, candidates=tuple(m2o_candidates)),)

    partial_seeds = [
        candidate for candidate in filtered
        if is_potential_partial_flow(candidate, tx, cfg)
        and pair_vendor_compatible(candidate.document, tx)
    ]

    many_to_many: list[ManyToManyRelation] = []
    exact = build_exact_many_to_many(tx, filtered, tx_pool, cfg)
    if exact is not None:
        many_to_many.append(exact)

    cluster_needed = (
        len(m2o_candidates) > max_candidates
        or (bool(many_to_one) and bool(partial_seeds))
        or len(one_to_one) > 1
        or len(partial_seeds) > 1
    )
    if cluster_needed:
        many_to_many.append(_cluster(tx, [c.document for c in filtered], tx_pool))

    # A partial payment is only attributed when exactly one document can take it.
    one_to_many: list[OneToManyRelation] = []
    if len(partial_seeds) == 1 and not cluster_needed:
        seed_doc = partial_seeds[0].document
        related = find_related_txs(seed_doc, tx, tx_pool, cfg)
        one_to_many.append(
            OneToManyRelation(document=seed_doc, txs=_unique_by_id([tx, *related]))
        )

    relations = RelationSet(
        one_to_one=one_to_one,
        many_to_one=many_to_one,
        one_to_many=tuple(one_to_many),
        many_to_many=tuple(many_to_many),
    )
    logger.debug(
        "relation_detection_completed",
        extra={
            "tx_id": tx.id,
            "candidate_count": len(filtered),
            "one_to_one": len(relations.one_to_one),
            "many_to_one": len(relations.many_to_one),
            "one_to_many": len(relations.one_to_many),
            "many_to_many": len(relations.many_to_many),
        },
    )
    return relations


def _as_doc_candidate(doc: Document, candidate: TxCandidate) -> DocCandidate:
    return DocCandidate(document=doc, features=candidate.features)


@traced_engine("relations_for_doc", "1.0", fingerprint_fields=("doc", "tx_candidates"))
def detect_relations_for_doc(
    doc: Document,
    tx_candidates: Sequence[TxCandidate],
    doc_pool: Sequence[Document],
    cfg: MatchingConfig,
) -> RelationSet:
    """
    All relations seeded by one document.

    Mirrors ``detect_relations_for_tx``: one_to_one per plausible
    transaction, one_to_many over the transactions that look like partial
    payments, many_to_one for transactions that look like batch payments
    over several pool documents, and a cluster on ambiguity.
    """
    tenant = tenant_key(doc.tenant_id)
    scoped = [
        candidate for candidate in tx_candidates
        if tenant_key(candidate.transaction.tenant_id) == tenant
        and tx_supports_currency(candidate.transaction, doc.currency)
    ]
    max_candidates = cfg.subset_sum.max_candidates

    one_to_one = tuple(
        OneToOneRelation(tx=candidate.transaction, candidate=_as_doc_candidate(doc, candidate))
        for candidate in scoped
        if is_one_to_one_plausible(_as_doc_candidate(doc, candidate), candidate.transaction, cfg)
    )

    partial_txs = [
        candidate.transaction for candidate in scoped
        if is_potential_partial_flow(_as_doc_candidate(doc, candidate), candidate.transaction, cfg)
        and pair_vendor_compatible(doc, candidate.transaction)
    ]
    one_to_many: tuple[OneToManyRelation, ...] = ()
    if partial_txs:
        one_to_many = (OneToManyRelation(document=doc, txs=_unique_by_id(partial_txs)),)

    many_to_one: list[ManyToOneRelation] = []
    oversized = False
    for candidate in scoped:
        tx = candidate.transaction
        if not is_potential_batch_flow(_as_doc_candidate(doc, candidate), tx, cfg):
            continue
        pool_candidates = _many_to_one_candidates(
            _same_scope(candidates_for_tx(tx, doc_pool, cfg), tx), tx
        )
        if len(pool_candidates) > max_candidates:
            oversized = True
        elif len(pool_candidates) >= 2 and any(c.document.id == doc.id for c in pool_candidates):
            many_to_one.append(ManyToOneRelation(tx=tx, candidates=tuple(pool_candidates)))

    many_to_many: list[ManyToManyRelation] = []
    cluster_needed = oversized or (bool(many_to_one) and bool(one_to_many)) or len(one_to_one) > 1
    if cluster_needed and scoped:
        seed = scoped[0].transaction
        pool_docs = [doc, *(
            other for other in doc_pool
            if other.id != doc.id
            and tenant_key(other.tenant_id) == tenant
            and other.currency == doc.currency
        )]
        many_to_many.append(_cluster(seed, pool_docs, [c.transaction for c in scoped]))

    return RelationSet(
        one_to_one=one_to_one,
        many_to_one=tuple(many_to_one),
        one_to_many=one_to_many,
        many_to_many=tuple(many_to_many),
    )

