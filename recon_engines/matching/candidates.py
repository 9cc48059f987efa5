"""
recon_engines.matching.candidates -- Candidate generation and feature vectors.

Responsibility:
    For one transaction, select the documents that could plausibly be
    settled by it (and, symmetrically, the transactions that could settle
    one document) and compute one ``FeatureVector`` per surviving pair.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - Candidates share the normalized tenant id of the seed.
    - Candidates are in a matchable link state (unlinked, suggested,
      partial; linked only when explicitly requested).
    - Currency support: the transaction must carry an amount in the
      document's currency on its booking or foreign side.
    - Entities without amount or currency are silently excluded.
    - Outside the date window a pair survives only through the strong
      out-of-window override (invoice-number or amount+direction signal,
      vendor compatibility or invoice number, resolvable amount).
    - A transaction without booking date keeps every candidate.

Failure modes:
    None.  Data defects exclude the entity; they never raise.
"""

from __future__ import annotations

from collections.abc import Iterable

from recon_config.schema import MatchingConfig
from recon_engines.matching.amounts import (
    amount_compatible,
    amount_direction_ok,
    resolve_doc_amount_match,
    tx_amount_for_currency,
)
from recon_engines.matching.canonicalize import (
    contains_keyword,
    identifiers_equal,
    join_text,
    match_invoice_no_in_text,
)
from recon_engines.matching.types import (
    DocCandidate,
    Document,
    FeatureVector,
    LinkState,
    Transaction,
    TxCandidate,
    tenant_key,
)
from recon_engines.matching.vendor import doc_party_norm_for_tx, tx_vendor_key, vendor_compatible
from recon_engines.matching.windowing import calc_window, days_delta
from recon_engines.tracer import traced_engine

_MATCHABLE_STATES = frozenset({LinkState.UNLINKED, LinkState.SUGGESTED, LinkState.PARTIAL})


def is_matchable_link_state(state: LinkState | str, include_linked: bool = False) -> bool:
    if state in _MATCHABLE_STATES:
        return True
    return include_linked and state == LinkState.LINKED


# ---------------------------------------------------------------------------
# Pair signals
# ---------------------------------------------------------------------------


def invoice_no_in_tx(doc: Document, tx: Transaction) -> bool:
    """Document invoice number found in the transaction reference or text."""
    if not doc.invoice_no:
        return False
    return any(
        match_invoice_no_in_text(doc.invoice_no, text)
        for text in (tx.reference, tx.text_raw, tx.text_norm)
        if text
    )


def has_partial_keywords(doc: Document, tx: Transaction, cfg: MatchingConfig) -> bool:
    """Partial- or batch-payment wording in the transaction or document text."""
    haystack = join_text(tx.text_norm, tx.reference, doc.text_norm)
    keywords = cfg.keywords
    return contains_keyword(haystack, keywords.partial_payment) or contains_keyword(
        haystack, keywords.batch_payment
    )


def pair_vendor_compatible(doc: Document, tx: Transaction) -> bool:
    return vendor_compatible(doc_party_norm_for_tx(doc, tx), tx_vendor_key(tx))


def is_amount_resolvable(doc: Document, tx: Transaction, cfg: MatchingConfig) -> bool:
    target = tx_amount_for_currency(tx, doc.currency)
    return resolve_doc_amount_match(doc, target, cfg) is not None


def is_strong_out_of_window(doc: Document, tx: Transaction, cfg: MatchingConfig) -> bool:
    """
    Override for pairs whose booking date falls outside the document window.

    Requires an invoice-number match or amount+direction compatibility,
    plus vendor compatibility (the invoice-number signal alone also
    qualifies), plus a resolvable amount.
    """
    invoice_match = invoice_no_in_tx(doc, tx)
    tx_amount = tx_amount_for_currency(tx, doc.currency)
    amount_ok = (
        doc.amount is not None
        and amount_compatible(abs(doc.amount), tx_amount, cfg)
        and amount_direction_ok(doc, tx)
    )
    if not (invoice_match or amount_ok):
        return False
    if not (invoice_match or pair_vendor_compatible(doc, tx)):
        return False
    return resolve_doc_amount_match(doc, tx_amount, cfg) is not None


def build_feature_vector(doc: Document, tx: Transaction, cfg: MatchingConfig) -> FeatureVector:
    tx_amount = tx_amount_for_currency(tx, doc.currency)
    amount_delta = None
    if doc.amount is not None and tx_amount is not None:
        amount_delta = abs(abs(doc.amount) - tx_amount)

    window = calc_window(doc, cfg)
    in_window = tx.booking_date is None or window.contains(tx.booking_date)
    return FeatureVector(
        amount_delta=amount_delta,
        days_delta=days_delta(doc, tx),
        iban_equal=identifiers_equal(doc.iban, tx.iban),
        invoice_no_equal=invoice_no_in_tx(doc, tx),
        e2e_equal=identifiers_equal(doc.e2e_id, tx.e2e_id),
        partial_keywords=has_partial_keywords(doc, tx, cfg),
        in_window=in_window,
        out_of_window_override=(not in_window) and is_strong_out_of_window(doc, tx, cfg),
    )


# ---------------------------------------------------------------------------
# Candidate sets
# ---------------------------------------------------------------------------


def _pair_eligible(doc: Document, tx: Transaction, cfg: MatchingConfig) -> bool:
    if doc.amount is None or not doc.currency:
        return False
    if tx_amount_for_currency(tx, doc.currency) is None:
        return False
    if tx.booking_date is None:
        return True
    if calc_window(doc, cfg).contains(tx.booking_date):
        return True
    return is_strong_out_of_window(doc, tx, cfg)


@traced_engine("candidates_for_tx", "1.0", fingerprint_fields=("tx", "docs"))
def candidates_for_tx(
    tx: Transaction,
    docs: Iterable[Document],
    cfg: MatchingConfig,
    include_linked_docs: bool = False,
) -> tuple[DocCandidate, ...]:
    """Documents that ``tx`` could settle, each with its feature vector."""
    tenant = tenant_key(tx.tenant_id)
    out: list[DocCandidate] = []
    for doc in docs:
        if tenant_key(doc.tenant_id) != tenant:
            continue
        if not is_matchable_link_state(doc.link_state, include_linked_docs):
            continue
        if not _pair_eligible(doc, tx, cfg):
            continue
        out.append(DocCandidate(document=doc, features=build_feature_vector(doc, tx, cfg)))
    return tuple(out)


@traced_engine("candidates_for_doc", "1.0", fingerprint_fields=("doc", "txs"))
def candidates_for_doc(
    doc: Document,
    txs: Iterable[Transaction],
    cfg: MatchingConfig,
) -> tuple[TxCandidate, ...]:
    """Transactions that could settle ``doc``, each with its feature vector."""
    tenant = tenant_key(doc.tenant_id)
    out: list[TxCandidate] = []
    for tx in txs:
        if tenant_key(tx.tenant_id) != tenant:
            continue
        if not is_matchable_link_state(tx.link_state):
            continue
        if not _pair_eligible(doc, tx, cfg):
            continue
        out.append(TxCandidate(transaction=tx, features=build_feature_vector(doc, tx, cfg)))
    return tuple(out)
