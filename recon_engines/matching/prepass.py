"""
recon_engines.matching.prepass -- Hard-key prepass.

Responsibility:
    Before any scoring, finalize one-to-one pairs that are carried by a
    unique identity-level key: invoice number + date, amount + date +
    strong vendor, IBAN + amount, end-to-end id + amount.  Matched
    entities leave the pool for every later phase.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    First matching phase of ``recon_engines.matching.pipeline``.

Invariants enforced:
    - Amount compatibility in the document currency is always required.
    - Money direction is required for every key except INVOICE_NO.
    - Pairs with partial or batch payment wording are skipped when
      ``prepass.block_on_partial_keywords`` is set.
    - A transaction must have exactly one hard candidate, and (with
      ``prepass.require_uniqueness``) each transaction and each document
      may appear in only one pair.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any

from recon_config.schema import MatchingConfig
from recon_engines.matching.amounts import amount_compatible, amount_direction_ok, tx_amount_for_currency
from recon_engines.matching.candidates import invoice_no_in_tx, is_matchable_link_state
from recon_engines.matching.canonicalize import contains_keyword, identifiers_equal, join_text
from recon_engines.matching.matchers import (
    HARD_E2E_AMOUNT,
    HARD_IBAN_AMOUNT,
    HARD_INVOICE_NO,
)
from recon_engines.matching.types import (
    Document,
    MatchDecision,
    MatchState,
    RelationType,
    Transaction,
    tenant_key,
)
from recon_engines.matching.vendor import vendor_match_strong
from recon_engines.matching.windowing import date_matches
from recon_engines.tracer import traced_engine
from recon_kernel.logging_config import get_logger

logger = get_logger("engines.prepass")

HARD_AMOUNT_DATE_VENDOR = "HARD_AMOUNT_DATE_VENDOR"


class HardKeyType(str, Enum):
    INVOICE_NO = "INVOICE_NO"
    AMOUNT_DATE_VENDOR = "AMOUNT_DATE_VENDOR"
    IBAN_AMOUNT = "IBAN_AMOUNT"
    E2E_AMOUNT = "E2E_AMOUNT"


_KEY_REASONS = {
    HardKeyType.IBAN_AMOUNT: HARD_IBAN_AMOUNT,
    HardKeyType.INVOICE_NO: HARD_INVOICE_NO,
    HardKeyType.AMOUNT_DATE_VENDOR: HARD_AMOUNT_DATE_VENDOR,
    HardKeyType.E2E_AMOUNT: HARD_E2E_AMOUNT,
}


@dataclass(frozen=True)
class HardPair:
    tx: Transaction
    doc: Document
    key: HardKeyType


@dataclass(frozen=True)
class PrepassResult:
    final: tuple[MatchDecision, ...]
    remaining_docs: tuple[Document, ...]
    remaining_txs: tuple[Transaction, ...]


def hard_key_type(doc: Document, tx: Transaction, cfg: MatchingConfig) -> HardKeyType | None:
    tx_amount = tx_amount_for_currency(tx, doc.currency)
    if tx_amount is None or doc.amount is None:
        return None
    if not amount_compatible(abs(doc.amount), tx_amount, cfg):
        return None

    date_ok = date_matches(doc, tx, cfg)
    if invoice_no_in_tx(doc, tx) and date_ok:
        return HardKeyType.INVOICE_NO

    if not amount_direction_ok(doc, tx):
        return None

    if date_ok and not doc.invoice_no and vendor_match_strong(doc, tx):
        return HardKeyType.AMOUNT_DATE_VENDOR
    if identifiers_equal(doc.iban, tx.iban):
        return HardKeyType.IBAN_AMOUNT
    if identifiers_equal(doc.e2e_id, tx.e2e_id):
        return HardKeyType.E2E_AMOUNT
    return None


def has_partial_or_batch_hints(
    tx: Transaction,
    doc: Document | None,
    cfg: MatchingConfig,
) -> bool:
    """Partial or batch wording anywhere in the pair, when blocking is enabled."""
    if not cfg.prepass.block_on_partial_keywords:
        return False
    haystack = join_text(
        tx.text_norm,
        tx.reference,
        tx.vendor_norm,
        doc.text_norm if doc else None,
        doc.vendor_norm if doc else None,
        doc.buyer_norm if doc else None,
    )
    keywords = cfg.keywords
    return contains_keyword(haystack, keywords.partial_payment) or contains_keyword(
        haystack, keywords.batch_payment
    )


def _hard_candidates(tx: Transaction, docs: Sequence[Document], cfg: MatchingConfig) -> list[HardPair]:
    tenant = tenant_key(tx.tenant_id)
    pairs: list[HardPair] = []
    for doc in docs:
        if tenant_key(doc.tenant_id) != tenant:
            continue
        key = hard_key_type(doc, tx, cfg)
        if key is None:
            continue
        if has_partial_or_batch_hints(tx, doc, cfg):
            continue
        pairs.append(HardPair(tx=tx, doc=doc, key=key))
    return pairs


def _unique_pairs(pairs: Sequence[HardPair]) -> list[HardPair]:
    """Drop every pair whose transaction or document appears more than once."""
    tx_counts: dict[str, int] = {}
    for pair in pairs:
        tx_counts[pair.tx.id] = tx_counts.get(pair.tx.id, 0) + 1
    by_tx = [pair for pair in pairs if tx_counts[pair.tx.id] == 1]

    doc_counts: dict[str, int] = {}
    for pair in by_tx:
        doc_counts[pair.doc.id] = doc_counts.get(pair.doc.id, 0) + 1
    return [pair for pair in by_tx if doc_counts[pair.doc.id] == 1]


def _reason_codes(pair: HardPair, cfg: MatchingConfig) -> tuple[str, ...]:
    doc, tx = pair.doc, pair.tx
    date_ok = date_matches(doc, tx, cfg)
    reasons: list[str] = []
    if identifiers_equal(doc.iban, tx.iban):
        reasons.append(HARD_IBAN_AMOUNT)
    if invoice_no_in_tx(doc, tx) and date_ok:
        reasons.append(HARD_INVOICE_NO)
    if date_ok and not doc.invoice_no and vendor_match_strong(doc, tx):
        reasons.append(HARD_AMOUNT_DATE_VENDOR)
    if identifiers_equal(doc.e2e_id, tx.e2e_id):
        reasons.append(HARD_E2E_AMOUNT)
    if not reasons:
        reasons.append(_KEY_REASONS[pair.key])
    return tuple(reasons)


def _decision(pair: HardPair, cfg: MatchingConfig) -> MatchDecision:
    doc, tx = pair.doc, pair.tx
    inputs: dict[str, Any] = {
        "key": pair.key.value,
        "doc_id": doc.id,
        "tx_id": tx.id,
        "doc_amount": doc.amount,
        "tx_amount": tx_amount_for_currency(tx, doc.currency) or tx.amount,
        "currency": doc.currency,
    }
    if doc.iban and tx.iban:
        inputs["iban"] = doc.iban
    if doc.invoice_no:
        inputs["invoice_no"] = doc.invoice_no
    if doc.e2e_id and tx.e2e_id:
        inputs["e2e_id"] = doc.e2e_id
    return MatchDecision(
        state=MatchState.FINAL,
        relation_type=RelationType.ONE_TO_ONE,
        tx_ids=(tx.id,),
        doc_ids=(doc.id,),
        confidence=Decimal("1"),
        reason_codes=_reason_codes(pair, cfg),
        inputs=inputs,
    )


@traced_engine("prepass", "1.0", fingerprint_fields=("docs", "txs"))
def prepass_hard_matches(
    docs: Sequence[Document],
    txs: Sequence[Transaction],
    cfg: MatchingConfig,
) -> PrepassResult:
    """Finalize uniquely hard-keyed one-to-one pairs and remove them from the pool."""
    matchable_docs = [doc for doc in docs if is_matchable_link_state(doc.link_state)]

    pairs: list[HardPair] = []
    for tx in txs:
        if not is_matchable_link_state(tx.link_state):
            continue
        found = _hard_candidates(tx, matchable_docs, cfg)
        if len(found) == 1:
            pairs.append(found[0])

    if cfg.prepass.require_uniqueness:
        pairs = _unique_pairs(pairs)

    final = tuple(_decision(pair, cfg) for pair in pairs)
    matched_docs = {pair.doc.id for pair in pairs}
    matched_txs = {pair.tx.id for pair in pairs}

    logger.info(
        "prepass_completed",
        extra={"final_count": len(final), "doc_count": len(docs), "tx_count": len(txs)},
    )
    return PrepassResult(
        final=final,
        remaining_docs=tuple(doc for doc in docs if doc.id not in matched_docs),
        remaining_txs=tuple(tx for tx in txs if tx.id not in matched_txs),
    )
