"""
recon_engines.matching.vendor -- Fuzzy equivalence of party names.

Responsibility:
    Decide whether two party labels (a bank-statement counterparty and a
    document vendor or buyer) plausibly name the same party, and pick the
    document party relevant for a given transaction direction.

Architecture position:
    Engines -- pure functions, zero I/O.

Invariants enforced:
    - Blank input is never compatible.
    - Short labels (at most two tokens) match on one shared distinctive
      token; generic words, numbers and tokens shorter than three
      characters never stand as the sole evidence.
"""

from __future__ import annotations

from recon_engines.matching.canonicalize import normalize_text, tokenize
from recon_engines.matching.types import Direction, Document, Transaction

VENDOR_TOKEN_ALIASES: dict[str, str] = {
    "tankstelle": "fuelstation",
    "station": "fuelstation",
}

GENERIC_SHARED_TOKENS = frozenset({
    "fuelstation", "karte", "card", "shop", "store", "online", "payment",
    "zahlung", "invoice", "rechnung", "service", "services",
})


def _canonical_tokens(value: str) -> list[str]:
    return [VENDOR_TOKEN_ALIASES.get(token, token) for token in tokenize(value)]


def _has_distinct_shared_token(left: list[str], right: list[str]) -> bool:
    right_set = set(right)
    for token in left:
        if token not in right_set:
            continue
        if token.isdigit() or len(token) < 3 or token in GENERIC_SHARED_TOKENS:
            continue
        return True
    return False


def vendor_compatible(left_raw: str | None, right_raw: str | None) -> bool:
    left = normalize_text(left_raw)
    right = normalize_text(right_raw)
    if not left or not right:
        return False
    if left == right:
        return True

    left_tokens = _canonical_tokens(left)
    right_tokens = _canonical_tokens(right)
    if not left_tokens or not right_tokens:
        return False

    left_set = set(left_tokens)
    overlap = sum(1 for token in right_tokens if token in left_set)
    if overlap >= 2:
        return True

    if overlap >= 1 and (len(left_tokens) <= 2 or len(right_tokens) <= 2):
        if _has_distinct_shared_token(left_tokens, right_tokens):
            return True
        return left in right or right in left

    return False


def _first_non_empty(*values: str | None) -> str | None:
    for value in values:
        trimmed = (value or "").strip()
        if trimmed:
            return trimmed
    return None


def doc_party_norm_for_direction(doc: Document, direction: Direction) -> str | None:
    """Buyer for incoming money, vendor for outgoing; falls back to the other."""
    if direction == Direction.IN:
        return _first_non_empty(doc.buyer_norm, doc.vendor_norm)
    return _first_non_empty(doc.vendor_norm, doc.buyer_norm)


def doc_party_norm_for_tx(doc: Document, tx: Transaction) -> str | None:
    return doc_party_norm_for_direction(doc, tx.direction)


def doc_party_norms(doc: Document) -> tuple[str, ...]:
    values: list[str] = []
    for value in (doc.vendor_norm, doc.buyer_norm):
        trimmed = (value or "").strip()
        if trimmed and trimmed not in values:
            values.append(trimmed)
    return tuple(values)


def tx_vendor_key(tx: Transaction) -> str | None:
    return _first_non_empty(tx.vendor_norm, tx.counterparty_name, tx.vendor_raw)


def vendor_not_mismatched(doc: Document, tx: Transaction) -> bool:
    """True unless both party values exist and are incompatible."""
    party = doc_party_norm_for_tx(doc, tx)
    vendor = tx_vendor_key(tx)
    if not party or not vendor:
        return True
    return vendor_compatible(party, vendor)


def vendor_match_strong(doc: Document, tx: Transaction) -> bool:
    """Stricter check used by the hard-key prepass (no generic-token escape)."""
    party = normalize_text(doc_party_norm_for_tx(doc, tx))
    vendor = normalize_text(tx_vendor_key(tx))
    if not party or not vendor:
        return False
    if party == vendor:
        return True
    party_tokens = tokenize(party)
    vendor_tokens = tokenize(vendor)
    vendor_set = set(vendor_tokens)
    overlap = sum(1 for token in party_tokens if token in vendor_set)
    if overlap >= 2:
        return True
    if overlap >= 1 and (len(party_tokens) <= 2 or len(vendor_tokens) <= 2):
        return party in vendor or vendor in party
    return False
