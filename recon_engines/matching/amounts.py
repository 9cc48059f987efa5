"""
recon_engines.matching.amounts -- Tolerance-based amount resolution.

Responsibility:
    Compare monetary amounts under the configured tolerance, enumerate a
    document's candidate amounts (open balance, nominal, declared
    alternatives) and look up a transaction's amount in a requested
    currency (booking side or foreign side).

Architecture position:
    Engines -- pure functions, zero I/O.

Invariants enforced:
    - ``amount_compatible(a, b) <=> |a - b| <= max(abs_tol, pct_tol * max(|a|, |b|))``.
    - Decimal arithmetic only; candidate amounts are rounded to cents
      (ROUND_HALF_UP) and must be strictly positive.
    - A document's candidate list is ordered (open amount, nominal,
      declared candidates) and de-duplicated at cent precision.

Failure modes:
    None.  Missing amounts resolve to ``None`` / empty tuples.
"""

from __future__ import annotations

from collections.abc import Iterable
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from recon_config.schema import MatchingConfig
from recon_engines.matching.types import AmountMatch, Direction, Document, Transaction

_CENT = Decimal("0.01")
_ZERO = Decimal("0")


def to_decimal(value: object) -> Decimal | None:
    """Coerce ints, floats and numeric strings; non-finite values become ``None``."""
    if value is None or isinstance(value, bool):
        return None
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return result if result.is_finite() else None


def round_cents(value: Decimal) -> Decimal:
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


def amount_tolerance(a: Decimal, b: Decimal, cfg: MatchingConfig) -> Decimal:
    return max(cfg.amount_tolerance_abs, cfg.amount_tolerance_pct * max(abs(a), abs(b)))


def amount_compatible(a: Decimal | None, b: Decimal | None, cfg: MatchingConfig) -> bool:
    if a is None or b is None:
        return False
    if not a.is_finite() or not b.is_finite():
        return False
    return abs(a - b) <= amount_tolerance(a, b, cfg)


def sum_amounts(values: Iterable[Decimal]) -> Decimal:
    return sum(values, _ZERO)


def _positive_cents(value: Decimal | None) -> Decimal | None:
    if value is None or not value.is_finite():
        return None
    rounded = round_cents(abs(value))
    return rounded if rounded > _ZERO else None


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


def get_doc_amount_candidates(doc: Document) -> tuple[Decimal, ...]:
    out: list[Decimal] = []
    for value in (doc.open_amount, doc.amount, *doc.amount_candidates):
        normalized = _positive_cents(value)
        if normalized is not None and normalized not in out:
            out.append(normalized)
    return tuple(out)


def resolve_doc_amount_match(
    doc: Document,
    target: Decimal | None,
    cfg: MatchingConfig,
) -> AmountMatch | None:
    """
    First document candidate amount compatible with ``target``.

    ``via_amount_candidate`` is set when the match used something other
    than the nominal amount (an open balance or a declared alternative).
    """
    if target is None or not target.is_finite():
        return None
    normalized_target = round_cents(abs(target))
    base = round_cents(abs(doc.amount)) if doc.amount is not None else None

    for candidate in get_doc_amount_candidates(doc):
        if not amount_compatible(candidate, normalized_target, cfg):
            continue
        return AmountMatch(
            matched_amount=candidate,
            via_amount_candidate=base is None or candidate != base,
        )
    return None


def doc_target_amount(doc: Document) -> Decimal | None:
    """Remaining claim: a positive open amount, else the absolute nominal amount."""
    if doc.open_amount is not None and doc.open_amount > _ZERO:
        return doc.open_amount
    if doc.amount is None:
        return None
    return abs(doc.amount)


def amount_direction_ok(doc: Document, tx: Transaction) -> bool:
    """Non-negative documents settle outgoing money, negative ones incoming."""
    if doc.amount is None:
        return True
    if doc.amount >= _ZERO:
        return tx.direction == Direction.OUT
    return tx.direction == Direction.IN


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


def normalize_currency(value: str | None) -> str | None:
    if not value:
        return None
    trimmed = value.strip().upper()
    return trimmed or None


def tx_amount_currencies(tx: Transaction) -> tuple[tuple[str, Decimal], ...]:
    """(currency, amount) pairs of the booking side and the foreign side."""
    out: list[tuple[str, Decimal]] = []
    for currency, amount in ((tx.currency, tx.amount), (tx.foreign_currency, tx.foreign_amount)):
        key = normalize_currency(currency)
        normalized = _positive_cents(amount)
        if key is None or normalized is None:
            continue
        if (key, normalized) in out:
            continue
        out.append((key, normalized))
    return tuple(out)


def tx_amount_for_currency(tx: Transaction, currency: str | None) -> Decimal | None:
    key = normalize_currency(currency)
    if key is None:
        return None
    for candidate_currency, amount in tx_amount_currencies(tx):
        if candidate_currency == key:
            return amount
    return None


def tx_supports_currency(tx: Transaction, currency: str | None) -> bool:
    return tx_amount_for_currency(tx, currency) is not None
