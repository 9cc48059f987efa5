"""
recon_engines.matching.tx_lifecycle -- Lifecycle classification of transactions.

Responsibility:
    Classify a transaction without a document counterpart: technical
    bookings (verification cents), private, bank fees, subscriptions,
    prepayments, card/cash payments needing an eigenbeleg, and the
    fallback "missing document".  Subscription detection can use the
    tenant's transaction history to confirm a recurring cadence.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    History is loaded by the service layer and passed in.

Invariants enforced:
    - Classification is first-match: technical, private, fee,
      subscription, prepayment, needs eigenbeleg, missing document.
    - Keywords match as whole tokens of the normalized haystack
      (counterparty, reference, raw text, vendor raw/normalized).
    - With history, a subscription needs ``min_occurrences`` same-vendor
      occurrences inside the lookback, amounts within
      ``max_amount_variance_pct`` of their mean and a weekly, monthly or
      yearly average gap (within ``max_day_variance`` days).
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal

from recon_config.schema import MatchingConfig
from recon_engines.matching.canonicalize import contains_keyword, join_text, normalize_text
from recon_engines.matching.types import (
    Cadence,
    NextAction,
    RematchHint,
    RuleSuggestion,
    Severity,
    Transaction,
    TxLifecycleKind,
    TxLifecycleResult,
)
from recon_engines.matching.vendor import tx_vendor_key
from recon_engines.tracer import traced_engine
from recon_kernel.logging_config import get_logger

logger = get_logger("engines.tx_lifecycle")

SUBSCRIPTION_RULE = "subscription_rule"

_YEARLY_WORDS = ("annual", "jahrlich", "yearly")
_MONTHLY_WORDS = ("monthly", "monat")

_CADENCE_DAYS = (
    (Cadence.MONTHLY, 30),
    (Cadence.YEARLY, 365),
    (Cadence.WEEKLY, 7),
)


@dataclass(frozen=True)
class Classification:
    """Outcome of a single predicate with the codes that explain it."""

    match: bool
    codes: tuple[str, ...] = ()
    cadence: Cadence | None = None


_NO_MATCH = Classification(match=False)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def build_haystack(tx: Transaction) -> str:
    return normalize_text(
        join_text(tx.counterparty_name, tx.reference, tx.text_raw, tx.vendor_raw, tx.vendor_norm)
    )


def _counterparty(tx: Transaction) -> str | None:
    return tx.counterparty_name or tx.vendor_raw


def _at_most(amount: Decimal | None, threshold: Decimal | None) -> bool:
    if amount is None or threshold is None:
        return False
    return amount <= threshold


def build_tx_rematch_hint(tx: Transaction, cfg: MatchingConfig) -> RematchHint | None:
    anchor = tx.effective_date
    if anchor is None:
        return None
    return RematchHint(
        anchor_date=anchor,
        window_before_days=cfg.tx_window_before_days,
        window_after_days=cfg.tx_window_after_days,
    )


def cadence_from_keywords(haystack: str) -> Cadence | None:
    if contains_keyword(haystack, _YEARLY_WORDS):
        return Cadence.YEARLY
    if contains_keyword(haystack, _MONTHLY_WORDS):
        return Cadence.MONTHLY
    return None


def detect_cadence(dates: Sequence[date], max_day_variance: int) -> Cadence | None:
    """Cadence from the mean gap between sorted dates; needs three dates."""
    ordered = sorted(dates)
    if len(ordered) < 3:
        return None
    gaps = [(later - earlier).days for earlier, later in zip(ordered, ordered[1:])]
    average = sum(gaps) / len(gaps)
    for cadence, days in _CADENCE_DAYS:
        if abs(average - days) <= max_day_variance:
            return cadence
    return None


# ---------------------------------------------------------------------------
# Predicates
# ---------------------------------------------------------------------------


def is_technical_tx(tx: Transaction, cfg: MatchingConfig) -> Classification:
    if contains_keyword(build_haystack(tx), cfg.keywords.technical):
        return Classification(match=True, codes=("TECHNICAL_KEYWORD_MATCH",))
    return _NO_MATCH


def is_private_tx(tx: Transaction) -> bool:
    return tx.private_hint


def is_fee_tx(tx: Transaction, cfg: MatchingConfig) -> Classification:
    vendor_key = tx_vendor_key(tx)
    vendor_match = bool(vendor_key) and vendor_key in cfg.fee_vendor_keys
    keyword_match = contains_keyword(build_haystack(tx), cfg.keywords.fee)
    amount_small = _at_most(tx.amount, cfg.fee_amount_threshold)

    if not (vendor_match or (keyword_match and amount_small)):
        return _NO_MATCH
    codes: list[str] = []
    if vendor_match:
        codes.append("FEE_VENDOR_MATCH")
    if keyword_match:
        codes.append("FEE_KEYWORD_MATCH")
    if amount_small:
        codes.append("FEE_AMOUNT_SMALL")
    return Classification(match=True, codes=tuple(codes))


def is_prepayment_tx(tx: Transaction, cfg: MatchingConfig) -> Classification:
    if contains_keyword(build_haystack(tx), cfg.keywords.prepayment):
        return Classification(match=True, codes=("PREPAYMENT_KEYWORD_MATCH",))
    return _NO_MATCH


def _relevant_history(
    tx: Transaction,
    history: Sequence[Transaction],
    cutoff: date,
) -> list[Transaction]:
    vendor_key = tx_vendor_key(tx)
    out: list[Transaction] = []
    for item in history:
        item_date = item.effective_date
        if item_date is None or item_date < cutoff:
            continue
        if vendor_key and tx_vendor_key(item) != vendor_key:
            continue
        out.append(item)
    return out


def is_subscription_tx(
    tx: Transaction,
    cfg: MatchingConfig,
    history: Sequence[Transaction] | None = None,
) -> Classification:
    haystack = build_haystack(tx)
    keyword_match = contains_keyword(haystack, cfg.keywords.subscription)

    if not cfg.enable_subscription_history or not history:
        if not (tx.is_recurring_hint or keyword_match):
            return _NO_MATCH
        code = "SUBSCRIPTION_RECURRING_HINT" if tx.is_recurring_hint else "SUBSCRIPTION_KEYWORD_MATCH"
        return Classification(
            match=True,
            codes=(code,),
            cadence=cadence_from_keywords(haystack) if keyword_match else None,
        )

    current = tx.effective_date
    if current is None:
        return _NO_MATCH

    policy = cfg.subscription_detection
    cutoff = current - timedelta(days=policy.lookback_days)
    occurrences: list[Transaction] = []
    seen: set[str] = set()
    for item in [tx, *_relevant_history(tx, history, cutoff)]:
        if item.id in seen:
            continue
        seen.add(item.id)
        occurrences.append(item)
    if len(occurrences) < policy.min_occurrences:
        return _NO_MATCH

    amounts = [item.amount or Decimal("0") for item in occurrences]
    mean = sum(amounts, Decimal("0")) / len(amounts)
    max_delta_pct = (
        max(abs(value - mean) / mean * 100 for value in amounts) if mean > 0 else Decimal("0")
    )
    if max_delta_pct > policy.max_amount_variance_pct:
        return _NO_MATCH

    dates = [item.effective_date for item in occurrences if item.effective_date is not None]
    cadence = detect_cadence(dates, policy.max_day_variance)
    if cadence is None:
        return _NO_MATCH

    return Classification(
        match=True,
        codes=(
            "SUBSCRIPTION_MIN_OCCURRENCES",
            "SUBSCRIPTION_AMOUNT_VARIANCE",
            f"SUBSCRIPTION_CADENCE_{cadence.value.upper()}",
        ),
        cadence=cadence,
    )


def needs_eigenbeleg(tx: Transaction, cfg: MatchingConfig) -> Classification:
    keyword_match = contains_keyword(build_haystack(tx), cfg.keywords.eigenbeleg)
    amount_small = _at_most(tx.amount, cfg.eigenbeleg_amount_threshold)
    missing_counterparty = not _counterparty(tx) and not tx.iban

    if not (keyword_match or (amount_small and not tx.iban)):
        return _NO_MATCH
    codes = ["EIGENBELEG_HEURISTIC"]
    if keyword_match:
        codes.append("EIGENBELEG_KEYWORD_MATCH")
    if amount_small:
        codes.append("EIGENBELEG_AMOUNT_SMALL")
    if missing_counterparty:
        codes.append("EIGENBELEG_UNKNOWN_COUNTERPARTY")
    return Classification(match=True, codes=tuple(codes))


def build_subscription_rule(tx: Transaction, cadence: Cadence | None) -> RuleSuggestion:
    key = tx_vendor_key(tx) or _counterparty(tx) or "unknown"
    return RuleSuggestion(type=SUBSCRIPTION_RULE, key=key, cadence=cadence)


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


@traced_engine("tx_lifecycle", "1.0", fingerprint_fields=("tx",))
def evaluate_tx_lifecycle(
    tx: Transaction,
    now: date | datetime,
    cfg: MatchingConfig,
    history: Sequence[Transaction] | None = None,
) -> TxLifecycleResult:
    def result(
        kind: TxLifecycleKind,
        severity: Severity,
        next_action: NextAction,
        codes: tuple[str, ...],
        hint: RematchHint | None = None,
        rule: RuleSuggestion | None = None,
    ) -> TxLifecycleResult:
        return TxLifecycleResult(
            tx_id=tx.id,
            kind=kind,
            severity=severity,
            next_action=next_action,
            explanation_codes=codes,
            rematch_hint=hint,
            rule_suggestion=rule,
        )

    technical = is_technical_tx(tx, cfg)
    if technical.match:
        return result(TxLifecycleKind.TECHNICAL_TX, Severity.INFO, NextAction.NONE, technical.codes)

    if is_private_tx(tx):
        return result(TxLifecycleKind.PRIVATE_TX, Severity.INFO, NextAction.ASK_USER, ("PRIVATE_HINT",))

    fee = is_fee_tx(tx, cfg)
    if fee.match:
        return result(TxLifecycleKind.FEE_TX, Severity.INFO, NextAction.NONE, fee.codes)

    subscription = is_subscription_tx(tx, cfg, history)
    if subscription.match:
        logger.debug(
            "subscription_detected",
            extra={"tx_id": tx.id, "cadence": subscription.cadence.value if subscription.cadence else None},
        )
        return result(
            TxLifecycleKind.SUBSCRIPTION_TX, Severity.INFO, NextAction.NONE, subscription.codes,
            rule=build_subscription_rule(tx, subscription.cadence),
        )

    prepayment = is_prepayment_tx(tx, cfg)
    if prepayment.match:
        return result(
            TxLifecycleKind.PREPAYMENT_TX, Severity.INFO, NextAction.NONE, prepayment.codes,
            build_tx_rematch_hint(tx, cfg),
        )

    eigenbeleg = needs_eigenbeleg(tx, cfg)
    if eigenbeleg.match:
        return result(
            TxLifecycleKind.NEEDS_EIGENBELEG, Severity.ACTION, NextAction.START_EIGENBELEG_FLOW,
            eigenbeleg.codes, build_tx_rematch_hint(tx, cfg),
        )

    return result(
        TxLifecycleKind.MISSING_DOC, Severity.ACTION, NextAction.INBOX_TASK,
        ("FALLBACK_MISSING_DOC",), build_tx_rematch_hint(tx, cfg),
    )
