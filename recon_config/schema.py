"""
MatchingConfig schema.

The immutable policy bundle every matching component reads: amount
tolerances, date windows, subset-sum bounds, scoring threshold, keyword
tables, subscription-detection thresholds and required-field rules.

Defaults live here and nowhere else.  Engines never carry a private
fallback copy of a keyword list; they read it from the config they were
handed.  Partial overrides are merged onto these defaults by
``recon_config.loader.resolve_config``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

# ---------------------------------------------------------------------------
# Policy groups
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ScoringPolicy:
    """Threshold for weighted one-to-one scores to become suggestions."""

    min_suggest_score: Decimal = Decimal("0.65")


@dataclass(frozen=True)
class SubsetSumPolicy:
    """Bounds of the many-documents-to-one-transaction search."""

    max_candidates: int = 12
    max_solutions: int = 1


@dataclass(frozen=True)
class PrepassPolicy:
    """Hard-key prepass behaviour."""

    require_uniqueness: bool = True
    block_on_partial_keywords: bool = True


@dataclass(frozen=True)
class SubscriptionDetectionPolicy:
    """History-based recurring payment detection thresholds."""

    min_occurrences: int = 3
    max_amount_variance_pct: Decimal = Decimal("3")
    max_day_variance: int = 5
    lookback_days: int = 365
    history_limit: int = 200


@dataclass(frozen=True)
class RequiredFieldsPolicy:
    """Which document fields must be present before it can be matched."""

    require_amount: bool = True
    require_currency: bool = True
    require_invoice_date: bool = True


@dataclass(frozen=True)
class KeywordPolicy:
    """Keyword tables, matched as whole tokens against normalized text."""

    partial_payment: tuple[str, ...] = ("teilzahlung", "rate", "anzahlung", "partial")
    batch_payment: tuple[str, ...] = ("sammel", "collective", "mehrere rechnungen", "batch")
    fee: tuple[str, ...] = (
        "gebuehr",
        "entgelt",
        "fee",
        "commission",
        "charge",
        "kontofuehrung",
    )
    technical: tuple[str, ...] = (
        "verification",
        "verifizierung",
        "preauth",
        "auth",
        "test",
        "penny",
        "microdeposit",
    )
    prepayment: tuple[str, ...] = ("vorkasse", "anzahlung", "deposit", "advance", "abschlag")
    subscription: tuple[str, ...] = (
        "abo",
        "subscription",
        "mitglied",
        "membership",
        "monthly",
        "jahrlich",
        "annual",
        "renew",
    )
    eigenbeleg: tuple[str, ...] = (
        "pos",
        "karte",
        "kartenzahlung",
        "kreditkarte",
        "credit card",
        "debit card",
        "ec",
        "girocard",
        "barabhebung",
        "cash withdrawal",
        "atm",
    )


# ---------------------------------------------------------------------------
# Root config
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MatchingConfig:
    """
    Resolved matching policy for one pipeline run.

    Amount tolerance is ``max(amount_tolerance_abs,
    amount_tolerance_pct * max(|a|, |b|))``.  Date windows are in days.
    """

    amount_tolerance_abs: Decimal = Decimal("0.02")
    amount_tolerance_pct: Decimal = Decimal("0.001")

    date_window_days: int = 30
    due_date_extend_days: int = 14
    grace_days: int = 7

    # Rematch windows proposed by lifecycle evaluators
    window_before_due_days: int = 30
    window_after_due_days: int = 90
    window_before_invoice_days: int = 7
    window_after_invoice_days: int = 45
    tx_window_before_days: int = 60
    tx_window_after_days: int = 120

    fee_vendor_keys: tuple[str, ...] = ()
    fee_amount_threshold: Decimal = Decimal("10")
    eigenbeleg_amount_threshold: Decimal = Decimal("50")
    enable_subscription_history: bool = True

    scoring: ScoringPolicy = field(default_factory=ScoringPolicy)
    subset_sum: SubsetSumPolicy = field(default_factory=SubsetSumPolicy)
    prepass: PrepassPolicy = field(default_factory=PrepassPolicy)
    subscription_detection: SubscriptionDetectionPolicy = field(
        default_factory=SubscriptionDetectionPolicy
    )
    required_fields: RequiredFieldsPolicy = field(default_factory=RequiredFieldsPolicy)
    keywords: KeywordPolicy = field(default_factory=KeywordPolicy)


POLICY_GROUPS: dict[str, type] = {
    "scoring": ScoringPolicy,
    "subset_sum": SubsetSumPolicy,
    "prepass": PrepassPolicy,
    "subscription_detection": SubscriptionDetectionPolicy,
    "required_fields": RequiredFieldsPolicy,
    "keywords": KeywordPolicy,
}
