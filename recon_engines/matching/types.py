"""
recon_engines.matching.types -- Immutable value objects of the reconciliation engine.

Responsibility:
    Define the document/transaction snapshot the engine reads, the
    per-pair feature vectors, the typed relations between candidates, the
    ``MatchDecision`` the cascades produce and the lifecycle results.

Architecture position:
    Engines -- pure value objects, zero I/O, no engine logic.

Invariants enforced:
    - All objects are frozen; collections are tuples.  A ``DocCandidate``
      is never mutated after candidate generation.
    - Monetary amounts are ``Decimal``.  Dates are ``date | None``;
      ``None`` means "unknown" and widens windows instead of failing.
    - ``MatchDecision`` ids are ordered-unique (first occurrence wins)
      and confidence is clamped to [0, 1].
    - Decisions never mutate source entities; mutation happens only in
      persistence projection.
"""

from __future__ import annotations

import math
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field, replace
from datetime import date, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Union

UNKNOWN_TENANT = "__unknown__"


def tenant_key(value: str | None) -> str:
    """Normalized tenant id; missing or blank tenants form their own bucket."""
    if not value:
        return UNKNOWN_TENANT
    trimmed = value.strip()
    return trimmed or UNKNOWN_TENANT


def ordered_unique(values: Any) -> tuple[str, ...]:
    seen: set[str] = set()
    out: list[str] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        out.append(value)
    return tuple(out)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class LinkState(str, Enum):
    """Reconciliation state of a document, line item or transaction."""

    UNLINKED = "unlinked"
    LINKED = "linked"
    PARTIAL = "partial"
    SUGGESTED = "suggested"


class MatchState(str, Enum):
    """Outcome state of a match decision."""

    FINAL = "final"
    SUGGESTED = "suggested"
    AMBIGUOUS = "ambiguous"
    PARTIAL = "partial"


class RelationType(str, Enum):
    """Cardinality of a relation between documents and transactions."""

    ONE_TO_ONE = "one_to_one"
    ONE_TO_MANY = "one_to_many"  # one document, several transactions
    MANY_TO_ONE = "many_to_one"  # several documents, one transaction
    MANY_TO_MANY = "many_to_many"


class Direction(str, Enum):
    """Money flow of a bank transaction."""

    IN = "in"
    OUT = "out"


class MatchedBy(str, Enum):
    SYSTEM = "system"
    USER = "user"


class DocType(str, Enum):
    INVOICE = "invoice"
    RECEIPT = "receipt"
    CREDIT_NOTE = "credit_note"
    UNKNOWN = "unknown"


class PaymentHint(str, Enum):
    CASH = "cash"
    EC = "ec"
    CARD = "card"
    TRANSFER = "transfer"
    UNKNOWN = "unknown"


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LineItem:
    """Single position of a document; matched individually by the item-first phase."""

    id: str | None = None
    line_index: int | None = None
    description: str | None = None
    amount_signed: Decimal | None = None
    amount_abs: Decimal | None = None
    currency: str | None = None
    link_state: LinkState = LinkState.UNLINKED
    open_amount: Decimal | None = None


@dataclass(frozen=True)
class Document:
    """
    Accounting document (invoice, receipt, contract).

    ``amount`` is signed: non-negative documents are settled by outgoing
    transactions, negative ones (credit notes, receivables booked as
    negative) by incoming transactions.  ``open_amount``, when present, is
    the authoritative remaining claim.
    """

    id: str
    tenant_id: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    link_state: LinkState = LinkState.UNLINKED
    invoice_date: date | None = None
    due_date: date | None = None
    document_date: date | None = None
    doc_type: DocType = DocType.UNKNOWN
    payment_hint: PaymentHint = PaymentHint.UNKNOWN
    open_amount: Decimal | None = None
    items: tuple[LineItem, ...] = ()
    iban: str | None = None
    invoice_no: str | None = None
    e2e_id: str | None = None
    vendor_raw: str | None = None
    vendor_norm: str | None = None
    buyer_raw: str | None = None
    buyer_norm: str | None = None
    text_raw: str | None = None
    text_norm: str | None = None
    amount_candidates: tuple[Decimal, ...] = ()
    duplicate_key: str | None = None
    has_required_fields: bool | None = None
    private_hint: bool = False
    split_hint: bool = False

    @property
    def issue_date(self) -> date | None:
        """Invoice date, falling back to the generic document date."""
        return self.invoice_date or self.document_date


@dataclass(frozen=True)
class Transaction:
    """
    Bank transaction.

    ``amount`` is unsigned; ``direction`` carries the flow.  A transaction
    may carry a second (foreign) currency amount recorded before FX
    conversion; amount lookups consider both sides.
    """

    id: str
    tenant_id: str | None = None
    amount: Decimal | None = None
    direction: Direction = Direction.OUT
    currency: str | None = None
    foreign_amount: Decimal | None = None
    foreign_currency: str | None = None
    exchange_rate: Decimal | None = None
    booking_date: date | None = None
    value_date: date | None = None
    link_state: LinkState = LinkState.UNLINKED
    iban: str | None = None
    reference: str | None = None
    e2e_id: str | None = None
    counterparty_name: str | None = None
    vendor_raw: str | None = None
    vendor_norm: str | None = None
    text_raw: str | None = None
    text_norm: str | None = None
    private_hint: bool = False
    is_recurring_hint: bool = False

    @property
    def effective_date(self) -> date | None:
        return self.booking_date or self.value_date


# ---------------------------------------------------------------------------
# Candidates
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FeatureVector:
    """
    Pairwise signals between one document and one transaction.

    ``days_delta`` is ``math.inf`` when the document has no anchor date or
    the transaction has no booking date.
    """

    amount_delta: Decimal | None
    days_delta: float = math.inf
    iban_equal: bool = False
    invoice_no_equal: bool = False
    e2e_equal: bool = False
    partial_keywords: bool = False
    in_window: bool = True
    out_of_window_override: bool = False

    @property
    def identity_match(self) -> bool:
        return self.iban_equal or self.invoice_no_equal or self.e2e_equal


@dataclass(frozen=True)
class DocCandidate:
    document: Document
    features: FeatureVector


@dataclass(frozen=True)
class TxCandidate:
    transaction: Transaction
    features: FeatureVector


@dataclass(frozen=True)
class DateWindow:
    """Inclusive booking-date window; ``None`` bounds are open."""

    start: date | None = None
    end: date | None = None

    @property
    def bounded(self) -> bool:
        return self.start is not None or self.end is not None

    def contains(self, value: date | None) -> bool:
        if value is None:
            return False
        if self.start is not None and value < self.start:
            return False
        if self.end is not None and value > self.end:
            return False
        return True


@dataclass(frozen=True)
class AmountMatch:
    """A document amount candidate that is compatible with a target."""

    matched_amount: Decimal
    via_amount_candidate: bool


# ---------------------------------------------------------------------------
# Relations
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OneToOneRelation:
    kind: ClassVar[RelationType] = RelationType.ONE_TO_ONE

    tx: Transaction
    candidate: DocCandidate


@dataclass(frozen=True)
class ManyToOneRelation:
    """Several documents that may jointly be settled by one transaction."""

    kind: ClassVar[RelationType] = RelationType.MANY_TO_ONE

    tx: Transaction
    candidates: tuple[DocCandidate, ...]


@dataclass(frozen=True)
class OneToManyRelation:
    """One document that may be settled by several (partial) transactions."""

    kind: ClassVar[RelationType] = RelationType.ONE_TO_MANY

    document: Document
    txs: tuple[Transaction, ...]


@dataclass(frozen=True)
class ClusterHypothesis:
    """Diagnostic description of a many-to-many cluster."""

    key: str
    size_docs: int
    size_txs: int

    def as_dict(self) -> dict[str, Any]:
        return {"key": self.key, "size_docs": self.size_docs, "size_txs": self.size_txs}


@dataclass(frozen=True)
class ManyToManyRelation:
    kind: ClassVar[RelationType] = RelationType.MANY_TO_MANY

    txs: tuple[Transaction, ...]
    documents: tuple[Document, ...]
    hypothesis: ClusterHypothesis


Relation = Union[OneToOneRelation, ManyToOneRelation, OneToManyRelation, ManyToManyRelation]


@dataclass(frozen=True)
class RelationSet:
    """All relations detected for one seed entity, grouped by kind."""

    one_to_one: tuple[OneToOneRelation, ...] = ()
    many_to_one: tuple[ManyToOneRelation, ...] = ()
    one_to_many: tuple[OneToManyRelation, ...] = ()
    many_to_many: tuple[ManyToManyRelation, ...] = ()

    def __iter__(self) -> Iterator[Relation]:
        yield from self.one_to_one
        yield from self.many_to_one
        yield from self.one_to_many
        yield from self.many_to_many

    def __len__(self) -> int:
        return (
            len(self.one_to_one)
            + len(self.many_to_one)
            + len(self.one_to_many)
            + len(self.many_to_many)
        )

    def limited(self, max_per_kind: int | None) -> RelationSet:
        """Keep at most ``max_per_kind`` relations of each kind."""
        if not max_per_kind or max_per_kind <= 0:
            return self
        return RelationSet(
            one_to_one=self.one_to_one[:max_per_kind],
            many_to_one=self.many_to_one[:max_per_kind],
            one_to_many=self.one_to_many[:max_per_kind],
            many_to_many=self.many_to_many[:max_per_kind],
        )


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------

_ZERO = Decimal("0")
_ONE = Decimal("1")


def clamp_confidence(value: Decimal | int | float | str) -> Decimal:
    """Clamp a confidence into [0, 1]; non-finite values become 0."""
    confidence = value if isinstance(value, Decimal) else Decimal(str(value))
    if not confidence.is_finite():
        return _ZERO
    return max(_ZERO, min(_ONE, confidence))


@dataclass(frozen=True)
class MatchDecision:
    """
    Outcome of one rule cascade.

    ``inputs`` is a diagnostics mapping, not contract.  Downstream logic
    only reads ``tenant_id``, ``matched_item_refs`` and ``solutions``.
    """

    state: MatchState
    relation_type: RelationType
    tx_ids: tuple[str, ...]
    doc_ids: tuple[str, ...]
    confidence: Decimal
    reason_codes: tuple[str, ...]
    inputs: Mapping[str, Any] = field(default_factory=dict)
    matched_by: MatchedBy = MatchedBy.SYSTEM
    match_group_id: str | None = None
    link_state_override: LinkState | None = None
    open_amount_after: Decimal | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "tx_ids", ordered_unique(self.tx_ids))
        object.__setattr__(self, "doc_ids", ordered_unique(self.doc_ids))
        object.__setattr__(self, "reason_codes", ordered_unique(self.reason_codes))
        object.__setattr__(self, "confidence", clamp_confidence(self.confidence))
        object.__setattr__(self, "inputs", dict(self.inputs))

    @property
    def tenant_id(self) -> str:
        return str(self.inputs.get("tenant_id") or UNKNOWN_TENANT)

    @property
    def is_binding(self) -> bool:
        """final and partial decisions mutate link state when applied."""
        return self.state in (MatchState.FINAL, MatchState.PARTIAL)

    def with_inputs(self, **extra: Any) -> MatchDecision:
        return replace(self, inputs={**self.inputs, **extra})


# ---------------------------------------------------------------------------
# Lifecycle results
# ---------------------------------------------------------------------------


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ACTION = "action"


class NextAction(str, Enum):
    NONE = "none"
    INBOX_TASK = "inbox_task"
    ASK_USER = "ask_user"
    START_SPLIT_UI = "start_split_ui"
    START_EIGENBELEG_FLOW = "start_eigenbeleg_flow"
    REUPLOAD_REQUEST = "reupload_request"


class DocLifecycleKind(str, Enum):
    DOC_DUPLICATE = "doc_duplicate"
    DOC_ERROR = "doc_error"
    AWAITING_TX = "awaiting_tx"
    OVERDUE = "overdue"
    EIGENBELEG = "eigenbeleg"
    PRIVATE = "private"
    SPLIT_REQUIRED = "split_required"


class TxLifecycleKind(str, Enum):
    TECHNICAL_TX = "technical_tx"
    PRIVATE_TX = "private_tx"
    FEE_TX = "fee_tx"
    SUBSCRIPTION_TX = "subscription_tx"
    PREPAYMENT_TX = "prepayment_tx"
    NEEDS_EIGENBELEG = "needs_eigenbeleg"
    MISSING_DOC = "missing_doc"


class Cadence(str, Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


@dataclass(frozen=True)
class RematchHint:
    """When to look for the counterpart again, relative to an anchor date."""

    anchor_date: date
    window_before_days: int
    window_after_days: int

    @property
    def window(self) -> DateWindow:
        return DateWindow(
            start=self.anchor_date - timedelta(days=self.window_before_days),
            end=self.anchor_date + timedelta(days=self.window_after_days),
        )


@dataclass(frozen=True)
class RuleSuggestion:
    """Automation rule proposed to the user (e.g. a subscription rule)."""

    type: str
    key: str
    cadence: Cadence | None = None


@dataclass(frozen=True)
class DocLifecycleResult:
    doc_id: str
    kind: DocLifecycleKind
    severity: Severity
    next_action: NextAction
    explanation_codes: tuple[str, ...]
    rematch_hint: RematchHint | None = None


@dataclass(frozen=True)
class TxLifecycleResult:
    tx_id: str
    kind: TxLifecycleKind
    severity: Severity
    next_action: NextAction
    explanation_codes: tuple[str, ...]
    rematch_hint: RematchHint | None = None
    rule_suggestion: RuleSuggestion | None = None


@dataclass(frozen=True)
class TxHistoryOptions:
    """Query options for loading a tenant's transaction history."""

    lookback_days: int
    limit: int
    vendor_key: str | None = None
