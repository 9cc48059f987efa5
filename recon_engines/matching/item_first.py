"""
recon_engines.matching.item_first -- Line-item-first matching phase.

Responsibility:
    For documents with open line items, allocate transactions to single
    items (closest compatible amount) or to two- and three-item bundles
    that net a credit line against debit lines.  Each document with at
    least one allocation yields one one_to_many decision that records
    which items were settled.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    Second matching phase of ``recon_engines.matching.pipeline`` (after
    the hard-key prepass).

Invariants enforced:
    - An item is open when it is not linked and has a positive open
      amount (``open_amount``, else ``amount_abs``, else the absolute
      signed amount).  Settled items (open amount 0) are never reused.
    - A transaction is allocated at most once across all documents.
    - Candidate transactions share the tenant, support the document
      currency, have a compatible direction, fall inside the document
      window and are not vendor-incompatible.  They are visited in
      (booking date, amount, id) order.
    - Bundles are searched over the first 20 open items and must contain
      a negative (credit) item.
    - Coverage is ``matched + tolerance >= target``; covered documents
      become final (0.97), others partial (0.9) with ``open_amount_after``.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from itertools import combinations
from typing import Any

from recon_config.schema import MatchingConfig
from recon_engines.matching.amounts import (
    amount_compatible,
    amount_direction_ok,
    amount_tolerance,
    doc_target_amount,
    round_cents,
    sum_amounts,
    tx_amount_for_currency,
)
from recon_engines.matching.matchers import PARTIAL_PAYMENT_SUM, group_id_for
from recon_engines.matching.types import (
    Document,
    LineItem,
    LinkState,
    MatchDecision,
    MatchState,
    RelationType,
    Transaction,
    tenant_key,
)
from recon_engines.matching.vendor import vendor_not_mismatched
from recon_engines.matching.windowing import calc_window
from recon_engines.tracer import traced_engine
from recon_kernel.logging_config import get_logger

logger = get_logger("engines.item_first")

ITEM_FIRST_LINE_ITEM_MATCH = "ITEM_FIRST_LINE_ITEM_MATCH"
ITEM_FIRST_BUNDLE_MATCH = "ITEM_FIRST_BUNDLE_MATCH"
ITEM_FIRST_FINAL_COVERAGE = "ITEM_FIRST_FINAL_COVERAGE"

BUNDLE_SEARCH_LIMIT = 20

_ZERO = Decimal("0")


@dataclass(frozen=True)
class OpenItem:
    key: str
    id: str | None
    line_index: int
    description: str | None
    open_amount: Decimal
    signed_amount: Decimal

    @property
    def ref(self) -> str:
        return self.id or f"line:{self.line_index}"


@dataclass(frozen=True)
class ItemAllocation:
    tx: Transaction
    items: tuple[OpenItem, ...]
    via_bundle: bool
    matched_amount: Decimal


@dataclass(frozen=True)
class ItemFirstPhaseResult:
    decisions: tuple[MatchDecision, ...]
    remaining_docs: tuple[Document, ...]
    remaining_txs: tuple[Transaction, ...]


# ---------------------------------------------------------------------------
# Items
# ---------------------------------------------------------------------------


def _item_open_amount(item: LineItem) -> Decimal | None:
    if item.link_state == LinkState.LINKED:
        return None
    if item.open_amount is not None:
        value = round_cents(abs(item.open_amount))
    elif item.amount_abs is not None:
        value = round_cents(abs(item.amount_abs))
    elif item.amount_signed is not None:
        value = round_cents(abs(item.amount_signed))
    else:
        return None
    return value if value > _ZERO else None


def to_open_items(items: Sequence[LineItem]) -> tuple[OpenItem, ...]:
    out: list[OpenItem] = []
    for index, item in enumerate(items):
        open_amount = _item_open_amount(item)
        if open_amount is None:
            continue
        signed = round_cents(item.amount_signed) if item.amount_signed is not None else open_amount
        line_index = item.line_index if item.line_index is not None else index
        out.append(OpenItem(
            key=f"id:{item.id}" if item.id else f"line:{line_index}",
            id=item.id,
            line_index=line_index,
            description=item.description,
            open_amount=open_amount,
            signed_amount=signed,
        ))
    return tuple(out)


# ---------------------------------------------------------------------------
# Allocation
# ---------------------------------------------------------------------------


def is_tx_candidate_for_doc(doc: Document, tx: Transaction, cfg: MatchingConfig) -> bool:
    if tenant_key(doc.tenant_id) != tenant_key(tx.tenant_id):
        return False
    if tx_amount_for_currency(tx, doc.currency) is None:
        return False
    if not amount_direction_ok(doc, tx):
        return False
    if not calc_window(doc, cfg).contains(tx.booking_date):
        return False
    return vendor_not_mismatched(doc, tx)


def find_best_direct_item(
    target: Decimal,
    items: Sequence[OpenItem],
    cfg: MatchingConfig,
) -> OpenItem | None:
    best: OpenItem | None = None
    best_diff: Decimal | None = None
    for item in items:
        if not amount_compatible(item.open_amount, target, cfg):
            continue
        diff = abs(item.open_amount - target)
        if best_diff is None or diff < best_diff:
            best, best_diff = item, diff
    return best


def find_best_bundle(
    target: Decimal,
    items: Sequence[OpenItem],
    cfg: MatchingConfig,
) -> tuple[OpenItem, ...] | None:
    """Best pair, then best triple, netting a credit item against debits."""
    source = items[:BUNDLE_SEARCH_LIMIT]
    best: tuple[OpenItem, ...] | None = None
    best_diff: Decimal | None = None
    for size in (2, 3):
        for bundle in combinations(source, size):
            if not any(item.signed_amount < _ZERO for item in bundle):
                continue
            net = round_cents(abs(sum_amounts(item.signed_amount for item in bundle)))
            if not amount_compatible(net, target, cfg):
                continue
            diff = abs(net - target)
            if best_diff is None or diff < best_diff:
                best, best_diff = bundle, diff
    return best


def allocate_txs_to_items(
    open_items: Sequence[OpenItem],
    txs: Sequence[tuple[Transaction, Decimal]],
    cfg: MatchingConfig,
) -> tuple[ItemAllocation, ...]:
    taken: set[str] = set()
    allocations: list[ItemAllocation] = []
    for tx, amount in txs:
        remaining = [item for item in open_items if item.key not in taken]
        if not remaining:
            break
        target = round_cents(amount)

        direct = find_best_direct_item(target, remaining, cfg)
        if direct is not None:
            taken.add(direct.key)
            allocations.append(ItemAllocation(tx=tx, items=(direct,), via_bundle=False, matched_amount=target))
            continue

        bundle = find_best_bundle(target, remaining, cfg)
        if bundle is None:
            continue
        taken.update(item.key for item in bundle)
        allocations.append(ItemAllocation(tx=tx, items=bundle, via_bundle=True, matched_amount=target))
    return tuple(allocations)


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------


def is_covered_amount(matched: Decimal, target: Decimal, cfg: MatchingConfig) -> bool:
    if amount_compatible(matched, target, cfg):
        return True
    return matched + amount_tolerance(matched, target, cfg) >= target


def _unique_items(allocations: Sequence[ItemAllocation]) -> list[OpenItem]:
    seen: set[str] = set()
    out: list[OpenItem] = []
    for allocation in allocations:
        for item in allocation.items:
            if item.key in seen:
                continue
            seen.add(item.key)
            out.append(item)
    return out


def build_item_first_decision(
    doc: Document,
    allocations: Sequence[ItemAllocation],
    cfg: MatchingConfig,
) -> MatchDecision:
    tx_ids = tuple(allocation.tx.id for allocation in allocations)
    matched_sum = round_cents(sum_amounts(a.matched_amount for a in allocations))
    target = round_cents(doc_target_amount(doc) or _ZERO)
    covered = is_covered_amount(matched_sum, target, cfg)
    open_after = _ZERO if covered else round_cents(max(_ZERO, target - matched_sum))

    items = _unique_items(allocations)
    via_bundle = any(allocation.via_bundle for allocation in allocations)
    reasons = [
        ITEM_FIRST_BUNDLE_MATCH if via_bundle else ITEM_FIRST_LINE_ITEM_MATCH,
        ITEM_FIRST_FINAL_COVERAGE if covered else PARTIAL_PAYMENT_SUM,
    ]
    inputs: dict[str, Any] = {
        "tenant_id": tenant_key(doc.tenant_id),
        "target_amount": target,
        "matched_item_sum": matched_sum,
        "matched_item_ids": [item.ref for item in items],
        "matched_item_refs": [{"id": item.id, "line_index": item.line_index} for item in items],
        "matched_via_bundle": via_bundle,
        "matched_item_links": [
            {
                "tx_id": allocation.tx.id,
                "item_ids": [item.ref for item in allocation.items],
                "via_bundle": allocation.via_bundle,
            }
            for allocation in allocations
        ],
        "open_amount_before": target,
        "open_amount_after": open_after,
    }
    return MatchDecision(
        state=MatchState.FINAL if covered else MatchState.PARTIAL,
        relation_type=RelationType.ONE_TO_MANY,
        tx_ids=tx_ids,
        doc_ids=(doc.id,),
        confidence=Decimal("0.97") if covered else Decimal("0.9"),
        reason_codes=tuple(reasons),
        inputs=inputs,
        match_group_id=group_id_for(tx_ids, (doc.id,)),
        open_amount_after=open_after,
    )


def _tx_order(entry: tuple[Transaction, Decimal]) -> tuple[date, Decimal, str]:
    tx, amount = entry
    return (tx.booking_date or date.max, amount, tx.id)


@traced_engine("item_first", "1.0", fingerprint_fields=("docs", "txs"))
def run_item_first_phase(
    docs: Sequence[Document],
    txs: Sequence[Transaction],
    cfg: MatchingConfig,
) -> ItemFirstPhaseResult:
    decisions: list[MatchDecision] = []
    consumed: set[str] = set()
    handled: set[str] = set()

    for doc in docs:
        open_items = to_open_items(doc.items)
        if not open_items:
            continue

        candidates: list[tuple[Transaction, Decimal]] = []
        for tx in txs:
            if tx.id in consumed or not is_tx_candidate_for_doc(doc, tx, cfg):
                continue
            amount = tx_amount_for_currency(tx, doc.currency)
            if amount is not None:
                candidates.append((tx, amount))
        if not candidates:
            continue
        candidates.sort(key=_tx_order)

        allocations = allocate_txs_to_items(open_items, candidates, cfg)
        if not allocations:
            continue
        consumed.update(allocation.tx.id for allocation in allocations)
        decisions.append(build_item_first_decision(doc, allocations, cfg))
        handled.add(doc.id)

    logger.info(
        "item_first_completed",
        extra={"decision_count": len(decisions), "consumed_tx_count": len(consumed)},
    )
    return ItemFirstPhaseResult(
        decisions=tuple(decisions),
        remaining_docs=tuple(doc for doc in docs if doc.id not in handled),
        remaining_txs=tuple(tx for tx in txs if tx.id not in consumed),
    )
