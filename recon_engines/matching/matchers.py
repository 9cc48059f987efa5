"""
recon_engines.matching.matchers -- Rule cascades per relation type.

Responsibility:
    Turn one relation into at most one ``MatchDecision`` by evaluating an
    ordered tuple of ``MatchRule`` objects.  Each rule is a pure
    predicate-to-decision function; the first rule that produces a
    decision wins.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    Consumes relations from ``recon_engines.matching.relations``;
    decisions flow to ``resolver`` and ``projection``.

Invariants enforced:
    - Rule order is data (``ONE_TO_ONE_RULES``) and is tested on its own.
    - Hard keys (IBAN, end-to-end id, invoice number + date) need a
      resolvable amount and no partial-payment wording.  IBAN and
      end-to-end keys also need a compatible money direction.
    - many_to_one distinguishes 0 / 1 / >1 subset-sum solutions.
    - many_to_many is either an exact balance (0.9) or an ambiguous
      cluster for review (0.4).
    - Match-group ids are deterministic for a set of ids.

Failure modes:
    None.  "No decision" is ``None``; ambiguity is an ``ambiguous``
    decision, never an exception.
"""

from __future__ import annotations

import math
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from recon_config.schema import MatchingConfig
from recon_engines.matching.amounts import (
    amount_compatible,
    amount_direction_ok,
    doc_target_amount,
    resolve_doc_amount_match,
    round_cents,
    sum_amounts,
    tx_amount_for_currency,
)
from recon_engines.matching.candidates import pair_vendor_compatible
from recon_engines.matching.canonicalize import contains_keyword, join_text
from recon_engines.matching.subset_sum import subset_sum_docs_to_amount
from recon_engines.matching.types import (
    AmountMatch,
    DocCandidate,
    Document,
    LinkState,
    ManyToManyRelation,
    ManyToOneRelation,
    MatchDecision,
    MatchState,
    OneToManyRelation,
    OneToOneRelation,
    Relation,
    RelationType,
    Transaction,
)
from recon_engines.matching.windowing import date_matches
from recon_kernel.logging_config import get_logger
from recon_kernel.utils.hashing import hash_id_sets

logger = get_logger("engines.matchers")

HARD_IBAN_AMOUNT = "HARD_IBAN_AMOUNT"
HARD_INVOICE_NO = "HARD_INVOICE_NO"
HARD_E2E_AMOUNT = "HARD_E2E_AMOUNT"
LINE_ITEM_NET_MATCH = "LINE_ITEM_NET_MATCH"
SUBSCRIPTION_REUSE_LINKED_DOC = "SUBSCRIPTION_REUSE_LINKED_DOC"
SOFT_INVOICE_NO_AMOUNT_OUT_OF_WINDOW = "SOFT_INVOICE_NO_AMOUNT_OUT_OF_WINDOW"
SOFT_AMOUNT_DATE = "SOFT_AMOUNT_DATE"
SOFT_AMOUNT_VENDOR_OUT_OF_WINDOW = "SOFT_AMOUNT_VENDOR_OUT_OF_WINDOW"
SCORE_ONLY = "SCORE_ONLY"
SUBSET_SUM_EXACT = "SUBSET_SUM_EXACT"
AMBIGUOUS_MULTIPLE_SOLUTIONS = "AMBIGUOUS_MULTIPLE_SOLUTIONS"
PARTIAL_PAYMENT_SUM = "PARTIAL_PAYMENT_SUM"
MANY_TO_MANY_EXACT = "MANY_TO_MANY_EXACT"
CLUSTER_NN_WIZARD = "CLUSTER_NN_WIZARD"

_HARD_REASONS = {
    "IBAN": HARD_IBAN_AMOUNT,
    "E2E": HARD_E2E_AMOUNT,
    "INVOICE_NO": HARD_INVOICE_NO,
}

_ZERO = Decimal("0")
_ONE = Decimal("1")

# Score weights for the soft one-to-one fallback
_W_AMOUNT = Decimal("0.5")
_W_DATE = Decimal("0.2")
_W_VENDOR = Decimal("0.2")
_W_IDENTITY = Decimal("0.1")
_PARTIAL_PENALTY = Decimal("0.7")


def group_id_for(tx_ids: Iterable[str], doc_ids: Iterable[str]) -> str:
    """Deterministic match-group id for a set of transaction and document ids."""
    return "grp_" + hash_id_sets(tuple(tx_ids), tuple(doc_ids))[:16]


# ---------------------------------------------------------------------------
# Cascade machinery
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MatchRule:
    """One named step of a cascade: ``apply(context) -> MatchDecision | None``."""

    name: str
    apply: Callable[[Any], MatchDecision | None]


def run_cascade(rules: Sequence[MatchRule], context: Any) -> MatchDecision | None:
    """Evaluate rules in order; the first decision wins."""
    for rule in rules:
        decision = rule.apply(context)
        if decision is not None:
            logger.debug(
                "match_rule_fired",
                extra={"rule": rule.name, "state": decision.state.value},
            )
            return decision
    return None


# ---------------------------------------------------------------------------
# one_to_one
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OneToOneContext:
    """Signals of one document/transaction pair, computed once per cascade."""

    tx: Transaction
    candidate: DocCandidate
    cfg: MatchingConfig
    tx_amount: Decimal | None
    amount_match: AmountMatch | None
    vendor_ok: bool
    date_ok: bool
    direction_ok: bool
    recurring: bool

    @property
    def doc(self) -> Document:
        return self.candidate.document

    @property
    def partial(self) -> bool:
        return self.candidate.features.partial_keywords


def build_one_to_one_context(relation: OneToOneRelation, cfg: MatchingConfig) -> OneToOneContext:
    tx = relation.tx
    doc = relation.candidate.document
    tx_amount = tx_amount_for_currency(tx, doc.currency)
    recurring = tx.is_recurring_hint or contains_keyword(
        join_text(tx.text_norm, tx.reference, tx.vendor_norm), cfg.keywords.subscription
    )
    return OneToOneContext(
        tx=tx,
        candidate=relation.candidate,
        cfg=cfg,
        tx_amount=tx_amount,
        amount_match=resolve_doc_amount_match(doc, tx_amount, cfg),
        vendor_ok=pair_vendor_compatible(doc, tx),
        date_ok=date_matches(doc, tx, cfg),
        direction_ok=amount_direction_ok(doc, tx),
        recurring=recurring,
    )


def _finite_days(value: float) -> float | None:
    return None if math.isinf(value) or math.isnan(value) else value


def _pair_inputs(ctx: OneToOneContext, **extra: Any) -> dict[str, Any]:
    features = ctx.candidate.features
    inputs: dict[str, Any] = {
        "doc_amount": ctx.doc.amount,
        "tx_amount": ctx.tx_amount,
        "currency": ctx.doc.currency,
        "amount_delta": features.amount_delta,
        "days_delta": _finite_days(features.days_delta),
    }
    inputs.update(extra)
    return inputs


def _one_to_one(
    ctx: OneToOneContext,
    state: MatchState,
    confidence: Decimal,
    reasons: Sequence[str],
    inputs: dict[str, Any],
) -> MatchDecision:
    return MatchDecision(
        state=state,
        relation_type=RelationType.ONE_TO_ONE,
        tx_ids=(ctx.tx.id,),
        doc_ids=(ctx.doc.id,),
        confidence=confidence,
        reason_codes=tuple(reasons),
        inputs=inputs,
    )


def hard_key(ctx: OneToOneContext) -> str | None:
    """IBAN, E2E or INVOICE_NO when an identity signal carries the pair."""
    if ctx.amount_match is None:
        return None
    features = ctx.candidate.features
    if features.iban_equal and ctx.direction_ok:
        return "IBAN"
    if features.e2e_equal and ctx.direction_ok:
        return "E2E"
    if features.invoice_no_equal and ctx.date_ok:
        return "INVOICE_NO"
    return None


def _rule_hard_key(ctx: OneToOneContext) -> MatchDecision | None:
    if ctx.partial:
        return None
    key = hard_key(ctx)
    if key is None:
        return None
    reasons = [_HARD_REASONS[key]]
    if ctx.amount_match is not None and ctx.amount_match.via_amount_candidate:
        reasons.append(LINE_ITEM_NET_MATCH)
    return _one_to_one(ctx, MatchState.FINAL, _ONE, reasons, _pair_inputs(ctx, hard_key=key))


def _rule_recurring_linked_doc(ctx: OneToOneContext) -> MatchDecision | None:
    if not ctx.recurring or ctx.doc.link_state != LinkState.LINKED:
        return None
    if not ctx.vendor_ok or ctx.amount_match is None:
        return None
    return _one_to_one(
        ctx,
        MatchState.FINAL,
        Decimal("0.96"),
        [SUBSCRIPTION_REUSE_LINKED_DOC],
        _pair_inputs(ctx, recurring=True, matched_amount=ctx.amount_match.matched_amount),
    )


def _rule_amount_candidate(ctx: OneToOneContext) -> MatchDecision | None:
    match = ctx.amount_match
    if match is None or not match.via_amount_candidate:
        return None
    if not ctx.candidate.features.in_window or not ctx.vendor_ok or ctx.partial:
        return None
    return _one_to_one(
        ctx,
        MatchState.FINAL,
        Decimal("0.98"),
        [LINE_ITEM_NET_MATCH],
        _pair_inputs(
            ctx,
            matched_via_amount_candidate=True,
            matched_amount=match.matched_amount,
        ),
    )


def _rule_invoice_no_out_of_window(ctx: OneToOneContext) -> MatchDecision | None:
    if ctx.amount_match is None or ctx.partial:
        return None
    if not ctx.candidate.features.invoice_no_equal or ctx.date_ok:
        return None
    return _one_to_one(
        ctx,
        MatchState.SUGGESTED,
        Decimal("0.8"),
        [SOFT_INVOICE_NO_AMOUNT_OUT_OF_WINDOW],
        _pair_inputs(ctx),
    )


def score_one_to_one(
    candidate: DocCandidate,
    tx: Transaction,
    cfg: MatchingConfig,
) -> Decimal:
    """Weighted soft score: amount 0.5, date 0.2, vendor 0.2, identity 0.1."""
    doc = candidate.document
    features = candidate.features
    score = _ZERO
    if resolve_doc_amount_match(doc, tx_amount_for_currency(tx, doc.currency), cfg) is not None:
        score += _W_AMOUNT
    if features.days_delta <= cfg.date_window_days:
        score += _W_DATE
    if pair_vendor_compatible(doc, tx):
        score += _W_VENDOR
    if features.identity_match:
        score += _W_IDENTITY
    if features.partial_keywords:
        score *= _PARTIAL_PENALTY
    return max(_ZERO, min(_ONE, score))


def _rule_score(ctx: OneToOneContext) -> MatchDecision | None:
    score = score_one_to_one(ctx.candidate, ctx.tx, ctx.cfg)
    if score < ctx.cfg.scoring.min_suggest_score:
        return None
    amount_ok = ctx.amount_match is not None
    in_date = ctx.candidate.features.days_delta <= ctx.cfg.date_window_days
    if amount_ok and in_date:
        reason = SOFT_AMOUNT_DATE
    elif amount_ok and ctx.vendor_ok:
        reason = SOFT_AMOUNT_VENDOR_OUT_OF_WINDOW
    else:
        reason = SCORE_ONLY
    return _one_to_one(ctx, MatchState.SUGGESTED, score, [reason], _pair_inputs(ctx, score=score))


ONE_TO_ONE_RULES: tuple[MatchRule, ...] = (
    MatchRule("hard_key", _rule_hard_key),
    MatchRule("recurring_linked_doc", _rule_recurring_linked_doc),
    MatchRule("amount_candidate", _rule_amount_candidate),
    MatchRule("invoice_no_out_of_window", _rule_invoice_no_out_of_window),
    MatchRule("score", _rule_score),
)


def match_one_to_one(relation: OneToOneRelation, cfg: MatchingConfig) -> MatchDecision | None:
    return run_cascade(ONE_TO_ONE_RULES, build_one_to_one_context(relation, cfg))


# ---------------------------------------------------------------------------
# many_to_one
# ---------------------------------------------------------------------------


def match_many_to_one(relation: ManyToOneRelation, cfg: MatchingConfig) -> MatchDecision | None:
    """Several documents paid by one transaction, solved by bounded subset-sum."""
    tx = relation.tx
    candidates = relation.candidates
    if len(candidates) < 2:
        return None
    currency = candidates[0].document.currency
    candidates = tuple(c for c in candidates if c.document.currency == currency)
    if len(candidates) < 2:
        return None

    if len(candidates) > cfg.subset_sum.max_candidates:
        return MatchDecision(
            state=MatchState.AMBIGUOUS,
            relation_type=RelationType.MANY_TO_ONE,
            tx_ids=(tx.id,),
            doc_ids=(),
            confidence=Decimal("0.5"),
            reason_codes=(AMBIGUOUS_MULTIPLE_SOLUTIONS,),
            inputs={"reason": "too_many_candidates", "count": len(candidates)},
        )

    target = tx_amount_for_currency(tx, currency)
    if target is None:
        return None
    solutions = subset_sum_docs_to_amount(candidates, target, cfg)
    if not solutions:
        return None

    if len(solutions) > 1:
        return MatchDecision(
            state=MatchState.AMBIGUOUS,
            relation_type=RelationType.MANY_TO_ONE,
            tx_ids=(tx.id,),
            doc_ids=(),
            confidence=Decimal("0.5"),
            reason_codes=(AMBIGUOUS_MULTIPLE_SOLUTIONS,),
            inputs={
                "solutions": [[c.document.id for c in subset] for subset in solutions],
                "candidate_count": len(candidates),
            },
        )

    subset = solutions[0]
    doc_ids = tuple(c.document.id for c in subset)
    partial_hint = any(c.features.partial_keywords for c in subset)
    total = sum_amounts(doc_target_amount(c.document) for c in subset)
    return MatchDecision(
        state=MatchState.SUGGESTED if partial_hint else MatchState.FINAL,
        relation_type=RelationType.MANY_TO_ONE,
        tx_ids=(tx.id,),
        doc_ids=doc_ids,
        confidence=Decimal("0.8") if partial_hint else _ONE,
        reason_codes=(SUBSET_SUM_EXACT,),
        inputs={"count": len(subset), "sum": total, "tx_amount": target},
        match_group_id=group_id_for((tx.id,), doc_ids),
    )


# ---------------------------------------------------------------------------
# one_to_many
# ---------------------------------------------------------------------------


def _has_batch_keyword(tx: Transaction, cfg: MatchingConfig) -> bool:
    return contains_keyword(
        join_text(tx.text_norm, tx.reference, tx.vendor_norm), cfg.keywords.batch_payment
    )


def match_one_to_many(relation: OneToManyRelation, cfg: MatchingConfig) -> MatchDecision | None:
    """One document settled by the sum of several transactions."""
    doc = relation.document
    target = doc_target_amount(doc)
    if target is None or not relation.txs:
        return None

    amounts = [tx_amount_for_currency(tx, doc.currency) for tx in relation.txs]
    if any(amount is None for amount in amounts):
        return None
    total = sum_amounts(amounts)

    tx_ids = tuple(tx.id for tx in relation.txs)
    doc_ids = (doc.id,)
    group_id = group_id_for(tx_ids, doc_ids)
    inputs: dict[str, Any] = {"sum": total, "tx_count": len(tx_ids), "target_amount": target}

    if amount_compatible(total, target, cfg):
        batch_hint = any(_has_batch_keyword(tx, cfg) for tx in relation.txs)
        reasons = [PARTIAL_PAYMENT_SUM]
        match = resolve_doc_amount_match(doc, total, cfg)
        if match is not None and match.via_amount_candidate:
            reasons.append(LINE_ITEM_NET_MATCH)
        return MatchDecision(
            state=MatchState.SUGGESTED if batch_hint else MatchState.FINAL,
            relation_type=RelationType.ONE_TO_MANY,
            tx_ids=tx_ids,
            doc_ids=doc_ids,
            confidence=Decimal("0.7") if batch_hint else _ONE,
            reason_codes=tuple(reasons),
            inputs=inputs,
            match_group_id=group_id,
            open_amount_after=None if batch_hint else _ZERO,
        )

    if total < target:
        return MatchDecision(
            state=MatchState.PARTIAL,
            relation_type=RelationType.ONE_TO_MANY,
            tx_ids=tx_ids,
            doc_ids=doc_ids,
            confidence=Decimal("0.9"),
            reason_codes=(PARTIAL_PAYMENT_SUM,),
            inputs=inputs,
            match_group_id=group_id,
            open_amount_after=round_cents(target - total),
        )

    return MatchDecision(
        state=MatchState.AMBIGUOUS,
        relation_type=RelationType.ONE_TO_MANY,
        tx_ids=tx_ids,
        doc_ids=doc_ids,
        confidence=Decimal("0.5"),
        reason_codes=(AMBIGUOUS_MULTIPLE_SOLUTIONS,),
        inputs=inputs,
        match_group_id=group_id,
    )


# ---------------------------------------------------------------------------
# many_to_many
# ---------------------------------------------------------------------------


def _cluster_has_partial_keywords(
    docs: Sequence[Document],
    txs: Sequence[Transaction],
    cfg: MatchingConfig,
) -> bool:
    haystack = join_text(
        *(join_text(doc.text_norm, doc.vendor_norm) for doc in docs),
        *(join_text(tx.text_norm, tx.reference, tx.vendor_norm) for tx in txs),
    )
    return contains_keyword(haystack, cfg.keywords.partial_payment)


def _exact_balance(relation: ManyToManyRelation, cfg: MatchingConfig) -> tuple[Decimal, Decimal] | None:
    docs = relation.documents
    currencies = {doc.currency for doc in docs}
    if len(currencies) != 1 or not docs or any(doc.amount is None for doc in docs):
        return None
    currency = next(iter(currencies))
    amounts = [tx_amount_for_currency(tx, currency) for tx in relation.txs]
    if not amounts or any(amount is None for amount in amounts):
        return None
    sum_docs = sum_amounts(doc_target_amount(doc) for doc in docs)
    sum_txs = sum_amounts(amounts)
    if not amount_compatible(sum_docs, sum_txs, cfg):
        return None
    if not all(any(pair_vendor_compatible(doc, tx) for doc in docs) for tx in relation.txs):
        return None
    if _cluster_has_partial_keywords(docs, relation.txs, cfg):
        return None
    return sum_docs, sum_txs


def match_many_to_many(relation: ManyToManyRelation, cfg: MatchingConfig) -> MatchDecision:
    tx_ids = tuple(tx.id for tx in relation.txs)
    doc_ids = tuple(doc.id for doc in relation.documents)
    group_id = group_id_for(tx_ids, doc_ids)

    balance = _exact_balance(relation, cfg)
    if balance is not None:
        sum_docs, sum_txs = balance
        return MatchDecision(
            state=MatchState.FINAL,
            relation_type=RelationType.MANY_TO_MANY,
            tx_ids=tx_ids,
            doc_ids=doc_ids,
            confidence=Decimal("0.9"),
            reason_codes=(MANY_TO_MANY_EXACT,),
            inputs={
                "sum_docs": sum_docs,
                "sum_txs": sum_txs,
                "count_docs": len(doc_ids),
                "count_txs": len(tx_ids),
                "hypothesis": relation.hypothesis.as_dict(),
            },
            match_group_id=group_id,
        )

    return MatchDecision(
        state=MatchState.AMBIGUOUS,
        relation_type=RelationType.MANY_TO_MANY,
        tx_ids=tx_ids,
        doc_ids=doc_ids,
        confidence=Decimal("0.4"),
        reason_codes=(CLUSTER_NN_WIZARD,),
        inputs={
            "hypothesis": relation.hypothesis.as_dict(),
            "size_txs": len(tx_ids),
            "size_docs": len(doc_ids),
        },
        match_group_id=group_id,
    )


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


def match_relation(relation: Relation, cfg: MatchingConfig) -> MatchDecision | None:
    if isinstance(relation, OneToOneRelation):
        return match_one_to_one(relation, cfg)
    if isinstance(relation, ManyToOneRelation):
        return match_many_to_one(relation, cfg)
    if isinstance(relation, OneToManyRelation):
        return match_one_to_many(relation, cfg)
    return match_many_to_many(relation, cfg)
