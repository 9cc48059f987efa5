"""
End-to-end scenarios for the matching pipeline.

Each scenario runs ``MatchingEngine.run`` over a small snapshot and checks
the resolved decisions, lifecycle results and phase statistics.
"""

from datetime import date
from decimal import Decimal

import pytest

from recon_engines.matching.item_first import ITEM_FIRST_FINAL_COVERAGE, ITEM_FIRST_LINE_ITEM_MATCH
from recon_engines.matching.matchers import (
    CLUSTER_NN_WIZARD,
    HARD_INVOICE_NO,
    LINE_ITEM_NET_MATCH,
    PARTIAL_PAYMENT_SUM,
    SOFT_AMOUNT_VENDOR_OUT_OF_WINDOW,
    SOFT_INVOICE_NO_AMOUNT_OUT_OF_WINDOW,
    SUBSCRIPTION_REUSE_LINKED_DOC,
)
from recon_engines.matching.pipeline import MatchingEngine, PipelineOptions, inject_tenant_id
from recon_engines.matching.prepass import HARD_AMOUNT_DATE_VENDOR
from recon_engines.matching.types import (
    Cadence,
    Direction,
    DocLifecycleKind,
    LineItem,
    LinkState,
    MatchDecision,
    MatchState,
    RelationType,
    TxLifecycleKind,
)
from tests.conftest import make_doc, make_tx

NOW = date(2025, 3, 1)


@pytest.fixture
def engine(cfg, deterministic_clock):
    return MatchingEngine(cfg, clock=deterministic_clock)


def _assert_conflict_free(result):
    used_tx: set[str] = set()
    used_doc: set[str] = set()
    for decision in result.final:
        assert not used_tx & set(decision.tx_ids)
        assert not used_doc & set(decision.doc_ids)
        used_tx.update(decision.tx_ids)
        used_doc.update(decision.doc_ids)


# =============================================================================
# Hard keys
# =============================================================================


class TestHardKeyScenarios:

    def test_amount_date_vendor_pair(self, engine):
        result = engine.run([make_doc()], [make_tx()], now=NOW)

        assert len(result.final) == 1
        decision = result.final[0]
        assert decision.reason_codes == (HARD_AMOUNT_DATE_VENDOR,)
        assert decision.tenant_id == "tenant-1"
        assert result.suggestions == ()
        assert result.stats.prepass_final == 1
        assert result.doc_lifecycle == ()
        assert result.tx_lifecycle == ()

    def test_incoming_payment_with_invoice_number(self, engine):
        doc = make_doc(invoice_no="RE0291", amount=Decimal("300"))
        tx = make_tx(amount=Decimal("300"), direction=Direction.IN, reference="Rechnung RE0291")
        result = engine.run([doc], [tx], now=NOW)

        assert len(result.final) == 1
        assert result.final[0].reason_codes == (HARD_INVOICE_NO,)


# =============================================================================
# Soft and net-amount matches
# =============================================================================


class TestSoftScenarios:

    def test_invoice_number_out_of_window_is_suggested(self, engine):
        doc = make_doc(invoice_no="RE0287", amount=Decimal("500"))
        tx = make_tx(
            amount=Decimal("500"),
            booking_date=date(2025, 3, 21),
            reference="Rechnung RE0287",
        )
        result = engine.run([doc], [tx], now=NOW)

        assert result.final == ()
        assert len(result.suggestions) == 1
        suggestion = result.suggestions[0]
        assert suggestion.state == MatchState.SUGGESTED
        assert suggestion.confidence == Decimal("0.8")
        assert suggestion.reason_codes == (SOFT_INVOICE_NO_AMOUNT_OUT_OF_WINDOW,)

    def test_vendor_amount_out_of_window_is_suggested(self, engine):
        doc = make_doc(amount=Decimal("250"), vendor_norm="hiscox")
        tx = make_tx(amount=Decimal("250"), booking_date=date(2025, 3, 15), vendor_norm="hiscox")
        result = engine.run([doc], [tx], now=NOW)

        assert result.final == ()
        assert result.suggestions[0].confidence == Decimal("0.7")
        assert result.suggestions[0].reason_codes == (SOFT_AMOUNT_VENDOR_OUT_OF_WINDOW,)

    def test_net_amount_candidate_is_final(self, engine):
        doc = make_doc(
            amount=Decimal("18.38"),
            invoice_date=None,
            due_date=None,
            amount_candidates=(Decimal("9.00"),),
        )
        tx = make_tx(amount=Decimal("9"))
        result = engine.run([doc], [tx], now=NOW)

        assert len(result.final) == 1
        assert result.final[0].confidence == Decimal("0.98")
        assert result.final[0].reason_codes == (LINE_ITEM_NET_MATCH,)

    def test_partially_paid_document_remains_matchable(self, engine):
        doc = make_doc(
            amount=Decimal("18"),
            open_amount=Decimal("9"),
            link_state=LinkState.PARTIAL,
        )
        tx = make_tx(amount=Decimal("9"))
        result = engine.run([doc], [tx], now=NOW)

        assert len(result.final) == 1
        assert result.final[0].confidence == Decimal("0.98")
        assert result.final[0].reason_codes == (LINE_ITEM_NET_MATCH,)


# =============================================================================
# Multi-entity relations
# =============================================================================


class TestMultiEntityScenarios:

    def test_many_small_payments_settle_one_document(self, engine):
        doc = make_doc(amount=Decimal("18.38"), vendor_norm="qonto")
        amounts = ("2.50", "3.10", "2.90", "4.00", "1.88", "4.00")
        txs = [
            make_tx(
                f"t{i}",
                amount=Decimal(amount),
                booking_date=date(2025, 1, 12 + i),
                vendor_norm="qonto",
            )
            for i, amount in enumerate(amounts)
        ]
        result = engine.run([doc], txs, now=NOW)

        assert len(result.final) == 1
        decision = result.final[0]
        assert decision.relation_type == RelationType.ONE_TO_MANY
        assert decision.reason_codes == (PARTIAL_PAYMENT_SUM,)
        assert decision.tx_ids == tuple(sorted(f"t{i}" for i in range(6)))
        assert decision.open_amount_after == Decimal("0")
        assert decision.match_group_id.startswith("grp_")

    def test_one_payment_for_two_documents(self, engine):
        docs = [make_doc("d1", amount=Decimal("100")), make_doc("d2", amount=Decimal("50"))]
        result = engine.run(docs, [make_tx(amount=Decimal("150"))], now=NOW)

        assert len(result.final) == 1
        decision = result.final[0]
        assert decision.relation_type == RelationType.MANY_TO_ONE
        assert decision.doc_ids == ("d1", "d2")
        assert decision.confidence == Decimal("1")

    def test_line_items_settled_individually(self, engine):
        doc = make_doc(items=(
            LineItem(id="li-1", amount_signed=Decimal("60")),
            LineItem(id="li-2", amount_signed=Decimal("40")),
        ))
        txs = [
            make_tx("t60", amount=Decimal("60"), booking_date=date(2025, 1, 15)),
            make_tx("t40", amount=Decimal("40"), booking_date=date(2025, 1, 18)),
        ]
        result = engine.run([doc], txs, now=NOW)

        assert len(result.final) == 1
        decision = result.final[0]
        assert decision.reason_codes == (ITEM_FIRST_LINE_ITEM_MATCH, ITEM_FIRST_FINAL_COVERAGE)
        assert decision.tx_ids == ("t40", "t60")
        assert result.stats.item_first_decisions == 1

    def test_ambiguous_pair_is_left_for_review(self, engine):
        docs = [make_doc("d1"), make_doc("d2")]
        result = engine.run(docs, [make_tx()], now=NOW)

        assert result.final == ()
        assert result.suggestions
        assert all(not d.is_binding for d in result.suggestions)
        assert any(d.relation_type == RelationType.MANY_TO_MANY for d in result.suggestions)

    def test_small_payment_against_many_documents_becomes_cluster(self, engine):
        docs = [make_doc(f"d{i:02d}", amount=Decimal("10")) for i in range(30)]
        result = engine.run(docs, [make_tx(amount=Decimal("7"))], now=NOW)

        assert result.final == ()
        assert all(not d.is_binding for d in result.decisions)
        assert any(
            d.relation_type == RelationType.MANY_TO_MANY
            and d.state == MatchState.AMBIGUOUS
            and d.reason_codes == (CLUSTER_NN_WIZARD,)
            for d in result.suggestions
        )

    def test_partial_payment_fitting_two_documents_left_for_review(self, engine):
        docs = [make_doc("a", amount=Decimal("100")), make_doc("b", amount=Decimal("200"))]
        result = engine.run(docs, [make_tx(amount=Decimal("50"))], now=NOW)

        assert result.final == ()
        assert all(not d.is_binding for d in result.decisions)
        (cluster,) = result.suggestions
        assert cluster.state == MatchState.AMBIGUOUS
        assert cluster.reason_codes == (CLUSTER_NN_WIZARD,)
        assert cluster.doc_ids == ("a", "b")

    def test_result_is_conflict_free(self, engine):
        docs = [
            make_doc("d1"),
            make_doc("d2", amount=Decimal("50")),
            make_doc("d3", amount=Decimal("18"), vendor_norm="qonto"),
        ]
        txs = [
            make_tx("t1"),
            make_tx("t2", amount=Decimal("150")),
            make_tx("t3", amount=Decimal("9"), vendor_norm="qonto"),
            make_tx("t4", amount=Decimal("9"), vendor_norm="qonto", booking_date=date(2025, 1, 22)),
        ]
        result = engine.run(docs, txs, now=NOW)
        _assert_conflict_free(result)
        assert result.decisions == result.final + result.suggestions


# =============================================================================
# Lifecycle and subscriptions
# =============================================================================


class TestLifecycleScenarios:

    def test_unpaired_tenants_are_classified(self, engine):
        doc = make_doc(tenant_id="tenant-a")
        tx = make_tx(tenant_id="tenant-b")
        result = engine.run([doc], [tx], now=NOW)

        assert result.decisions == ()
        assert [r.kind for r in result.doc_lifecycle] == [DocLifecycleKind.OVERDUE]
        assert [r.kind for r in result.tx_lifecycle] == [TxLifecycleKind.MISSING_DOC]

    def test_recurring_payment_reuses_linked_contract(self, engine):
        contract = make_doc("contract", amount=Decimal("19.99"), link_state=LinkState.LINKED)
        tx = make_tx(amount=Decimal("19.99"), booking_date=date(2025, 6, 15), reference="Abo Juni")
        result = engine.run([contract], [tx], now=NOW)

        assert [r.kind for r in result.tx_lifecycle] == [TxLifecycleKind.SUBSCRIPTION_TX]
        assert len(result.final) == 1
        decision = result.final[0]
        assert decision.doc_ids == ("contract",)
        assert decision.confidence == Decimal("0.96")
        assert decision.reason_codes == (SUBSCRIPTION_REUSE_LINKED_DOC,)

    def test_history_feeds_subscription_detection(self, engine):
        tx = make_tx(amount=Decimal("19.99"), booking_date=date(2025, 4, 15), vendor_norm="streamco")
        history = [
            make_tx(f"h{m}", amount=Decimal("19.99"), booking_date=date(2025, m, 15), vendor_norm="streamco")
            for m in (1, 2, 3)
        ]
        result = engine.run([], [tx], now=NOW, tx_history={tx.id: history})

        (lifecycle,) = result.tx_lifecycle
        assert lifecycle.kind == TxLifecycleKind.SUBSCRIPTION_TX
        assert lifecycle.rule_suggestion.cadence == Cadence.MONTHLY

    def test_clock_used_when_now_missing(self, cfg, deterministic_clock):
        engine = MatchingEngine(cfg, clock=deterministic_clock)
        result = engine.run([make_doc(tenant_id="tenant-a")], [])
        assert result.doc_lifecycle[0].kind == DocLifecycleKind.OVERDUE


# =============================================================================
# Options and tenant handling
# =============================================================================


class TestOptions:

    def test_tenant_filter(self, cfg):
        engine = MatchingEngine(cfg, PipelineOptions(tenant_filter="tenant-1"))
        docs = [make_doc(), make_doc("other", tenant_id="tenant-2")]
        txs = [make_tx(), make_tx("other-tx", tenant_id="tenant-2")]
        result = engine.run(docs, txs, now=NOW)
        assert [d.doc_ids for d in result.final] == [("doc-1",)]
        assert result.stats.partitions.tenant_count == 1

    def test_max_docs(self, cfg):
        engine = MatchingEngine(cfg, PipelineOptions(max_docs=1))
        docs = [make_doc("d1", tenant_id="a"), make_doc("d2", tenant_id="a")]
        result = engine.run(docs, [], now=NOW)
        assert [r.doc_id for r in result.doc_lifecycle] == ["d1"]

    def test_completion_logged(self, engine, captured_logs):
        engine.run([make_doc()], [make_tx()], now=NOW)
        records = [r for r in captured_logs() if r["message"] == "pipeline_completed"]
        assert records[-1]["final_count"] == 1
        assert records[-1]["prepass_final"] == 1


class TestInjectTenantId:

    def _decision(self, **inputs):
        return MatchDecision(
            state=MatchState.SUGGESTED,
            relation_type=RelationType.ONE_TO_ONE,
            tx_ids=("t1",),
            doc_ids=("d1",),
            confidence=Decimal("0.7"),
            reason_codes=(),
            inputs=inputs,
        )

    def test_transaction_tenant_first(self):
        decision = inject_tenant_id(
            self._decision(),
            {"d1": make_doc("d1", tenant_id="doc-tenant")},
            {"t1": make_tx("t1", tenant_id="tx-tenant")},
        )
        assert decision.tenant_id == "tx-tenant"

    def test_document_tenant_fallback(self):
        decision = inject_tenant_id(
            self._decision(), {"d1": make_doc("d1", tenant_id="doc-tenant")}, {},
        )
        assert decision.tenant_id == "doc-tenant"

    def test_existing_tenant_kept(self):
        decision = inject_tenant_id(self._decision(tenant_id="kept"), {}, {})
        assert decision.tenant_id == "kept"

    def test_unknown(self):
        assert inject_tenant_id(self._decision(), {}, {}).inputs["tenant_id"] == "__unknown__"
