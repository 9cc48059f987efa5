"""
Tests for the hard-key prepass.

Verifies:
- Each hard key finalizes a unique pair with confidence 1
- Partial / batch wording blocks the prepass (configurable)
- Uniqueness: ambiguous hard candidates are left to later phases
- Matched entities leave the pool
"""

from datetime import date
from decimal import Decimal

from recon_config.schema import MatchingConfig, PrepassPolicy
from recon_engines.matching.matchers import HARD_IBAN_AMOUNT, HARD_INVOICE_NO
from recon_engines.matching.prepass import (
    HARD_AMOUNT_DATE_VENDOR,
    HardKeyType,
    hard_key_type,
    has_partial_or_batch_hints,
    prepass_hard_matches,
)
from recon_engines.matching.types import Direction, LinkState, MatchState, RelationType
from tests.conftest import make_doc, make_tx

CFG = MatchingConfig()


class TestHardKeyType:

    def test_amount_date_vendor(self):
        assert hard_key_type(make_doc(), make_tx(), CFG) == HardKeyType.AMOUNT_DATE_VENDOR

    def test_invoice_number_ignores_direction(self):
        doc = make_doc(invoice_no="RE0291", amount=Decimal("300"))
        tx = make_tx(
            amount=Decimal("300"),
            direction=Direction.IN,
            reference="Rechnung RE0291",
        )
        assert hard_key_type(doc, tx, CFG) == HardKeyType.INVOICE_NO

    def test_iban_without_date(self):
        doc = make_doc(iban="DE89370400440532013000")
        tx = make_tx(iban="DE89370400440532013000", booking_date=date(2025, 5, 2), vendor_norm="x")
        assert hard_key_type(doc, tx, CFG) == HardKeyType.IBAN_AMOUNT

    def test_e2e(self):
        doc = make_doc(e2e_id="E2E-9")
        tx = make_tx(e2e_id="E2E-9", booking_date=date(2025, 5, 2))
        assert hard_key_type(doc, tx, CFG) == HardKeyType.E2E_AMOUNT

    def test_amount_mismatch_has_no_key(self):
        doc = make_doc(iban="DE89370400440532013000")
        tx = make_tx(amount=Decimal("99"), iban="DE89370400440532013000")
        assert hard_key_type(doc, tx, CFG) is None

    def test_wrong_direction_without_invoice_number(self):
        assert hard_key_type(make_doc(), make_tx(direction=Direction.IN), CFG) is None

    def test_document_with_invoice_number_needs_it_in_text(self):
        assert hard_key_type(make_doc(invoice_no="RE0291"), make_tx(), CFG) is None


class TestPrepassHardMatches:

    def test_unique_pair_is_final(self):
        result = prepass_hard_matches([make_doc()], [make_tx()], CFG)

        assert len(result.final) == 1
        decision = result.final[0]
        assert decision.state == MatchState.FINAL
        assert decision.relation_type == RelationType.ONE_TO_ONE
        assert decision.confidence == Decimal("1")
        assert decision.reason_codes == (HARD_AMOUNT_DATE_VENDOR,)
        assert decision.inputs["key"] == "AMOUNT_DATE_VENDOR"
        assert result.remaining_docs == ()
        assert result.remaining_txs == ()

    def test_invoice_number_reason(self):
        doc = make_doc(invoice_no="RE0291", amount=Decimal("300"))
        tx = make_tx(amount=Decimal("300"), direction=Direction.IN, reference="Rechnung RE0291")
        result = prepass_hard_matches([doc], [tx], CFG)
        assert result.final[0].reason_codes == (HARD_INVOICE_NO,)
        assert result.final[0].inputs["invoice_no"] == "RE0291"

    def test_iban_reason(self):
        doc = make_doc(iban="DE89370400440532013000")
        tx = make_tx(iban="DE89370400440532013000", booking_date=date(2025, 5, 2))
        result = prepass_hard_matches([doc], [tx], CFG)
        assert result.final[0].reason_codes == (HARD_IBAN_AMOUNT,)

    def test_two_documents_for_one_transaction_are_skipped(self):
        docs = [make_doc("d1"), make_doc("d2")]
        result = prepass_hard_matches(docs, [make_tx()], CFG)
        assert result.final == ()
        assert len(result.remaining_docs) == 2
        assert len(result.remaining_txs) == 1

    def test_two_transactions_for_one_document_are_skipped(self):
        txs = [make_tx("t1"), make_tx("t2")]
        result = prepass_hard_matches([make_doc()], txs, CFG)
        assert result.final == ()

    def test_uniqueness_can_be_disabled(self):
        cfg = MatchingConfig(prepass=PrepassPolicy(require_uniqueness=False))
        txs = [make_tx("t1"), make_tx("t2")]
        result = prepass_hard_matches([make_doc()], txs, cfg)
        assert len(result.final) == 2

    def test_partial_wording_blocks(self):
        tx = make_tx(reference="Teilzahlung")
        assert has_partial_or_batch_hints(tx, make_doc(), CFG)
        assert prepass_hard_matches([make_doc()], [tx], CFG).final == ()

    def test_batch_wording_in_document_blocks(self):
        doc = make_doc(text_norm="sammel rechnung")
        assert prepass_hard_matches([doc], [make_tx()], CFG).final == ()

    def test_blocking_can_be_disabled(self):
        cfg = MatchingConfig(prepass=PrepassPolicy(block_on_partial_keywords=False))
        tx = make_tx(reference="Teilzahlung")
        assert not has_partial_or_batch_hints(tx, make_doc(), cfg)
        assert len(prepass_hard_matches([make_doc()], [tx], cfg).final) == 1

    def test_linked_entities_ignored(self):
        result = prepass_hard_matches(
            [make_doc(link_state=LinkState.LINKED)], [make_tx()], CFG,
        )
        assert result.final == ()

    def test_tenants_never_cross(self):
        result = prepass_hard_matches([make_doc(tenant_id="other")], [make_tx()], CFG)
        assert result.final == ()

    def test_completion_logged(self, captured_logs):
        prepass_hard_matches([make_doc()], [make_tx()], CFG)
        records = [r for r in captured_logs() if r["message"] == "prepass_completed"]
        assert records[-1]["final_count"] == 1
