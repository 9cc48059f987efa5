"""Tests for document lifecycle classification."""

from datetime import date
from decimal import Decimal

import pytest

from recon_config.schema import MatchingConfig, RequiredFieldsPolicy
from recon_engines.matching.doc_lifecycle import (
    build_due_rematch_hint,
    evaluate_doc_lifecycle,
    expects_payment,
    has_required_fields,
)
from recon_engines.matching.types import (
    DateWindow,
    DocLifecycleKind,
    DocType,
    NextAction,
    PaymentHint,
    Severity,
)
from tests.conftest import make_doc

CFG = MatchingConfig()
NOW = date(2025, 3, 1)


class TestClassificationOrder:

    def test_duplicate_wins_over_missing_fields(self):
        doc = make_doc(duplicate_key="hash-1", amount=None)
        result = evaluate_doc_lifecycle(doc, NOW, CFG)
        assert result.kind == DocLifecycleKind.DOC_DUPLICATE
        assert result.explanation_codes == ("DUPLICATE",)

    def test_missing_amount_is_error(self):
        result = evaluate_doc_lifecycle(make_doc(amount=None), NOW, CFG)
        assert result.kind == DocLifecycleKind.DOC_ERROR
        assert result.severity == Severity.ACTION
        assert result.next_action == NextAction.REUPLOAD_REQUEST

    def test_explicit_missing_fields_flag(self):
        result = evaluate_doc_lifecycle(make_doc(has_required_fields=False), NOW, CFG)
        assert result.kind == DocLifecycleKind.DOC_ERROR

    def test_private_before_split(self):
        doc = make_doc(private_hint=True, split_hint=True)
        result = evaluate_doc_lifecycle(doc, NOW, CFG)
        assert result.kind == DocLifecycleKind.PRIVATE
        assert result.next_action == NextAction.ASK_USER

    def test_split_required(self):
        result = evaluate_doc_lifecycle(make_doc(split_hint=True), NOW, CFG)
        assert result.kind == DocLifecycleKind.SPLIT_REQUIRED
        assert result.next_action == NextAction.START_SPLIT_UI


class TestDueDate:

    def test_overdue(self):
        result = evaluate_doc_lifecycle(make_doc(), NOW, CFG)
        assert result.kind == DocLifecycleKind.OVERDUE
        assert result.severity == Severity.WARNING
        assert result.next_action == NextAction.INBOX_TASK
        assert result.explanation_codes == ("HAS_DUE_DATE", "OVERDUE")
        assert result.rematch_hint.anchor_date == date(2025, 1, 24)
        assert result.rematch_hint.window_before_days == 30
        assert result.rematch_hint.window_after_days == 90

    def test_within_grace_is_awaiting(self):
        result = evaluate_doc_lifecycle(make_doc(), date(2025, 1, 31), CFG)
        assert result.kind == DocLifecycleKind.AWAITING_TX
        assert result.explanation_codes == ("HAS_DUE_DATE", "NOT_OVERDUE")

    def test_due_hint_window(self):
        hint = build_due_rematch_hint(date(2025, 1, 24), CFG)
        assert hint.window == DateWindow(start=date(2024, 12, 25), end=date(2025, 4, 24))
        assert build_due_rematch_hint(None, CFG) is None


class TestWithoutDueDate:

    def test_invoice_expects_payment(self):
        doc = make_doc(due_date=None, doc_type=DocType.INVOICE)
        result = evaluate_doc_lifecycle(doc, NOW, CFG)
        assert result.kind == DocLifecycleKind.AWAITING_TX
        assert result.explanation_codes == ("EXPECTS_PAYMENT", "NO_DUE_DATE")
        assert result.rematch_hint.anchor_date == date(2025, 1, 10)
        assert result.rematch_hint.window == DateWindow(
            start=date(2025, 1, 3), end=date(2025, 2, 24),
        )

    def test_receipt_is_eigenbeleg_candidate(self):
        doc = make_doc(due_date=None, doc_type=DocType.RECEIPT)
        result = evaluate_doc_lifecycle(doc, NOW, CFG)
        assert result.kind == DocLifecycleKind.EIGENBELEG
        assert result.next_action == NextAction.START_EIGENBELEG_FLOW

    @pytest.mark.parametrize("hint", [PaymentHint.CASH, PaymentHint.EC, PaymentHint.CARD])
    def test_card_paid_invoice_is_eigenbeleg_candidate(self, hint):
        doc = make_doc(due_date=None, doc_type=DocType.INVOICE, payment_hint=hint)
        assert not expects_payment(doc)
        assert evaluate_doc_lifecycle(doc, NOW, CFG).kind == DocLifecycleKind.EIGENBELEG

    def test_transfer_hint_expects_payment(self):
        doc = make_doc(due_date=None, payment_hint=PaymentHint.TRANSFER)
        assert expects_payment(doc)

    def test_fallback_uses_document_date(self):
        doc = make_doc(due_date=None, invoice_date=None, document_date=date(2025, 1, 5))
        result = evaluate_doc_lifecycle(doc, NOW, CFG)
        assert result.kind == DocLifecycleKind.AWAITING_TX
        assert result.explanation_codes == ("FALLBACK_AWAITING",)
        assert result.rematch_hint.anchor_date == date(2025, 1, 5)


class TestRequiredFields:

    def test_defaults(self):
        assert has_required_fields(make_doc(), CFG)
        assert not has_required_fields(make_doc(amount=Decimal("0")), CFG)
        assert not has_required_fields(make_doc(currency=None), CFG)
        assert not has_required_fields(make_doc(invoice_date=None), CFG)

    def test_relaxed_policy(self):
        cfg = MatchingConfig(required_fields=RequiredFieldsPolicy(require_invoice_date=False))
        assert has_required_fields(make_doc(invoice_date=None), cfg)
