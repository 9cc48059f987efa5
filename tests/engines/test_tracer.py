"""Tests for the engine tracer (recon_engines/tracer.py)."""

from decimal import Decimal

import pytest

from recon_engines.tracer import compute_input_fingerprint, traced_engine
from tests.conftest import make_doc, make_tx


@traced_engine("sum_amounts", "1.0", fingerprint_fields=("docs",))
def _sum_amounts(docs, scale=1):
    return [doc.amount * scale for doc in docs]


@traced_engine("always_fails", "1.0")
def _always_fails():
    raise ValueError("stage failed")


# =============================================================================
# Fingerprints
# =============================================================================


class TestInputFingerprint:

    def test_records_reduced_to_ids(self):
        first = compute_input_fingerprint(("docs",), {"docs": [make_doc("d1", amount=Decimal("10"))]})
        second = compute_input_fingerprint(("docs",), {"docs": [make_doc("d1", amount=Decimal("99"))]})
        assert first == second
        assert len(first) == 16

    def test_different_ids_differ(self):
        first = compute_input_fingerprint(("docs",), {"docs": [make_doc("d1")]})
        second = compute_input_fingerprint(("docs",), {"docs": [make_doc("d2")]})
        assert first != second

    def test_document_and_transaction_with_same_id_differ(self):
        first = compute_input_fingerprint(("item",), {"item": make_doc("x1")})
        second = compute_input_fingerprint(("item",), {"item": make_tx("x1")})
        assert first != second

    def test_decimal_scale_ignored(self):
        assert compute_input_fingerprint(("target",), {"target": Decimal("5.00")}) == (
            compute_input_fingerprint(("target",), {"target": Decimal("5")})
        )

    def test_unbound_field_is_null(self):
        assert compute_input_fingerprint(("missing",), {}) == (
            compute_input_fingerprint(("missing",), {"missing": None})
        )


# =============================================================================
# Decorator
# =============================================================================


class TestTracedEngine:

    def test_result_passed_through(self):
        assert _sum_amounts([make_doc(amount=Decimal("2"))], scale=3) == [Decimal("6")]

    def test_trace_record(self, captured_logs):
        _sum_amounts([make_doc("d1"), make_doc("d2")])
        traces = [r for r in captured_logs() if r["message"] == "RECON_ENGINE_TRACE"]
        assert len(traces) == 1
        trace = traces[0]
        assert trace["engine_name"] == "sum_amounts"
        assert trace["engine_version"] == "1.0"
        assert trace["result_count"] == 2
        assert len(trace["input_fingerprint"]) == 16
        assert trace["duration_ms"] >= 0

    def test_failed_stage_not_traced(self, captured_logs):
        with pytest.raises(ValueError):
            _always_fails()
        assert not [r for r in captured_logs() if r["message"] == "RECON_ENGINE_TRACE"]

    def test_wraps_metadata(self):
        assert _sum_amounts.__name__ == "_sum_amounts"
