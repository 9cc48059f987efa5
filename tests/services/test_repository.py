"""Tests for the in-memory MatchRepository."""

from datetime import date, datetime, timezone
from decimal import Decimal

from recon_engines.matching.projection import UpdateDocOp, UpsertEdgeOp
from recon_engines.matching.types import (
    LinkState,
    MatchDecision,
    MatchState,
    RelationType,
    TxHistoryOptions,
)
from recon_services.repository import InMemoryMatchRepository, MatchRepository
from tests.conftest import make_tx

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def _final(tx_id="t1", doc_id="d1"):
    return MatchDecision(
        state=MatchState.FINAL,
        relation_type=RelationType.ONE_TO_ONE,
        tx_ids=(tx_id,),
        doc_ids=(doc_id,),
        confidence=Decimal("1"),
        reason_codes=("HARD_IBAN_AMOUNT",),
        inputs={"tenant_id": "tenant-1"},
    )


class TestProtocol:

    def test_in_memory_satisfies_protocol(self):
        assert isinstance(InMemoryMatchRepository(), MatchRepository)


class TestApply:

    def test_ops_recorded(self):
        repo = InMemoryMatchRepository(now=NOW)
        repo.apply_matches([_final()])

        kinds = [op.kind for op in repo.ops]
        assert kinds == ["upsert_edge", "update_doc", "update_tx"]
        edge = repo.ops[0]
        assert isinstance(edge, UpsertEdgeOp)
        assert edge.created_at == NOW

    def test_reapply_is_idempotent(self):
        repo = InMemoryMatchRepository()
        repo.apply_matches([_final()])
        repo.apply_matches([_final()])
        assert len(repo.ops) == 3

    def test_suggestion_replaces_nothing_binding(self):
        repo = InMemoryMatchRepository()
        suggestion = MatchDecision(
            state=MatchState.SUGGESTED,
            relation_type=RelationType.ONE_TO_ONE,
            tx_ids=("t2",),
            doc_ids=("d2",),
            confidence=Decimal("0.7"),
            reason_codes=("SOFT_AMOUNT_VENDOR_OUT_OF_WINDOW",),
        )
        repo.save_suggestions([suggestion])
        assert [op.kind for op in repo.ops] == ["upsert_edge"]
        assert repo.ops[0].link_state == LinkState.SUGGESTED

    def test_doc_open_amount_zero_after_final(self):
        repo = InMemoryMatchRepository()
        repo.apply_matches([_final()])
        doc_ops = [op for op in repo.ops if isinstance(op, UpdateDocOp)]
        assert doc_ops[0].open_amount == Decimal("0")


class TestAudit:

    def test_records_appended(self):
        repo = InMemoryMatchRepository(now=NOW)
        repo.audit([_final(), _final("t2", "d2")])
        assert [r.tx_ids for r in repo.audit_records] == [("t1",), ("t2",)]
        assert all(r.event_time == NOW for r in repo.audit_records)


class TestHistory:

    def _repo(self):
        history = [
            make_tx("h1", booking_date=date(2025, 1, 15), vendor_norm="streamco"),
            make_tx("h2", booking_date=date(2025, 2, 15), vendor_norm="streamco"),
            make_tx("h3", booking_date=date(2023, 2, 15), vendor_norm="streamco"),
            make_tx("h4", booking_date=date(2025, 2, 20), vendor_norm="other"),
            make_tx("h5", booking_date=date(2025, 2, 21), vendor_norm="streamco", tenant_id="tenant-2"),
        ]
        return InMemoryMatchRepository(history=history, now=NOW)

    def test_newest_first_within_lookback(self):
        rows = self._repo().load_tx_history(
            "tenant-1", TxHistoryOptions(lookback_days=365, limit=10, vendor_key="streamco"),
        )
        assert [tx.id for tx in rows] == ["h2", "h1"]

    def test_without_vendor_filter(self):
        rows = self._repo().load_tx_history("tenant-1", TxHistoryOptions(lookback_days=365, limit=10))
        assert [tx.id for tx in rows] == ["h4", "h2", "h1"]

    def test_limit(self):
        rows = self._repo().load_tx_history("tenant-1", TxHistoryOptions(lookback_days=365, limit=1))
        assert [tx.id for tx in rows] == ["h4"]
