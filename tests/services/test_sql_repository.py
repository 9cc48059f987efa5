"""
Tests for the SQLAlchemy MatchRepository against in-memory SQLite.

Covers:
- Edge, group and entity updates from applied decisions
- Idempotent re-apply and audit replay
- Skipped updates for entities that are not stored
- Transaction history reads
"""

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from recon_engines.matching.types import (
    Direction,
    LinkState,
    MatchDecision,
    MatchState,
    RelationType,
    TxHistoryOptions,
)
from recon_kernel.models import (
    BankTransactionModel,
    DocumentLineItemModel,
    DocumentModel,
    MatchAuditModel,
    MatchEdgeModel,
    MatchGroupModel,
)
from recon_services.repository import MatchRepository
from recon_services.sql_repository import SqlMatchRepository

TENANT = "tenant-1"


def _count(session, model):
    return session.execute(select(func.count()).select_from(model)).scalar_one()


def _final_one_to_one(tx_id="t1", doc_id="d1"):
    return MatchDecision(
        state=MatchState.FINAL,
        relation_type=RelationType.ONE_TO_ONE,
        tx_ids=(tx_id,),
        doc_ids=(doc_id,),
        confidence=Decimal("1"),
        reason_codes=("HARD_IBAN_AMOUNT",),
        inputs={"tenant_id": TENANT, "doc_amount": Decimal("99.90")},
    )


@pytest.fixture
def seeded(session):
    session.add_all([
        DocumentModel(
            tenant_id=TENANT, external_id="d1", amount=Decimal("100.00"),
            currency="EUR", open_amount=Decimal("100.00"),
        ),
        DocumentModel(
            tenant_id=TENANT, external_id="d2", amount=Decimal("100.00"),
            currency="EUR", open_amount=Decimal("100.00"),
        ),
        DocumentLineItemModel(
            tenant_id=TENANT, document_id="d2", line_item_id="li-1",
            amount=Decimal("60.00"), open_amount=Decimal("60.00"),
        ),
        BankTransactionModel(
            tenant_id=TENANT, external_id="t1", amount=Decimal("100.00"),
            direction="out", currency="EUR", booking_date=date(2025, 1, 20),
        ),
    ])
    session.flush()
    return session


@pytest.fixture
def repo(seeded, deterministic_clock):
    return SqlMatchRepository(seeded, deterministic_clock)


def _doc(session, external_id):
    return session.execute(
        select(DocumentModel).where(DocumentModel.external_id == external_id)
    ).scalar_one()


# =============================================================================
# Apply
# =============================================================================


class TestApplyMatches:

    def test_satisfies_protocol(self, repo):
        assert isinstance(repo, MatchRepository)

    def test_final_links_both_sides(self, repo, seeded):
        repo.apply_matches([_final_one_to_one()])

        edge = seeded.execute(select(MatchEdgeModel)).scalar_one()
        assert (edge.doc_id, edge.tx_id) == ("d1", "t1")
        assert edge.link_state == "linked"
        assert edge.match_state == "final"
        assert edge.reason_codes == ["HARD_IBAN_AMOUNT"]
        assert edge.inputs["doc_amount"] == "99.9"

        doc = _doc(seeded, "d1")
        assert doc.link_state == "linked"
        assert doc.open_amount == Decimal("0")

        tx = seeded.execute(select(BankTransactionModel)).scalar_one()
        assert tx.link_state == "linked"

    def test_reapply_is_idempotent(self, repo, seeded):
        repo.apply_matches([_final_one_to_one()])
        repo.apply_matches([_final_one_to_one()])
        assert _count(seeded, MatchEdgeModel) == 1

    def test_group_and_line_items(self, repo, seeded):
        decision = MatchDecision(
            state=MatchState.PARTIAL,
            relation_type=RelationType.ONE_TO_MANY,
            tx_ids=("t1",),
            doc_ids=("d2",),
            confidence=Decimal("0.9"),
            reason_codes=("ITEM_FIRST_LINE_ITEM_MATCH", "PARTIAL_PAYMENT_SUM"),
            inputs={
                "tenant_id": TENANT,
                "matched_item_refs": [{"id": "li-1", "line_index": 0}],
            },
            match_group_id="grp_0123456789abcdef",
            open_amount_after=Decimal("40.00"),
        )
        repo.apply_matches([decision])
        repo.apply_matches([decision])

        assert _count(seeded, MatchGroupModel) == 1
        doc = _doc(seeded, "d2")
        assert doc.link_state == "partial"
        assert doc.open_amount == Decimal("40.00")

        item = seeded.execute(select(DocumentLineItemModel)).scalar_one()
        assert item.link_state == "linked"
        assert item.open_amount == Decimal("0")
        assert item.match_group_id == "grp_0123456789abcdef"

    def test_suggestion_leaves_entities_untouched(self, repo, seeded):
        suggestion = MatchDecision(
            state=MatchState.SUGGESTED,
            relation_type=RelationType.ONE_TO_ONE,
            tx_ids=("t1",),
            doc_ids=("d1",),
            confidence=Decimal("0.7"),
            reason_codes=("SOFT_AMOUNT_VENDOR_OUT_OF_WINDOW",),
            inputs={"tenant_id": TENANT},
        )
        repo.save_suggestions([suggestion])

        edge = seeded.execute(select(MatchEdgeModel)).scalar_one()
        assert edge.link_state == LinkState.SUGGESTED.value
        assert _doc(seeded, "d1").link_state == "unlinked"

    def test_missing_document_is_skipped(self, repo, seeded, captured_logs):
        repo.apply_matches([_final_one_to_one(doc_id="unknown")])

        assert _count(seeded, DocumentModel) == 2
        warnings = [r for r in captured_logs() if r["message"] == "document_not_found"]
        assert warnings[-1]["doc_id"] == "unknown"


# =============================================================================
# Audit
# =============================================================================


class TestAudit:

    def test_replay_at_same_time_writes_once(self, repo, seeded):
        repo.audit([_final_one_to_one()])
        repo.audit([_final_one_to_one()])
        assert _count(seeded, MatchAuditModel) == 1

    def test_later_run_appends(self, repo, seeded, deterministic_clock):
        repo.audit([_final_one_to_one()])
        deterministic_clock.advance_days(1)
        repo.audit([_final_one_to_one()])
        assert _count(seeded, MatchAuditModel) == 2

    def test_row_contents(self, repo, seeded):
        repo.audit([_final_one_to_one()])
        row = seeded.execute(select(MatchAuditModel)).scalar_one()
        assert row.decision_key == "final|one_to_one|tx:t1|doc:d1|grp:"
        assert row.tx_ids == ["t1"]
        assert row.matched_by == "system"


# =============================================================================
# History
# =============================================================================


class TestLoadTxHistory:

    @pytest.fixture
    def history_repo(self, session, deterministic_clock):
        for external_id, booked, vendor in [
            ("h1", date(2025, 1, 15), "streamco"),
            ("h2", date(2025, 2, 15), "streamco"),
            ("h3", date(2023, 2, 15), "streamco"),
            ("h4", date(2025, 2, 20), "other"),
        ]:
            session.add(BankTransactionModel(
                tenant_id=TENANT, external_id=external_id, amount=Decimal("19.99"),
                direction="out", currency="EUR", booking_date=booked, vendor_key=vendor,
            ))
        session.flush()
        return SqlMatchRepository(session, deterministic_clock)

    def test_vendor_filter_and_order(self, history_repo):
        rows = history_repo.load_tx_history(
            TENANT, TxHistoryOptions(lookback_days=365, limit=10, vendor_key="streamco"),
        )
        assert [tx.id for tx in rows] == ["h2", "h1"]
        assert rows[0].direction == Direction.OUT
        assert rows[0].amount == Decimal("19.99")
        assert rows[0].vendor_norm == "streamco"

    def test_limit(self, history_repo):
        rows = history_repo.load_tx_history(TENANT, TxHistoryOptions(lookback_days=365, limit=2))
        assert [tx.id for tx in rows] == ["h4", "h2"]

    def test_other_tenant_empty(self, history_repo):
        assert history_repo.load_tx_history("tenant-2", TxHistoryOptions(365, 10)) == []
