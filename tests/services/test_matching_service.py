"""
Tests for MatchingService orchestration.

Covers:
- Persistence routing (apply / suggestions / audit)
- Dry runs without a repository
- History loading for tx_created events
- Run logging with a bound run_id
"""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from recon_config.schema import MatchingConfig
from recon_engines.matching.types import Cadence, TxLifecycleKind
from recon_kernel.exceptions import RepositoryNotConfiguredError
from recon_services import EventType, InMemoryMatchRepository, MatchingService
from tests.conftest import make_doc, make_tx

NOW = date(2025, 3, 1)


class _RecordingRepository(InMemoryMatchRepository):
    """In-memory repository that also records which calls it received."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.calls: list[tuple[str, int]] = []
        self.history_requests: list[tuple[str, str | None]] = []

    def apply_matches(self, decisions):
        self.calls.append(("apply_matches", len(decisions)))
        super().apply_matches(decisions)

    def save_suggestions(self, decisions):
        self.calls.append(("save_suggestions", len(decisions)))
        super().save_suggestions(decisions)

    def audit(self, decisions):
        self.calls.append(("audit", len(decisions)))
        super().audit(decisions)

    def load_tx_history(self, tenant_id, options):
        self.history_requests.append((tenant_id, options.vendor_key))
        return super().load_tx_history(tenant_id, options)


def _streamco(tx_id, booked):
    return make_tx(tx_id, amount=Decimal("19.99"), booking_date=booked, vendor_norm="streamco")


# =============================================================================
# Persistence
# =============================================================================


class TestPersistence:

    def test_final_and_suggestions_routed(self, deterministic_clock):
        repo = _RecordingRepository(now=deterministic_clock.now_utc())
        service = MatchingService(repo, clock=deterministic_clock)

        docs = [make_doc("d1"), make_doc("d2", amount=Decimal("250"), vendor_norm="hiscox")]
        txs = [
            make_tx("t1"),
            make_tx("t2", amount=Decimal("250"), booking_date=date(2025, 3, 15), vendor_norm="hiscox"),
        ]
        result = service.run(docs, txs, now=NOW)

        assert len(result.final) == 1
        assert len(result.suggestions) == 1
        assert repo.calls == [("apply_matches", 1), ("save_suggestions", 1), ("audit", 2)]
        assert len(repo.audit_records) == 2

    def test_ops_for_final_pair(self, deterministic_clock):
        repo = InMemoryMatchRepository(now=deterministic_clock.now_utc())
        MatchingService(repo, clock=deterministic_clock).run([make_doc()], [make_tx()], now=NOW)
        assert [op.kind for op in repo.ops] == ["upsert_edge", "update_doc", "update_tx"]
        assert repo.ops[0].tenant_id == "tenant-1"

    def test_rerun_is_idempotent(self, deterministic_clock):
        repo = InMemoryMatchRepository(now=deterministic_clock.now_utc())
        service = MatchingService(repo, clock=deterministic_clock)
        service.run([make_doc()], [make_tx()], now=NOW)
        service.run([make_doc()], [make_tx()], now=NOW)
        assert len(repo.ops) == 3


# =============================================================================
# Dry run and missing repository
# =============================================================================


class TestWithoutRepository:

    def test_dry_run(self):
        result = MatchingService().run([make_doc()], [make_tx()], now=NOW, dry_run=True)
        assert len(result.final) == 1

    def test_persisting_without_repository_raises(self):
        with pytest.raises(RepositoryNotConfiguredError) as exc_info:
            MatchingService().run([make_doc()], [make_tx()], now=NOW)
        assert exc_info.value.code == "REPOSITORY_NOT_CONFIGURED"
        assert exc_info.value.operation == "apply_matches"

    def test_history_without_repository_raises(self):
        with pytest.raises(RepositoryNotConfiguredError):
            MatchingService().run([], [make_tx()], now=NOW, event_type=EventType.TX_CREATED, dry_run=True)


# =============================================================================
# History
# =============================================================================


class TestHistoryLoading:

    def _repo(self):
        history = [_streamco(f"h{m}", date(2025, m, 15)) for m in (1, 2, 3)]
        return _RecordingRepository(
            history=history, now=datetime(2025, 4, 20, 12, 0, tzinfo=timezone.utc),
        )

    def test_tx_created_detects_subscription(self):
        repo = self._repo()
        tx = _streamco("new", date(2025, 4, 15))
        result = MatchingService(repo).run(
            [], [tx], now=date(2025, 4, 20), event_type=EventType.TX_CREATED,
        )

        assert repo.history_requests == [("tenant-1", "streamco")]
        (lifecycle,) = result.tx_lifecycle
        assert lifecycle.kind == TxLifecycleKind.SUBSCRIPTION_TX
        assert lifecycle.rule_suggestion.cadence == Cadence.MONTHLY

    def test_event_type_accepts_string(self):
        repo = self._repo()
        MatchingService(repo).run(
            [], [_streamco("new", date(2025, 4, 15))], now=date(2025, 4, 20), event_type="tx_created",
        )
        assert len(repo.history_requests) == 1

    def test_nightly_run_skips_history(self):
        repo = self._repo()
        result = MatchingService(repo).run(
            [], [_streamco("new", date(2025, 4, 15))], now=date(2025, 4, 20),
        )
        assert repo.history_requests == []
        assert result.tx_lifecycle[0].kind == TxLifecycleKind.NEEDS_EIGENBELEG

    def test_history_disabled(self):
        repo = self._repo()
        service = MatchingService(repo, config=MatchingConfig(enable_subscription_history=False))
        service.run(
            [], [_streamco("new", date(2025, 4, 15))], now=date(2025, 4, 20),
            event_type=EventType.TX_CREATED,
        )
        assert repo.history_requests == []


# =============================================================================
# Logging
# =============================================================================


class TestRunLogging:

    def test_run_logged_with_run_id(self, captured_logs):
        MatchingService().run([make_doc()], [make_tx()], now=NOW, dry_run=True)
        records = captured_logs()
        started = [r for r in records if r["message"] == "matching_run_started"][-1]
        completed = [r for r in records if r["message"] == "matching_run_completed"][-1]

        assert started["event_type"] == "nightly"
        assert started["run_id"] == completed["run_id"]
        assert completed["final_count"] == 1
