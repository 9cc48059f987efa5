"""
Pytest fixtures for the reconciliation engine test suite.

Provides:
- Structured logging configured once per session, with a capture fixture
- Deterministic clock and default matching config
- In-memory SQLite sessions for repository tests
- Document / transaction builders
"""

import json
import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from io import StringIO

import pytest

from recon_config.schema import MatchingConfig
from recon_engines.matching.types import Direction, Document, Transaction
from recon_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session,
    init_engine_from_url,
    reset_engine,
)
from recon_kernel.domain.clock import DeterministicClock
from recon_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)

TEST_TENANT = "tenant-1"


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture recon logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs):
            engine.run(docs, txs)
            logs = captured_logs()
            assert any(r["message"] == "pipeline_completed" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("recon")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Domain fixtures
# =============================================================================


@pytest.fixture
def cfg() -> MatchingConfig:
    return MatchingConfig()


@pytest.fixture
def deterministic_clock() -> DeterministicClock:
    return DeterministicClock(datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc))


def make_doc(doc_id: str = "doc-1", **overrides) -> Document:
    """Unlinked EUR invoice of 100.00 dated 2025-01-10, due 2025-01-24."""
    values = {
        "tenant_id": TEST_TENANT,
        "amount": Decimal("100.00"),
        "currency": "EUR",
        "invoice_date": date(2025, 1, 10),
        "due_date": date(2025, 1, 24),
        "vendor_norm": "acme",
    }
    values.update(overrides)
    return Document(id=doc_id, **values)


def make_tx(tx_id: str = "tx-1", **overrides) -> Transaction:
    """Outgoing EUR payment of 100.00 booked 2025-01-20 to "acme"."""
    values = {
        "tenant_id": TEST_TENANT,
        "amount": Decimal("100.00"),
        "direction": Direction.OUT,
        "currency": "EUR",
        "booking_date": date(2025, 1, 20),
        "vendor_norm": "acme",
    }
    values.update(overrides)
    return Transaction(id=tx_id, **values)


@pytest.fixture
def doc_factory():
    return make_doc


@pytest.fixture
def tx_factory():
    return make_tx


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def db_engine():
    """Fresh in-memory SQLite database with all tables created."""
    engine = init_engine_from_url("sqlite://")
    create_tables()
    yield engine
    drop_tables()
    reset_engine()


@pytest.fixture
def session(db_engine):
    """Session bound to the in-memory database; rolled back after the test."""
    sess = get_session()
    yield sess
    sess.rollback()
    sess.close()
