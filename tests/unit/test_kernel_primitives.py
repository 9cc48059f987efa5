"""Tests for kernel primitives: clock, hashing, exceptions, session scope."""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select

from recon_kernel.db.engine import get_session, session_scope
from recon_kernel.domain.clock import DeterministicClock
from recon_kernel.exceptions import (
    ConfigError,
    DecisionNotPersistableError,
    InvalidRecordError,
    ReconKernelError,
    RepositoryError,
    RepositoryNotConfiguredError,
)
from recon_kernel.models import DocumentModel
from recon_kernel.utils.hashing import canonicalize_json, hash_id_sets, hash_payload


class TestDeterministicClock:

    def test_fixed_until_advanced(self):
        clock = DeterministicClock(datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc))
        assert clock.now_utc() == clock.now_utc()
        clock.advance(30)
        assert clock.now_utc() == datetime(2025, 3, 1, 12, 0, 30, tzinfo=timezone.utc)

    def test_naive_time_taken_as_utc(self):
        clock = DeterministicClock(datetime(2025, 3, 1, 12, 0))
        assert clock.now_utc().tzinfo == timezone.utc

    def test_advance_days(self):
        clock = DeterministicClock(datetime(2025, 3, 1, tzinfo=timezone.utc))
        clock.advance_days(2)
        assert clock.today() == date(2025, 3, 3)


class TestHashing:

    def test_decimal_scale_ignored(self):
        assert hash_payload({"amount": Decimal("9.00")}) == hash_payload({"amount": Decimal("9")})

    def test_key_order_ignored(self):
        assert canonicalize_json({"b": 1, "a": 2}) == '{"a":2,"b":1}'

    def test_id_sets_order_independent(self):
        assert hash_id_sets(["t2", "t1", "t1"], ["d1"]) == hash_id_sets(("t1", "t2"), ("d1",))
        assert hash_id_sets(["t1"], ["d1"]) != hash_id_sets(["d1"], ["t1"])


class TestExceptions:

    def test_codes(self):
        assert DecisionNotPersistableError("k", "missing_ids_for_final").code == "DECISION_NOT_PERSISTABLE"
        assert InvalidRecordError("document", "missing id").code == "INVALID_RECORD"

    def test_repository_not_configured_is_repository_error(self):
        exc = RepositoryNotConfiguredError("audit")
        assert isinstance(exc, RepositoryError)
        assert isinstance(exc, ReconKernelError)
        assert exc.operation == "audit"
        assert exc.reason == "no repository configured"

    def test_config_errors_share_base(self):
        from recon_kernel.exceptions import ConfigFileError, InvalidConfigError

        assert issubclass(InvalidConfigError, ConfigError)
        assert issubclass(ConfigFileError, ConfigError)


class TestSessionScope:

    def test_commit_on_success(self, db_engine):
        with session_scope() as session:
            session.add(DocumentModel(tenant_id="tenant-1", external_id="d1"))

        other = get_session()
        try:
            row = other.execute(select(DocumentModel)).scalar_one()
            assert row.external_id == "d1"
            assert row.link_state == "unlinked"
        finally:
            other.close()

    def test_rollback_on_error(self, db_engine):
        with pytest.raises(RuntimeError):
            with session_scope() as session:
                session.add(DocumentModel(tenant_id="tenant-1", external_id="d1"))
                session.flush()
                raise RuntimeError("boom")

        other = get_session()
        try:
            assert other.execute(select(DocumentModel)).first() is None
        finally:
            other.close()
