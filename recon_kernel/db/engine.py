"""
Module: recon_kernel.db.engine
Responsibility: Own the process-wide SQLAlchemy engine for the reconciliation
    store and hand out sessions bound to it.
Architecture position: Kernel > DB.  Imports db/base.py; create_tables and
    drop_tables import recon_kernel.models lazily so the metadata is
    populated without a module-level cycle.

Invariants enforced:
    - At most one engine is live.  Initializing again disposes the old one.
    - session_scope() commits when its block exits normally and rolls back
      when the block raises; the session is always closed.
    - An in-memory SQLite URL is served through a single shared connection,
      so the schema created by one session is visible to every other.

Failure modes:
    - RuntimeError from get_engine / get_session / get_session_factory /
      session_scope before init_engine_from_url().

Usage:
    init_engine_from_url("sqlite://")
    create_tables()
    with session_scope() as session:
        SqlMatchRepository(session, clock).apply_matches(result.final)
"""

from contextlib import contextmanager
from typing import Any, Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import URL, Engine, make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from recon_kernel.logging_config import get_logger

logger = get_logger("db.engine")

_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None

_NOT_INITIALIZED = "Reconciliation store not initialized; call init_engine_from_url() first."


def _is_memory_sqlite(url: URL) -> bool:
    return url.get_backend_name() == "sqlite" and url.database in (None, "", ":memory:")


def _engine_options(url: URL, echo: bool, pool_pre_ping: bool) -> dict[str, Any]:
    options: dict[str, Any] = {"echo": echo, "pool_pre_ping": pool_pre_ping}
    if _is_memory_sqlite(url):
        options["poolclass"] = StaticPool
        options["connect_args"] = {"check_same_thread": False}
    return options


def init_engine_from_url(
    database_url: str,
    echo: bool = False,
    pool_pre_ping: bool = True,
) -> Engine:
    """
    Create the engine and session factory for ``database_url``.

    Sessions do not expire loaded rows on commit, so decisions read back
    after a write stay usable outside the transaction.
    """
    global _engine, _session_factory

    url = make_url(database_url)
    reset_engine()

    _engine = create_engine(url, **_engine_options(url, echo, pool_pre_ping))
    _session_factory = sessionmaker(bind=_engine, expire_on_commit=False)

    logger.info(
        "store_engine_initialized",
        extra={
            "dialect": _engine.dialect.name,
            "in_memory": _is_memory_sqlite(url),
        },
    )
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        raise RuntimeError(_NOT_INITIALIZED)
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    if _session_factory is None:
        raise RuntimeError(_NOT_INITIALIZED)
    return _session_factory


def get_session() -> Session:
    """New session; the caller owns commit and close."""
    return get_session_factory()()


@contextmanager
def session_scope() -> Iterator[Session]:
    """One transaction around a block of repository calls."""
    session = get_session()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        logger.warning("store_transaction_rolled_back", exc_info=True)
        raise
    finally:
        session.close()


def create_tables() -> None:
    from recon_kernel.db.base import Base
    import recon_kernel.models  # noqa: F401

    Base.metadata.create_all(get_engine())


def drop_tables() -> None:
    from recon_kernel.db.base import Base
    import recon_kernel.models  # noqa: F401

    Base.metadata.drop_all(get_engine())


def reset_engine() -> None:
    """Dispose the current engine, if any, and forget the session factory."""
    global _engine, _session_factory

    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None
