"""
Module: stepflow_kernel.db.engine
Responsibility: one process-wide engine and session factory for the job
    repository, plus the SQLite adjustments the chunk engine depends on.
Architecture position: Kernel > DB.  May import from db/base.py.

Chunk transactions are SAVEPOINTs (``Session.begin_nested()``), so every
SQLite engine built here has pysqlite's implicit transaction handling
switched off and emits ``BEGIN`` itself.  An in-memory SQLite URL gets a
``StaticPool`` so the launcher and an operator thread see the same
database.

Failure modes:
    - RuntimeError if get_engine/get_session/get_session_factory are called
      before init_engine_from_url() or after reset_engine().
"""

import atexit
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from stepflow_kernel.db.base import Base
from stepflow_kernel.logging_config import get_logger

logger = get_logger("db.engine")


@dataclass(frozen=True)
class _Bound:
    engine: Engine
    sessions: sessionmaker[Session]


_bound: _Bound | None = None


def _require() -> _Bound:
    if _bound is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _bound


def enable_sqlite_savepoints(engine: Engine) -> Engine:
    """Let SQLAlchemy, not pysqlite, open transactions on ``engine``.

    Without this, pysqlite defers BEGIN and a SAVEPOINT issued at the
    start of a chunk is released by the driver behind the session's back.
    """

    @event.listens_for(engine, "connect")
    def _autocommit_driver(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _explicit_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN")

    return engine


def init_engine_from_url(
    database_url: str,
    echo: bool = False,
    pool_pre_ping: bool = True,
    isolation_level: str | None = None,
    **engine_options: Any,
) -> Engine:
    """
    Build the engine and session factory used by ``get_session``.

    A second call disposes the previous engine first.

    Args:
        database_url: SQLAlchemy URL (``postgresql://...``, ``sqlite://``).
        echo: Log every SQL statement.
        pool_pre_ping: Test pooled connections before use.
        isolation_level: e.g. ``"READ COMMITTED"``; ignored for SQLite,
            whose driver transaction handling is taken over here.
        **engine_options: Passed to ``create_engine`` (pool sizes, timeouts).
    """
    global _bound

    url = make_url(database_url)
    sqlite = url.get_backend_name() == "sqlite"

    if sqlite:
        if url.database in (None, "", ":memory:"):
            engine_options.setdefault("poolclass", StaticPool)
            engine_options.setdefault("connect_args", {"check_same_thread": False})
    elif isolation_level is not None:
        engine_options["isolation_level"] = isolation_level

    reset_engine()
    engine = create_engine(url, echo=echo, pool_pre_ping=pool_pre_ping, **engine_options)
    if sqlite:
        enable_sqlite_savepoints(engine)

    _bound = _Bound(engine, sessionmaker(bind=engine, expire_on_commit=False))
    logger.info(
        "engine_initialized",
        extra={
            "dialect": engine.dialect.name,
            "database": url.database,
            "echo": echo,
            "isolation_level": isolation_level,
        },
    )
    return engine


def get_engine() -> Engine:
    return _require().engine


def get_session() -> Session:
    """A new session; the caller commits and closes it."""
    return _require().sessions()


def get_session_factory() -> sessionmaker[Session]:
    """Factory for callers that open one session per launched job."""
    return _require().sessions


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """
    Commit on normal exit; roll back and re-raise on exception.

    Usage:
        with session_scope() as session:
            launcher = JobLauncher(SqlJobRepository(session))
            launcher.run(job, parameters)
    """
    session = get_session()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        logger.warning("session_rolled_back", exc_info=True)
        raise
    finally:
        session.close()


def create_tables() -> None:
    """Create the job instance, job execution and step execution tables."""
    import stepflow_batch.models  # noqa: F401  registers the tables on Base.metadata

    Base.metadata.create_all(get_engine())


def drop_tables() -> None:
    """Drop every job repository table. For tests and local resets."""
    Base.metadata.drop_all(get_engine())


def reset_engine() -> None:
    """Dispose the engine and forget the session factory."""
    global _bound
    if _bound is not None:
        _bound.engine.dispose()
        _bound = None


atexit.register(reset_engine)
