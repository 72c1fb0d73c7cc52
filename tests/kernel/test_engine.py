"""Tests for the module-level engine and session helpers."""

import pytest
from sqlalchemy import func, select
from sqlalchemy.pool import StaticPool

from stepflow_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_engine,
    get_session,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
    session_scope,
)

from stepflow_batch.models.batch import JobInstanceModel


@pytest.fixture
def sqlite_engine():
    engine = init_engine_from_url("sqlite://", pool_pre_ping=False)
    create_tables()
    yield engine
    reset_engine()


def _instance_count(session):
    return session.execute(select(func.count(JobInstanceModel.id))).scalar_one()


class TestEngineLifecycle:
    def test_uninitialized_engine(self):
        reset_engine()
        with pytest.raises(RuntimeError, match="not initialized"):
            get_engine()
        with pytest.raises(RuntimeError):
            get_session()
        with pytest.raises(RuntimeError):
            get_session_factory()

    def test_init_and_reset(self, sqlite_engine):
        assert get_engine() is sqlite_engine
        reset_engine()
        with pytest.raises(RuntimeError):
            get_engine()

    def test_reinit_replaces_engine(self, sqlite_engine):
        second = init_engine_from_url("sqlite://", pool_pre_ping=False)
        assert get_engine() is second
        assert second is not sqlite_engine

    def test_in_memory_sqlite_uses_static_pool(self, sqlite_engine):
        assert isinstance(sqlite_engine.pool, StaticPool)


class TestSessionScope:
    def test_commits_on_success(self, sqlite_engine):
        with session_scope() as session:
            session.add(JobInstanceModel(job_name="job", job_key="k1"))

        with session_scope() as session:
            assert _instance_count(session) == 1

    def test_rolls_back_on_error(self, sqlite_engine):
        with pytest.raises(RuntimeError):
            with session_scope() as session:
                session.add(JobInstanceModel(job_name="job", job_key="k1"))
                session.flush()
                raise RuntimeError("abort")

        with session_scope() as session:
            assert _instance_count(session) == 0

    def test_savepoint_rollback_keeps_outer_work(self, sqlite_engine):
        """A rolled-back chunk SAVEPOINT discards only its own rows."""
        with session_scope() as session:
            session.add(JobInstanceModel(job_name="job", job_key="kept"))
            session.flush()
            chunk = session.begin_nested()
            session.add(JobInstanceModel(job_name="job", job_key="discarded"))
            session.flush()
            chunk.rollback()

        with session_scope() as session:
            keys = session.execute(select(JobInstanceModel.job_key)).scalars().all()
            assert keys == ["kept"]

    def test_drop_tables(self, sqlite_engine):
        drop_tables()
        create_tables()
        with session_scope() as session:
            assert _instance_count(session) == 0
