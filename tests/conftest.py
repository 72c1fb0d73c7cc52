"""
Pytest fixtures for the stepflow test suite.

Provides:
- Structured logging for the whole session and a ``captured_logs`` fixture
- In-memory SQLite sessions with the job repository tables created
- A deterministic clock
- In-memory flow executor and recording listener helpers
"""

import json
import logging
from io import StringIO
from typing import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from stepflow_kernel.db.base import Base
from stepflow_kernel.db.engine import enable_sqlite_savepoints
from stepflow_kernel.domain.clock import DeterministicClock
from stepflow_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)

import stepflow_batch.models  # noqa: F401  registers the repository tables
from stepflow_batch.domain.types import (
    ExitStatus,
    FlowExecution,
    JobExecution,
    StepExecution,
)


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
    Capture stepflow logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs):
            job.execute(job_execution)
            logs = captured_logs()
            assert any(r["message"] == "job_completed" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("stepflow")
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
# Database fixtures
# =============================================================================


@pytest.fixture
def db_engine():
    """In-memory SQLite engine shared by every connection of one test."""
    engine = enable_sqlite_savepoints(
        create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    )

    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session(db_engine) -> Generator[Session, None, None]:
    factory = sessionmaker(bind=db_engine, expire_on_commit=False)
    db_session = factory()
    yield db_session
    db_session.rollback()
    db_session.close()


# =============================================================================
# Clock fixtures
# =============================================================================


@pytest.fixture
def deterministic_clock():
    """Clock advancing one second per read so start and end times differ."""
    return DeterministicClock(auto_advance=1)


# =============================================================================
# Flow helpers
# =============================================================================


class FakeStep:
    """Step stand-in returning scripted exit codes, one per execution."""

    def __init__(self, name: str, *exit_codes: str):
        self.name = name
        self.start_limit = 2**31 - 1
        self.allow_start_if_complete = False
        self._codes = list(exit_codes) or ["COMPLETED"]
        self.calls = 0

    def next_code(self) -> str:
        code = self._codes[min(self.calls, len(self._codes) - 1)]
        self.calls += 1
        return code


class RecordingExecutor:
    """FlowExecutor that runs FakeSteps without a repository."""

    def __init__(self, job_execution: JobExecution | None = None):
        self.job_execution = job_execution or JobExecution(job_name="test")
        self.visited: list[str] = []
        self.step_execution: StepExecution | None = None
        self.closed: list[FlowExecution] = []
        self.exit_codes: list[str] = []
        # Copied into every step execution this executor creates
        self.step_context: dict = {}

    def execute_step(self, step) -> str:
        self.visited.append(step.name)
        code = step.next_code()
        self.step_execution = self.job_execution.create_step_execution(step.name)
        self.step_execution.exit_status = ExitStatus(code)
        self.step_execution.execution_context = dict(self.step_context)
        return code

    def get_job_execution(self) -> JobExecution:
        return self.job_execution

    def get_step_execution(self) -> StepExecution | None:
        return self.step_execution

    def close(self, result: FlowExecution) -> None:
        self.closed.append(result)

    def add_exit_status(self, code: str) -> None:
        self.exit_codes.append(code)


class RecordingListener:
    """Records every listener hook it receives."""

    def __init__(self):
        self.events: list[tuple] = []

    def on_skip_in_read(self, error):
        self.events.append(("skip_read", type(error).__name__))

    def on_skip_in_process(self, item, error):
        self.events.append(("skip_process", item))

    def on_skip_in_write(self, items, error):
        self.events.append(("skip_write", list(items)))

    def on_retry_error(self, error, attempt):
        self.events.append(("retry_error", attempt))

    def on_retry_exhausted(self, error):
        self.events.append(("retry_exhausted", type(error).__name__))

    def before_step(self, step_execution):
        self.events.append(("before_step", step_execution.step_name))

    def after_step(self, step_execution):
        self.events.append(("after_step", step_execution.step_name))
        return None

    def before_job(self, job_execution):
        self.events.append(("before_job", job_execution.job_name))

    def after_job(self, job_execution):
        self.events.append(("after_job", job_execution.job_name))

    def of(self, kind: str) -> list[tuple]:
        return [e for e in self.events if e[0] == kind]


@pytest.fixture
def executor():
    return RecordingExecutor()


@pytest.fixture
def recording_listener():
    return RecordingListener()


@pytest.fixture
def make_step():
    """Factory for FakeStep: ``make_step("S1", "FAILED", "COMPLETED")``."""
    return FakeStep


@pytest.fixture
def make_executor():
    """Factory for RecordingExecutor around a given JobExecution."""
    return RecordingExecutor
