"""
Tests for TaskletStep and ChunkOrientedStep.

Steps run without a job repository here; persistence of step executions
is covered by the job-level tests.
"""

import pytest
from sqlalchemy import func, select

from stepflow_batch.domain.types import (
    EXECUTED_KEY,
    BatchStatus,
    ExitStatus,
    JobExecution,
    StepExecution,
)
from stepflow_batch.models.batch import JobInstanceModel
from stepflow_batch.step.base import ChunkOrientedStep, RepeatStatus, TaskletStep
from stepflow_batch.step.chunk_processor import (
    FaultTolerantChunkProcessor,
    SimpleChunkProcessor,
)
from stepflow_batch.step.item import ListItemReader, ListItemWriter
from stepflow_batch.step.listeners import CompositeListener
from stepflow_batch.step.retry import SimpleRetryPolicy
from stepflow_batch.step.skip import LimitCheckingItemSkipPolicy
from stepflow_batch.step.transaction import SessionTransactionManager


class ParseError(ValueError):
    pass


class ScriptedReader:
    def __init__(self, script):
        self._script = list(script)
        self._position = 0

    def read(self):
        if self._position >= len(self._script):
            return None
        entry = self._script[self._position]
        self._position += 1
        if isinstance(entry, Exception):
            raise entry
        return entry


class RejectingWriter:
    """Writes chunks unless they contain a rejected item."""

    def __init__(self, rejected=(), error=ParseError):
        self.rejected = set(rejected)
        self.error = error
        self.written = []

    def write(self, items):
        if self.rejected.intersection(items):
            raise self.error(f"rejected {sorted(self.rejected.intersection(items))}")
        self.written.extend(items)


def _step_execution(name="load"):
    return JobExecution(job_name="job").create_step_execution(name)


def _fault_tolerant_step(reader, writer, processor=None, *, listener=None, chunk_size=2,
                         skip_limit=10, max_attempts=1, **kwargs):
    listeners = [listener] if listener else []
    chunk_processor = FaultTolerantChunkProcessor(
        reader,
        writer,
        processor,
        chunk_size=chunk_size,
        listener=CompositeListener(listeners),
        skip_policy=LimitCheckingItemSkipPolicy(skip_limit, (ParseError,)),
        retry_policy=SimpleRetryPolicy(max_attempts=max_attempts, retryable=(ConnectionError,)),
    )
    return ChunkOrientedStep("load", chunk_processor, listeners=listeners, **kwargs)


# =============================================================================
# TaskletStep
# =============================================================================


class TestTaskletStep:
    def test_callable_tasklet_completes(self):
        calls = []
        step = TaskletStep("cleanup", lambda contribution, se: calls.append(se.step_name))
        step_execution = _step_execution("cleanup")

        step.execute(step_execution)

        assert calls == ["cleanup"]
        assert step_execution.status == BatchStatus.COMPLETED
        assert step_execution.exit_status.exit_code == "COMPLETED"
        assert step_execution.commit_count == 1
        assert step_execution.execution_context[EXECUTED_KEY] is True
        assert step_execution.start_time is not None
        assert step_execution.end_time is not None

    def test_tasklet_object_repeats_while_continuable(self):
        class CountingTasklet:
            def __init__(self):
                self.calls = 0

            def execute(self, contribution, step_execution):
                self.calls += 1
                contribution.increment_read_count()
                if self.calls < 3:
                    return RepeatStatus.CONTINUABLE
                return RepeatStatus.FINISHED

        tasklet = CountingTasklet()
        step_execution = _step_execution()

        TaskletStep("count", tasklet).execute(step_execution)

        assert tasklet.calls == 3
        assert step_execution.commit_count == 3
        assert step_execution.read_count == 3

    def test_failing_tasklet_marks_step_failed(self):
        def tasklet(contribution, step_execution):
            contribution.increment_read_count()
            raise RuntimeError("disk full")

        step_execution = _step_execution()
        TaskletStep("broken", tasklet).execute(step_execution)

        assert step_execution.status == BatchStatus.FAILED
        assert step_execution.exit_status.exit_code == "FAILED"
        assert "disk full" in step_execution.exit_status.exit_description
        assert step_execution.rollback_count == 1
        assert step_execution.read_count == 0
        assert isinstance(step_execution.failure_exceptions[0], RuntimeError)
        assert EXECUTED_KEY not in step_execution.execution_context


# =============================================================================
# ChunkOrientedStep
# =============================================================================


class TestChunkOrientedStep:
    def test_simple_chunks(self):
        writer = ListItemWriter()
        step = ChunkOrientedStep(
            "load", SimpleChunkProcessor(ListItemReader([1, 2, 3, 4, 5]), writer, chunk_size=2),
        )
        step_execution = _step_execution()

        step.execute(step_execution)

        assert writer.chunks == [[1, 2], [3, 4], [5]]
        assert step_execution.status == BatchStatus.COMPLETED
        assert step_execution.read_count == 5
        assert step_execution.write_count == 5
        assert step_execution.commit_count == 3
        assert step_execution.rollback_count == 0

    def test_counts_balance_with_skips_and_filters(self):
        """Every read item is written, filtered or skipped."""

        def processor(item):
            if item == 4:
                return None
            if item == 5:
                raise ParseError("bad 5")
            return item

        writer = RejectingWriter()
        step = _fault_tolerant_step(
            ScriptedReader([1, ParseError("row"), 2, 3, 4, 5]), writer, processor,
        )
        step_execution = _step_execution()

        step.execute(step_execution)

        assert step_execution.status == BatchStatus.COMPLETED
        assert writer.written == [1, 2, 3]
        assert step_execution.read_count == 5
        assert step_execution.read_skip_count == 1
        assert step_execution.filter_count == 1
        assert step_execution.process_skip_count == 1
        assert step_execution.write_count == 3
        assert step_execution.read_count == (
            step_execution.write_count
            + step_execution.filter_count
            + step_execution.process_skip_count
            + step_execution.write_skip_count
        )

    def test_write_skip_scans_items_one_by_one(self, recording_listener):
        writer = RejectingWriter(rejected={3})
        step = _fault_tolerant_step(
            ListItemReader([1, 2, 3, 4]), writer, listener=recording_listener,
        )
        step_execution = _step_execution()

        step.execute(step_execution)

        assert step_execution.status == BatchStatus.COMPLETED
        assert writer.written == [1, 2, 4]
        assert step_execution.write_count == 3
        assert step_execution.write_skip_count == 1
        assert step_execution.read_count == 4
        assert step_execution.rollback_count == 1
        # chunk [1, 2], scanned item 4, final empty chunk
        assert step_execution.commit_count == 3
        assert recording_listener.of("skip_write") == [
            ("skip_write", [3, 4]),
            ("skip_write", [3]),
        ]

    def test_skip_limit_fails_the_step(self):
        step = _fault_tolerant_step(
            ScriptedReader([1, ParseError("a"), ParseError("b"), 2]),
            ListItemWriter(),
            skip_limit=1,
        )
        step_execution = _step_execution()

        step.execute(step_execution)

        assert step_execution.status == BatchStatus.FAILED
        assert step_execution.read_skip_count == 0
        assert step_execution.rollback_count == 1

    def test_non_skippable_write_failure(self):
        writer = RejectingWriter(rejected={2}, error=KeyError)
        step = _fault_tolerant_step(ListItemReader([1, 2]), writer)
        step_execution = _step_execution()

        step.execute(step_execution)

        assert step_execution.status == BatchStatus.FAILED
        assert step_execution.write_count == 0
        assert step_execution.read_count == 0
        assert step_execution.rollback_count == 1

    def test_reader_position_saved_for_restart(self):
        step_execution = _step_execution()
        ChunkOrientedStep(
            "load", SimpleChunkProcessor(ListItemReader([1, 2, 3]), ListItemWriter(), chunk_size=2),
        ).execute(step_execution)

        assert step_execution.execution_context["list_reader.read.count"] == 3

    def test_restart_resumes_after_last_commit(self):
        writer = ListItemWriter()
        step = ChunkOrientedStep(
            "load", SimpleChunkProcessor(ListItemReader([1, 2, 3]), writer, chunk_size=2),
        )
        step_execution = _step_execution()
        step_execution.execution_context["list_reader.read.count"] = 2

        step.execute(step_execution)

        assert writer.written == [3]
        assert step_execution.read_count == 1

    def test_stop_requested_before_first_chunk(self):
        writer = ListItemWriter()
        step = ChunkOrientedStep(
            "load", SimpleChunkProcessor(ListItemReader([1, 2]), writer),
        )
        step_execution = _step_execution()
        step_execution.terminate_only = True

        step.execute(step_execution)

        assert step_execution.status == BatchStatus.STOPPED
        assert step_execution.exit_status.exit_code == "STOPPED"
        assert writer.chunks == []
        assert EXECUTED_KEY not in step_execution.execution_context

    def test_stop_observed_between_chunks(self):
        step_execution = _step_execution()

        class StoppingWriter(ListItemWriter):
            def write(self, items):
                super().write(items)
                step_execution.terminate_only = True

        writer = StoppingWriter()
        step = ChunkOrientedStep(
            "load", SimpleChunkProcessor(ListItemReader([1, 2, 3, 4]), writer, chunk_size=2),
        )

        step.execute(step_execution)

        assert writer.chunks == [[1, 2]]
        assert step_execution.status == BatchStatus.STOPPED
        assert step_execution.commit_count == 1

    def test_after_step_listener_refines_exit_status(self):
        class SkipReporter:
            def after_step(self, step_execution):
                if step_execution.skip_count:
                    return ExitStatus("COMPLETED WITH SKIPS")
                return None

        step = _fault_tolerant_step(
            ScriptedReader([1, ParseError("x")]), ListItemWriter(), listener=SkipReporter(),
        )
        step_execution = _step_execution()

        step.execute(step_execution)

        assert step_execution.status == BatchStatus.COMPLETED
        assert step_execution.exit_status.exit_code == "COMPLETED WITH SKIPS"

    def test_listener_order(self, recording_listener):
        step = ChunkOrientedStep(
            "load",
            SimpleChunkProcessor(ListItemReader([1]), ListItemWriter()),
            listeners=[recording_listener],
        )
        step.execute(_step_execution())
        assert recording_listener.events == [
            ("before_step", "load"),
            ("after_step", "load"),
        ]

    def test_failing_after_step_listener_is_recorded(self):
        class Broken:
            def after_step(self, step_execution):
                raise RuntimeError("listener bug")

        step = ChunkOrientedStep(
            "load",
            SimpleChunkProcessor(ListItemReader([1]), ListItemWriter()),
            listeners=[Broken()],
        )
        step_execution = _step_execution()

        step.execute(step_execution)

        assert step_execution.status == BatchStatus.COMPLETED
        assert any(isinstance(e, RuntimeError) for e in step_execution.failure_exceptions)


# =============================================================================
# SessionTransactionManager
# =============================================================================


class InstanceWriter:
    """Inserts a row per item; fails after inserting a chunk containing ``poison``."""

    def __init__(self, session, poison):
        self.session = session
        self.poison = poison

    def write(self, items):
        for item in items:
            self.session.add(JobInstanceModel(job_name="rows", job_key=str(item)))
        self.session.flush()
        if self.poison in items:
            raise KeyError(self.poison)


class TestSessionTransactionManager:
    def _row_count(self, session):
        return session.execute(
            select(func.count(JobInstanceModel.id)).where(JobInstanceModel.job_name == "rows")
        ).scalar_one()

    def test_rolled_back_chunk_leaves_no_rows(self, session):
        step = ChunkOrientedStep(
            "load",
            SimpleChunkProcessor(
                ListItemReader([1, 2, 3, 4]), InstanceWriter(session, poison=3), chunk_size=2,
            ),
            transaction_manager=SessionTransactionManager(session),
        )
        step_execution = _step_execution()

        step.execute(step_execution)

        assert step_execution.status == BatchStatus.FAILED
        assert step_execution.commit_count == 1
        assert step_execution.rollback_count == 1
        assert self._row_count(session) == 2

    def test_committed_chunks_survive(self, session):
        step = ChunkOrientedStep(
            "load",
            SimpleChunkProcessor(
                ListItemReader([1, 2, 3]), InstanceWriter(session, poison=None), chunk_size=2,
            ),
            transaction_manager=SessionTransactionManager(session),
        )
        step_execution = _step_execution()

        step.execute(step_execution)

        assert step_execution.status == BatchStatus.COMPLETED
        assert self._row_count(session) == 3
