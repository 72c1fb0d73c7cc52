"""
Steps -- the unit of work a StepState runs.

Contract:
    ``Step.execute(step_execution)`` runs the step to a terminal status
    (COMPLETED, FAILED or STOPPED) and never raises for a failure of the
    step's own work: the error is recorded on the execution instead.
    ``name``, ``start_limit`` and ``allow_start_if_complete`` drive the
    restart rules applied by SimpleStepHandler.

Lifecycle (AbstractStep):
    STARTED -> before_step -> open streams -> do_execute
      -> COMPLETED (``batch.executed`` set in the step context)
      -> STOPPED   (stop requested: ``terminate_only`` seen)
      -> FAILED    (any other error)
    then after_step listeners may refine the exit status, the execution
    context and record are persisted and the streams closed.

ChunkOrientedStep:
    One transaction per chunk.  Counts reach the step execution only when
    the chunk commits.  A write skip rolls the chunk back and replays its
    outputs one item per transaction to isolate the failing items.
"""

from __future__ import annotations

from collections.abc import Iterable
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from stepflow_kernel.domain.clock import Clock, SystemClock
from stepflow_kernel.exceptions import JobInterruptedError
from stepflow_kernel.logging_config import LogContext, get_logger

from stepflow_batch.domain.chunk import ChunkResult, WriteOutcomeKind
from stepflow_batch.domain.types import (
    EXECUTED_KEY,
    BatchStatus,
    ExitStatus,
    StepContribution,
    StepExecution,
)
from stepflow_batch.step.chunk_processor import ChunkProcessor
from stepflow_batch.step.item import ItemStream
from stepflow_batch.step.listeners import CompositeListener
from stepflow_batch.step.transaction import (
    ResourcelessTransactionManager,
    Transaction,
    TransactionManager,
)

if TYPE_CHECKING:
    from stepflow_batch.services.repository import JobRepository

logger = get_logger("batch.step")


@runtime_checkable
class Step(Protocol):
    name: str
    start_limit: int
    allow_start_if_complete: bool

    def execute(self, step_execution: StepExecution) -> None: ...


class RepeatStatus(str, Enum):
    CONTINUABLE = "CONTINUABLE"
    FINISHED = "FINISHED"


class AbstractStep:
    """Shared lifecycle; subclasses implement ``do_execute``."""

    def __init__(
        self,
        name: str,
        *,
        job_repository: JobRepository | None = None,
        listeners: Iterable[Any] = (),
        start_limit: int = 2**31 - 1,
        allow_start_if_complete: bool = False,
        clock: Clock | None = None,
    ):
        self.name = name
        self.job_repository = job_repository
        self.listener = CompositeListener(listeners)
        self.start_limit = start_limit
        self.allow_start_if_complete = allow_start_if_complete
        self._clock = clock or SystemClock()

    def register_listener(self, listener: Any) -> None:
        self.listener.register(listener)

    def do_execute(self, step_execution: StepExecution) -> None:
        raise NotImplementedError

    def open(self, context: dict[str, Any]) -> None:
        """Hook called before ``do_execute``."""

    def close(self, context: dict[str, Any]) -> None:
        """Hook called after ``do_execute``, even on failure."""

    def execute(self, step_execution: StepExecution) -> None:
        with LogContext.bind(
            step_name=self.name, step_execution_id=str(step_execution.id),
        ):
            self._execute(step_execution)

    def _execute(self, step_execution: StepExecution) -> None:
        step_execution.start_time = self._clock.now()
        step_execution.status = BatchStatus.STARTED
        self._update(step_execution)
        logger.info("step_started", extra={"step": self.name})

        exit_status = ExitStatus.EXECUTING
        try:
            self.listener.before_step(step_execution)
            self.open(step_execution.execution_context)
            self.do_execute(step_execution)
            exit_status = ExitStatus.COMPLETED.and_(step_execution.exit_status)
            if step_execution.terminate_only:
                raise JobInterruptedError("Step execution interrupted.")
            step_execution.upgrade_status(BatchStatus.COMPLETED)
            step_execution.execution_context[EXECUTED_KEY] = True
        except Exception as exc:
            step_execution.upgrade_status(_batch_status_for(exc))
            exit_status = exit_status.and_(_exit_status_for(exc))
            step_execution.add_failure_exception(exc)
            if step_execution.status == BatchStatus.STOPPED:
                logger.info("step_stopped", extra={"step": self.name})
            else:
                logger.error(
                    "step_failed", extra={"step": self.name}, exc_info=exc,
                )

        try:
            exit_status = exit_status.and_(step_execution.exit_status)
            step_execution.exit_status = exit_status
            refined = self.listener.after_step(step_execution)
            if refined is not None:
                exit_status = exit_status.and_(refined)
        except Exception as exc:
            logger.error(
                "after_step_listener_failed", extra={"step": self.name}, exc_info=exc,
            )
            step_execution.add_failure_exception(exc)

        step_execution.end_time = self._clock.now()
        step_execution.exit_status = exit_status

        try:
            self._update_context(step_execution)
            self._update(step_execution)
        except Exception as exc:
            logger.error(
                "step_persist_failed", extra={"step": self.name}, exc_info=exc,
            )
            step_execution.status = BatchStatus.UNKNOWN
            step_execution.exit_status = exit_status.and_(ExitStatus.UNKNOWN)
            step_execution.add_failure_exception(exc)

        try:
            self.close(step_execution.execution_context)
        except Exception as exc:
            logger.error(
                "step_close_failed", extra={"step": self.name}, exc_info=exc,
            )
            step_execution.add_failure_exception(exc)

        logger.info(
            "step_completed",
            extra={
                "step": self.name,
                "status": step_execution.status.value,
                "exit_code": step_execution.exit_status.exit_code,
                "read_count": step_execution.read_count,
                "write_count": step_execution.write_count,
                "filter_count": step_execution.filter_count,
                "skip_count": step_execution.skip_count,
                "commit_count": step_execution.commit_count,
                "rollback_count": step_execution.rollback_count,
            },
        )

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    def _update(self, step_execution: StepExecution) -> None:
        if self.job_repository is not None:
            step_execution.last_updated = self._clock.now()
            self.job_repository.update_step_execution(step_execution)

    def _update_context(self, step_execution: StepExecution) -> None:
        if self.job_repository is not None:
            self.job_repository.update_step_execution_context(step_execution)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


def _batch_status_for(error: BaseException) -> BatchStatus:
    if isinstance(error, JobInterruptedError):
        return BatchStatus.STOPPED
    return BatchStatus.FAILED


def _exit_status_for(error: BaseException) -> ExitStatus:
    if isinstance(error, JobInterruptedError):
        return ExitStatus.STOPPED.add_exit_description(error)
    return ExitStatus.FAILED.add_exit_description(error)


# =============================================================================
# TaskletStep
# =============================================================================


class TaskletStep(AbstractStep):
    """Calls ``tasklet`` until it returns FINISHED (or None).

    Each call runs in its own transaction.  The tasklet may be a callable
    or an object with an ``execute(contribution, step_execution)`` method.
    """

    def __init__(
        self,
        name: str,
        tasklet: Any,
        *,
        transaction_manager: TransactionManager | None = None,
        **kwargs: Any,
    ):
        super().__init__(name, **kwargs)
        self.tasklet = tasklet
        self.transaction_manager = transaction_manager or ResourcelessTransactionManager()

    def _call(
        self, contribution: StepContribution, step_execution: StepExecution,
    ) -> RepeatStatus | None:
        execute = getattr(self.tasklet, "execute", None)
        if callable(execute):
            return execute(contribution, step_execution)
        return self.tasklet(contribution, step_execution)

    def do_execute(self, step_execution: StepExecution) -> None:
        while not step_execution.terminate_only:
            contribution = step_execution.create_contribution()
            transaction = self.transaction_manager.begin()
            try:
                result = self._call(contribution, step_execution)
            except Exception:
                transaction.rollback()
                step_execution.rollback_count += 1
                raise
            transaction.commit()
            step_execution.apply(contribution)
            step_execution.commit_count += 1
            self._update(step_execution)
            if result is None or result == RepeatStatus.FINISHED:
                return


# =============================================================================
# ChunkOrientedStep
# =============================================================================


class ChunkOrientedStep(AbstractStep):
    """Runs a chunk processor chunk after chunk until input is exhausted."""

    def __init__(
        self,
        name: str,
        chunk_processor: ChunkProcessor,
        *,
        transaction_manager: TransactionManager | None = None,
        streams: Iterable[ItemStream] = (),
        **kwargs: Any,
    ):
        super().__init__(name, **kwargs)
        self.chunk_processor = chunk_processor
        self.transaction_manager = transaction_manager or ResourcelessTransactionManager()
        self._streams: list[ItemStream] = list(chunk_processor.streams)
        for stream in streams:
            if not any(stream is s for s in self._streams):
                self._streams.append(stream)

    def open(self, context: dict[str, Any]) -> None:
        for stream in self._streams:
            stream.open(context)

    def close(self, context: dict[str, Any]) -> None:
        for stream in self._streams:
            stream.close()

    def do_execute(self, step_execution: StepExecution) -> None:
        processor = self.chunk_processor
        while True:
            if step_execution.terminate_only:
                logger.info("step_stop_observed", extra={"step": self.name})
                return

            contribution = step_execution.create_contribution()
            transaction = self.transaction_manager.begin()
            try:
                result = processor.process_chunk(contribution)
            except Exception as exc:
                if processor.rollback_on(exc):
                    self._rollback(transaction, step_execution)
                else:
                    self._commit(transaction, step_execution, contribution)
                raise

            outcome = result.outcome
            if outcome.kind == WriteOutcomeKind.SKIPPED_WITH_ROLLBACK:
                self._rollback(transaction, step_execution)
                self._scan(step_execution, contribution, result)
            elif outcome.kind == WriteOutcomeKind.FAILED:
                assert outcome.error is not None
                if outcome.rollback:
                    self._rollback(transaction, step_execution)
                else:
                    self._commit(transaction, step_execution, contribution)
                raise outcome.error
            else:
                self._commit(transaction, step_execution, contribution)

            if result.is_end:
                return

    def _scan(
        self,
        step_execution: StepExecution,
        contribution: StepContribution,
        result: ChunkResult,
    ) -> None:
        """Replay the chunk's outputs one item per transaction."""
        logger.info(
            "chunk_scan_started",
            extra={"step": self.name, "items": len(result.outputs)},
        )
        scan = contribution.without_writes()
        for item in result.outputs:
            transaction = self.transaction_manager.begin()
            try:
                outcome = self.chunk_processor.scan_item(scan, item)
            except Exception:
                self._rollback(transaction, step_execution)
                self._apply(step_execution, scan)
                raise

            if outcome.kind == WriteOutcomeKind.COMMITTED:
                transaction.commit()
                step_execution.commit_count += 1
            elif outcome.kind == WriteOutcomeKind.SKIPPED_WITH_ROLLBACK:
                transaction.rollback()
            else:
                assert outcome.error is not None
                self._rollback(transaction, step_execution)
                self._apply(step_execution, scan)
                raise outcome.error

        for stream in self._streams:
            stream.update(step_execution.execution_context)
        self._apply(step_execution, scan)

    # ------------------------------------------------------------------
    # Transaction boundaries
    # ------------------------------------------------------------------

    def _commit(
        self,
        transaction: Transaction,
        step_execution: StepExecution,
        contribution: StepContribution,
    ) -> None:
        for stream in self._streams:
            stream.update(step_execution.execution_context)
        transaction.commit()
        step_execution.commit_count += 1
        self._apply(step_execution, contribution)
        logger.debug(
            "chunk_committed",
            extra={
                "step": self.name,
                "read_count": contribution.read_count,
                "write_count": contribution.write_count,
                "filter_count": contribution.filter_count,
                "skip_count": contribution.skip_count,
            },
        )

    def _rollback(self, transaction: Transaction, step_execution: StepExecution) -> None:
        transaction.rollback()
        step_execution.rollback_count += 1
        logger.debug("chunk_rolled_back", extra={"step": self.name})

    def _apply(self, step_execution: StepExecution, contribution: StepContribution) -> None:
        step_execution.apply(contribution)
        self._update(step_execution)
