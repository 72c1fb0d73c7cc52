"""
FlowJob -- a job whose steps are routed by a Flow.

Contract:
    ``execute(job_execution)`` runs the flow from its start state and
    leaves ``job_execution`` in a terminal status:
        COMPLETED / FAILED / STOPPED  from the flow's terminal status,
        STOPPED                       when a stop was requested,
        FAILED                        when the flow raised.
    Failures are recorded on the execution, never raised.

Restart:
    A restarted job runs the flow from the start again; steps that already
    completed are skipped by the step handler and report their previous
    exit code, so routing repeats up to the point of failure.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from stepflow_kernel.domain.clock import Clock, SystemClock
from stepflow_kernel.exceptions import FlowExecutionError, JobInterruptedError
from stepflow_kernel.logging_config import LogContext, get_logger

from stepflow_batch.domain.types import BatchStatus, ExitStatus, JobExecution
from stepflow_batch.flow.flow import Flow
from stepflow_batch.job.executor import JobFlowExecutor
from stepflow_batch.job.step_handler import SimpleStepHandler
from stepflow_batch.step.listeners import CompositeListener

if TYPE_CHECKING:
    from stepflow_batch.services.repository import JobRepository

logger = get_logger("batch.job")


@runtime_checkable
class Job(Protocol):
    name: str
    restartable: bool

    def execute(self, job_execution: JobExecution) -> None: ...


class FlowJob:
    """Job backed by a Flow."""

    def __init__(
        self,
        name: str,
        flow: Flow,
        *,
        job_repository: JobRepository | None = None,
        restartable: bool = True,
        listeners: Iterable[Any] = (),
        clock: Clock | None = None,
    ):
        self.name = name
        self.flow = flow
        self.job_repository = job_repository
        self.restartable = restartable
        self.listener = CompositeListener(listeners)
        self._clock = clock or SystemClock()

    def register_listener(self, listener: Any) -> None:
        self.listener.register(listener)

    def execute(self, job_execution: JobExecution) -> None:
        with LogContext.bind(
            job_name=self.name, job_execution_id=str(job_execution.id),
        ):
            self._execute(job_execution)

    def _execute(self, job_execution: JobExecution) -> None:
        logger.info("job_started", extra={"parameters": job_execution.parameters})

        try:
            if job_execution.status != BatchStatus.STOPPING:
                job_execution.start_time = self._clock.now()
                job_execution.status = BatchStatus.STARTED
                self._update(job_execution)
                self.listener.before_job(job_execution)
                self.do_execute(job_execution)
            else:
                # Stopped before it started
                job_execution.status = BatchStatus.STOPPED
                job_execution.exit_status = ExitStatus.COMPLETED
        except JobInterruptedError as exc:
            logger.info("job_stopped", extra={"reason": str(exc)})
            job_execution.exit_status = ExitStatus.STOPPED.add_exit_description(exc)
            job_execution.status = BatchStatus.STOPPED.upgrade_to(
                BatchStatus(exc.status) if exc.status in BatchStatus.__members__
                else BatchStatus.STOPPED
            )
            job_execution.add_failure_exception(exc)
        except Exception as exc:
            logger.error("job_failed", exc_info=exc)
            job_execution.exit_status = ExitStatus.FAILED.add_exit_description(exc)
            job_execution.status = BatchStatus.FAILED
            job_execution.add_failure_exception(exc)

        if (
            job_execution.status.severity <= BatchStatus.STOPPED.severity
            and not job_execution.step_executions
        ):
            job_execution.exit_status = ExitStatus.NOOP.add_exit_description(
                "All steps already completed or no steps configured for this job."
            ).and_(job_execution.exit_status)

        if job_execution.status == BatchStatus.STOPPING:
            job_execution.status = BatchStatus.STOPPED

        try:
            self.listener.after_job(job_execution)
        except Exception as exc:
            logger.error("after_job_listener_failed", exc_info=exc)
            job_execution.add_failure_exception(exc)

        job_execution.end_time = self._clock.now()
        self._update(job_execution)

        logger.info(
            "job_completed",
            extra={
                "status": job_execution.status.value,
                "exit_code": job_execution.exit_status.exit_code,
                "steps": len(job_execution.step_executions),
            },
        )

    def do_execute(self, job_execution: JobExecution) -> None:
        executor = JobFlowExecutor(SimpleStepHandler(self.job_repository), job_execution)
        interrupted: JobInterruptedError | None = None
        try:
            result = self.flow.start(executor)
        except FlowExecutionError as exc:
            if not isinstance(exc.__cause__, JobInterruptedError):
                raise
            interrupted = exc.__cause__
        if interrupted is not None:
            # Raised outside the handler so its chain stays as it was
            raise interrupted
        executor.update_job_execution_status(result.status)

    def _update(self, job_execution: JobExecution) -> None:
        if self.job_repository is not None:
            self.job_repository.update_job_execution(job_execution)

    def __repr__(self) -> str:
        return f"FlowJob(name={self.name!r}, flow={self.flow.name!r})"
