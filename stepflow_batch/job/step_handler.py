"""
SimpleStepHandler -- decides whether and how a step runs within a job.

Contract:
    ``handle_step(step, job_execution) -> StepExecution | None`` returns
    the step execution that represents the step for this run.  That is a
    new execution when the step runs, the previous one when the step is
    skipped because it already completed, or None when no repository
    history exists and nothing ran.

Restart rules:
    - A step whose last execution COMPLETED (or was ABANDONED) is skipped
      unless ``allow_start_if_complete`` is set.
    - A step whose last execution ended UNKNOWN cannot be restarted.
    - A step may be started at most ``start_limit`` times per job instance.
    - A restarted step inherits the previous execution context with
      ``batch.restart`` set and ``batch.executed`` removed.

Failure modes:
    - JobInterruptedError: the job is stopping before the step starts, or
      the step itself ended STOPPED.
    - JobRestartError, StartLimitExceededError.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from stepflow_kernel.exceptions import (
    JobInterruptedError,
    JobRestartError,
    StartLimitExceededError,
)
from stepflow_kernel.logging_config import get_logger

from stepflow_batch.domain.types import (
    EXECUTED_KEY,
    RESTART_KEY,
    BatchStatus,
    JobExecution,
    StepExecution,
)

if TYPE_CHECKING:
    from stepflow_batch.services.repository import JobRepository
    from stepflow_batch.step.base import Step

logger = get_logger("batch.step_handler")


class SimpleStepHandler:
    """Applies the restart rules, then runs the step."""

    def __init__(self, job_repository: JobRepository | None = None):
        self._repository = job_repository

    def handle_step(self, step: Step, job_execution: JobExecution) -> StepExecution | None:
        if job_execution.is_stopping:
            raise JobInterruptedError("JobExecution interrupted.")

        last = self._last_step_execution(step, job_execution)
        current = last

        if self._should_start(last, job_execution, step):
            current = job_execution.create_step_execution(step.name)
            is_restart = last is not None and last.status != BatchStatus.COMPLETED
            if is_restart:
                assert last is not None
                context = dict(last.execution_context)
                context.pop(EXECUTED_KEY, None)
                context[RESTART_KEY] = True
                current.execution_context = context
                logger.info(
                    "step_restarting",
                    extra={"step": step.name, "previous_status": last.status.value},
                )

            if self._repository is not None:
                self._repository.add_step_execution(current)

            step.execute(current)

            if self._repository is not None:
                self._repository.update_job_execution_context(job_execution)

            if current.status in (BatchStatus.STOPPING, BatchStatus.STOPPED):
                job_execution.status = BatchStatus.STOPPING
                raise JobInterruptedError(
                    f"Job interrupted by step execution: {step.name}",
                    status=current.status.value,
                )
        else:
            logger.info("step_already_complete", extra={"step": step.name})

        return current

    def _last_step_execution(
        self, step: Step, job_execution: JobExecution,
    ) -> StepExecution | None:
        if self._repository is None or job_execution.job_instance_id is None:
            return None
        last = self._repository.get_last_step_execution(
            job_execution.job_instance_id, step.name,
        )
        if last is not None and last.job_execution_id == job_execution.id:
            # Same job execution: the step is visited again by the flow,
            # not restarted.
            return None
        return last

    def _should_start(
        self,
        last: StepExecution | None,
        job_execution: JobExecution,
        step: Step,
    ) -> bool:
        if last is None:
            return True

        if last.status == BatchStatus.UNKNOWN:
            raise JobRestartError(
                job_execution.job_name,
                f"cannot restart step '{step.name}' from UNKNOWN status; the "
                "step may have left inconsistent data and needs manual "
                "intervention",
            )

        if (
            last.status == BatchStatus.COMPLETED and not step.allow_start_if_complete
        ) or last.status == BatchStatus.ABANDONED:
            return False

        assert self._repository is not None and job_execution.job_instance_id is not None
        starts = self._repository.get_step_execution_count(
            job_execution.job_instance_id, step.name,
        )
        if starts < step.start_limit:
            return True
        raise StartLimitExceededError(step.name, step.start_limit)
