"""JobFlowExecutor -- the FlowExecutor used by FlowJob."""

from __future__ import annotations

from typing import TYPE_CHECKING

from stepflow_kernel.exceptions import JobInterruptedError
from stepflow_kernel.logging_config import get_logger

from stepflow_batch.domain.types import (
    BatchStatus,
    ExitStatus,
    FlowExecution,
    FlowExecutionStatus,
    JobExecution,
    StepExecution,
)
from stepflow_batch.job.step_handler import SimpleStepHandler

if TYPE_CHECKING:
    from stepflow_batch.step.base import Step

logger = get_logger("batch.flow_executor")


class JobFlowExecutor:
    """Runs steps through a SimpleStepHandler on behalf of one job execution.

    Tracks the most recent step execution for the flow's continuation
    check and accumulates exit codes recorded by end states.
    """

    def __init__(self, step_handler: SimpleStepHandler, job_execution: JobExecution):
        self._step_handler = step_handler
        self._job_execution = job_execution
        self._step_execution: StepExecution | None = None
        self._exit_status = ExitStatus.EXECUTING
        self._result: FlowExecution | None = None

    def execute_step(self, step: Step) -> str:
        step_execution = self._step_handler.handle_step(step, self._job_execution)
        self._step_execution = step_execution
        if step_execution is None:
            return ExitStatus.COMPLETED.exit_code
        if step_execution.terminate_only:
            raise JobInterruptedError(
                f"Step requested termination: {step_execution.step_name}",
                status=step_execution.status.value,
            )
        return step_execution.exit_status.exit_code

    def get_job_execution(self) -> JobExecution:
        return self._job_execution

    def get_step_execution(self) -> StepExecution | None:
        return self._step_execution

    def close(self, result: FlowExecution) -> None:
        self._result = result
        logger.debug(
            "flow_execution_closed",
            extra={"state": result.name, "status": result.status.name},
        )

    def add_exit_status(self, code: str) -> None:
        self._exit_status = self._exit_status.and_(ExitStatus(code))

    @property
    def exit_status(self) -> ExitStatus:
        return self._exit_status

    @property
    def result(self) -> FlowExecution | None:
        return self._result

    def update_job_execution_status(self, status: FlowExecutionStatus) -> None:
        """Map the flow's terminal status onto the job execution."""
        self._job_execution.status = BatchStatus.from_exit_code(status.name)
        self._exit_status = self._exit_status.and_(ExitStatus(status.name))
        self._job_execution.exit_status = self._exit_status
