"""
FlowExecutor protocol -- what a Flow and its States need from a job run.

Contract:
    ``execute_step(step)`` runs one step and returns its exit code.
    ``get_job_execution()`` / ``get_step_execution()`` expose the records
    the states and the continuation predicate inspect; the step execution
    is that of the most recently executed step (or None).
    ``close(result)`` is called exactly once per ``Flow.resume`` call,
    including when ``resume`` propagates an error.
    ``add_exit_status(code)`` lets an EndState fold its code into the
    job's exit status.

Non-goals:
    - Does NOT decide transitions -- the Flow owns resolution.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from stepflow_batch.domain.types import FlowExecution, JobExecution, StepExecution

if TYPE_CHECKING:
    from stepflow_batch.step.base import Step


@runtime_checkable
class FlowExecutor(Protocol):
    """Executor contract consumed by Flow and State."""

    def execute_step(self, step: Step) -> str: ...

    def get_job_execution(self) -> JobExecution: ...

    def get_step_execution(self) -> StepExecution | None: ...

    def close(self, result: FlowExecution) -> None: ...

    def add_exit_status(self, code: str) -> None: ...


@runtime_checkable
class JobExecutionDecider(Protocol):
    """Pure decision function used by DecisionState.

    Plain callables with the same signature are accepted as well.
    """

    def decide(
        self, job_execution: JobExecution, step_execution: StepExecution | None,
    ) -> str: ...


def run_decider(
    decider: Any, job_execution: JobExecution, step_execution: StepExecution | None,
) -> str:
    if isinstance(decider, JobExecutionDecider):
        return decider.decide(job_execution, step_execution)
    return decider(job_execution, step_execution)
