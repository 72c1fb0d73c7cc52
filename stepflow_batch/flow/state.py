"""
State variants handled by a Flow.

Every variant exposes ``name``, ``is_end_state`` and
``handle(executor) -> str``; the Flow never inspects which variant it
holds.  States are immutable once built and may be shared by concurrent
runs of the same flow.

    StepState      runs a step through the executor
    DecisionState  runs a pure decider over the last executions
    FlowState      delegates to a nested flow
    SplitState     runs several flows, most severe status wins
    EndState       records a terminal exit status and ends the flow
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from stepflow_kernel.logging_config import get_logger

from stepflow_batch.domain.types import FlowExecutionStatus
from stepflow_batch.flow.executor import FlowExecutor, run_decider

if TYPE_CHECKING:
    from stepflow_batch.flow.flow import Flow
    from stepflow_batch.step.base import Step

logger = get_logger("batch.flow.state")


@runtime_checkable
class State(Protocol):
    name: str

    @property
    def is_end_state(self) -> bool: ...

    def handle(self, executor: FlowExecutor) -> str: ...


@dataclass(frozen=True)
class StepState:
    """Runs ``step`` and returns the step's exit code."""

    step: Step
    name: str = ""

    def __post_init__(self) -> None:
        if not self.name:
            object.__setattr__(self, "name", self.step.name)

    @property
    def is_end_state(self) -> bool:
        return False

    def handle(self, executor: FlowExecutor) -> str:
        return executor.execute_step(self.step)


@dataclass(frozen=True)
class DecisionState:
    """Routes on the exit code returned by a decider.

    The decider sees the job execution and the most recent step execution
    and must not modify either.
    """

    name: str
    decider: Any

    @property
    def is_end_state(self) -> bool:
        return False

    def handle(self, executor: FlowExecutor) -> str:
        code = run_decider(
            self.decider, executor.get_job_execution(), executor.get_step_execution(),
        )
        logger.debug("decision_made", extra={"state": self.name, "exit_code": code})
        return code


@dataclass(frozen=True)
class FlowState:
    """Runs a nested flow; its terminal status becomes this state's code."""

    flow: Flow
    name: str = ""

    def __post_init__(self) -> None:
        if not self.name:
            object.__setattr__(self, "name", self.flow.name)

    @property
    def is_end_state(self) -> bool:
        return False

    def handle(self, executor: FlowExecutor) -> str:
        return self.flow.start(executor).status.name


@dataclass(frozen=True)
class SplitState:
    """Runs each flow in declaration order on the calling thread.

    The returned code is the most severe of the flows' terminal statuses.
    A stop requested while one flow runs ends the split before the next.
    """

    name: str
    flows: tuple[Flow, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "flows", tuple(self.flows))

    @property
    def is_end_state(self) -> bool:
        return False

    def handle(self, executor: FlowExecutor) -> str:
        results: list[FlowExecutionStatus] = []
        for flow in self.flows:
            results.append(flow.start(executor).status)
            if executor.get_job_execution().is_stopping:
                break
        if not results:
            return FlowExecutionStatus.COMPLETED.name
        return max(results).name


@dataclass(frozen=True)
class EndState:
    """Terminal marker: folds ``status`` into the job exit status.

    ``code`` overrides the exit code recorded on the job; it defaults to
    the status name.
    """

    name: str
    status: FlowExecutionStatus
    code: str = ""

    @property
    def is_end_state(self) -> bool:
        return True

    def handle(self, executor: FlowExecutor) -> str:
        executor.add_exit_status(self.code or self.status.name)
        return self.status.name
