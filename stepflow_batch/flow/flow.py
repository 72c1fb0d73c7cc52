"""
Flow -- the state machine that routes a job through its states.

Contract:
    ``Flow(name, transitions, start_state_name=None, ordering=...)``
    builds and validates the state and transition maps eagerly; the result
    is immutable and may be run by several job executions at once.
    ``start(executor)`` runs from the start state, ``resume(name, executor)``
    from any named state.  Both return a ``FlowExecution`` naming the last
    state handled and its status.

Resolution:
    After each ``handle`` the outgoing transitions of the current state are
    scanned in order (most specific pattern first by default) and the first
    match wins.  For an exit code of exactly ``PENDING`` a literal
    ``"PENDING"`` pattern is taken first; otherwise the same ordered scan
    also accepts a transition matching ``STOPPED``, so ``"STOPPED"`` beats
    ``"*"``.  An end transition finishes the flow.  A ``STOPPED`` status
    ends the loop, except when a restarted step that had not finished
    executing stopped and routing leads to a state other than its own
    (a state whose name ends with the step name counts as its own).

Failure modes:
    - FlowDefinitionError at construction: no transitions, no end
      transition, a next state that is not declared, two different
      states with one name, an unknown start state.
    - FlowExecutionError from ``resume``: a state raised (original error
      chained as ``__cause__``), no transitions for a state, no matching
      transition.  The executor is closed before the error propagates.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from types import MappingProxyType

from stepflow_kernel.exceptions import FlowDefinitionError, FlowExecutionError
from stepflow_kernel.logging_config import get_logger

from stepflow_batch.domain.types import (
    EXECUTED_KEY,
    RESTART_KEY,
    FlowExecution,
    FlowExecutionStatus,
    StepExecution,
)
from stepflow_batch.flow.executor import FlowExecutor
from stepflow_batch.flow.patterns import specificity_key
from stepflow_batch.flow.state import State
from stepflow_batch.flow.transition import StateTransition

logger = get_logger("batch.flow")

TransitionOrdering = Callable[[list[StateTransition]], list[StateTransition]]


def by_specificity(transitions: list[StateTransition]) -> list[StateTransition]:
    """Most specific pattern first. Stable, so equal patterns keep declaration order."""
    return sorted(transitions, key=lambda t: specificity_key(t.pattern))


def by_declaration(transitions: list[StateTransition]) -> list[StateTransition]:
    return list(transitions)


class Flow:
    """Immutable graph of named states connected by exit-code patterns."""

    def __init__(
        self,
        name: str,
        transitions: Iterable[StateTransition],
        start_state_name: str | None = None,
        ordering: TransitionOrdering | None = by_specificity,
    ):
        self.name = name
        transitions = list(transitions)
        self._states, self._transitions, self._start_state = self._build(
            transitions, start_state_name, ordering or by_declaration,
        )

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def _build(
        self,
        transitions: list[StateTransition],
        start_state_name: str | None,
        ordering: TransitionOrdering,
    ) -> tuple[
        Mapping[str, State], Mapping[str, tuple[StateTransition, ...]], State,
    ]:
        if not transitions:
            raise FlowDefinitionError(
                self.name, "no start state: the flow has no transitions",
            )

        states: dict[str, State] = {}
        for transition in transitions:
            state = transition.state
            existing = states.get(state.name)
            if existing is not None and existing is not state and existing != state:
                raise FlowDefinitionError(
                    self.name, f"duplicate state name '{state.name}'",
                )
            states.setdefault(state.name, state)

        grouped: dict[str, list[StateTransition]] = {}
        has_end = False
        for transition in transitions:
            if transition.is_end:
                has_end = True
            elif transition.next not in states:
                raise FlowDefinitionError(
                    self.name,
                    f"missing state for [{transition}]: "
                    f"'{transition.next}' is not declared",
                )
            bucket = grouped.setdefault(transition.state.name, [])
            if any(t.pattern == transition.pattern for t in bucket):
                raise FlowDefinitionError(
                    self.name,
                    f"duplicate pattern '{transition.pattern}' on state "
                    f"'{transition.state.name}'",
                )
            bucket.append(transition)

        if not has_end:
            raise FlowDefinitionError(
                self.name,
                "no end state was found: at least one transition must "
                "have no next state",
            )

        start_name = start_state_name or transitions[0].state.name
        start = states.get(start_name)
        if start is None:
            raise FlowDefinitionError(
                self.name, f"start state '{start_name}' is not declared",
            )

        ordered = {
            state_name: tuple(ordering(bucket))
            for state_name, bucket in grouped.items()
        }
        return MappingProxyType(states), MappingProxyType(ordered), start

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def start_state(self) -> State:
        return self._start_state

    @property
    def state_names(self) -> tuple[str, ...]:
        return tuple(self._states)

    def get_state(self, name: str) -> State | None:
        return self._states.get(name)

    def transitions_for(self, state_name: str) -> tuple[StateTransition, ...]:
        return self._transitions.get(state_name, ())

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def start(self, executor: FlowExecutor) -> FlowExecution:
        return self.resume(self._start_state.name, executor)

    def resume(self, state_name: str, executor: FlowExecutor) -> FlowExecution:
        state = self._states.get(state_name)
        if state is None:
            raise FlowExecutionError(
                self.name, state_name,
                f"Cannot resume flow={self.name}: unknown state={state_name}",
            )

        status = FlowExecutionStatus.UNKNOWN
        step_execution: StepExecution | None = None
        current: State | None = state

        while current is not None and self._is_flow_continued(
            current, status, step_execution,
        ):
            state_name = current.name
            logger.debug(
                "flow_state_entered",
                extra={"flow": self.name, "state": state_name},
            )
            try:
                status = FlowExecutionStatus(current.handle(executor))
            except FlowExecutionError:
                executor.close(FlowExecution(status, state_name))
                raise
            except Exception as exc:
                executor.close(FlowExecution(status, state_name))
                raise FlowExecutionError(
                    self.name, state_name,
                    f"Ended flow={self.name} at state={state_name} with exception",
                ) from exc

            step_execution = executor.get_step_execution()

            if executor.get_job_execution().is_stopping:
                logger.info(
                    "flow_stop_observed",
                    extra={"flow": self.name, "state": state_name},
                )
                status = FlowExecutionStatus.STOPPED
                break

            try:
                current = self._next_state(state_name, status)
            except FlowExecutionError:
                executor.close(FlowExecution(status, state_name))
                raise

        result = FlowExecution(status, state_name)
        logger.debug(
            "flow_completed",
            extra={"flow": self.name, "state": state_name, "status": status.name},
        )
        executor.close(result)
        return result

    def _is_flow_continued(
        self,
        state: State,
        status: FlowExecutionStatus,
        step_execution: StepExecution | None,
    ) -> bool:
        continued = status.name != FlowExecutionStatus.STOPPED.name

        if step_execution is not None:
            context = step_execution.execution_context
            restarted = bool(context.get(RESTART_KEY))
            executed = bool(context.get(EXECUTED_KEY))
            if (
                restarted
                and not executed
                and status.name == FlowExecutionStatus.STOPPED.name
                and not state.name.endswith(step_execution.step_name)
            ):
                continued = True

        return continued

    def _next_state(
        self, state_name: str, status: FlowExecutionStatus,
    ) -> State | None:
        transitions = self._transitions.get(state_name)
        if not transitions:
            raise FlowExecutionError(
                self.name, state_name,
                f"No transitions found in flow={self.name} for state={state_name}",
            )

        exit_code = status.name
        selected = self._find_transition(transitions, exit_code)
        if selected is None:
            raise FlowExecutionError(
                self.name, state_name,
                f"Next state not found in flow={self.name} for state={state_name} "
                f"with exit status={exit_code}",
            )

        if selected.is_end:
            return None

        next_state = self._states.get(selected.next)
        if next_state is None:
            raise FlowExecutionError(
                self.name, state_name,
                f"Next state not specified in flow={self.name} for "
                f"next={selected.next}",
            )
        return next_state

    @staticmethod
    def _find_transition(
        transitions: tuple[StateTransition, ...], exit_code: str,
    ) -> StateTransition | None:
        fallback: str | None = None
        if exit_code == FlowExecutionStatus.PENDING.name:
            for transition in transitions:
                if transition.pattern == exit_code:
                    return transition
            fallback = FlowExecutionStatus.STOPPED.name

        for transition in transitions:
            if transition.matches(exit_code) or (
                fallback is not None and transition.matches(fallback)
            ):
                return transition
        return None

    def __repr__(self) -> str:
        return f"Flow(name={self.name!r}, states={list(self._states)!r})"
