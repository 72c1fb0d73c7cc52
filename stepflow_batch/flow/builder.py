"""
FlowBuilder -- fluent construction of a Flow.

    flow = (
        FlowBuilder("nightly")
        .start(load)
        .on("FAILED").to(cleanup)
        .from_(load).on("*").to(report)
        .from_(report).on("*").end()
        .from_(cleanup).on("*").fail()
        .build()
    )

``start``/``next``/``from_`` accept a Step, a Flow (wrapped in a
FlowState) or any State.  Targets are registered once by name, so
``from_(load)`` refers back to the state created by ``start(load)``.

``end()`` adds a plain end transition: the flow finishes on the current
state with that state's exit code.  ``fail()``, ``stop()`` and
``end_with(status)`` route to a generated EndState that records the
status on the job.  States left without outgoing transitions receive a
``"*"`` end transition at ``build()``.
"""

from __future__ import annotations

from typing import Any

from stepflow_kernel.exceptions import FlowDefinitionError

from stepflow_batch.domain.types import FlowExecutionStatus
from stepflow_batch.flow.flow import Flow, TransitionOrdering, by_specificity
from stepflow_batch.flow.state import (
    DecisionState,
    EndState,
    FlowState,
    SplitState,
    State,
    StepState,
)
from stepflow_batch.flow.transition import StateTransition


class FlowBuilder:
    """Accumulates states and transitions, then builds an immutable Flow."""

    def __init__(self, name: str, ordering: TransitionOrdering | None = by_specificity):
        self.name = name
        self._ordering = ordering
        self._states: dict[str, State] = {}
        self._transitions: list[StateTransition] = []
        self._current: State | None = None
        self._start_name: str | None = None
        self._end_counter = 0

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    def start(self, target: Any) -> FlowBuilder:
        state = self._state_for(target)
        self._start_name = state.name
        self._current = state
        return self

    def next(self, target: Any) -> FlowBuilder:
        """Sequential shortcut: any exit code of the current state leads to ``target``."""
        if self._current is None:
            return self.start(target)
        state = self._state_for(target)
        self._add(StateTransition(self._current, "*", state.name))
        self._current = state
        return self

    def from_(self, target: Any) -> FlowBuilder:
        self._current = self._state_for(target)
        if self._start_name is None:
            self._start_name = self._current.name
        return self

    def on(self, pattern: str) -> TransitionBuilder:
        if self._current is None:
            raise FlowDefinitionError(self.name, "on() called before start()")
        return TransitionBuilder(self, self._current, pattern)

    # ------------------------------------------------------------------
    # State factories
    # ------------------------------------------------------------------

    def decision(self, name: str, decider: Any) -> DecisionState:
        return self._register(DecisionState(name=name, decider=decider))

    def split(self, name: str, *flows: Flow) -> SplitState:
        return self._register(SplitState(name=name, flows=tuple(flows)))

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------

    def build(self) -> Flow:
        sources = {t.state.name for t in self._transitions}
        targets = {t.next for t in self._transitions if t.next is not None}
        if self._start_name is not None:
            targets.add(self._start_name)
        for name in targets:
            state = self._states[name]
            if name not in sources:
                self._transitions.append(StateTransition.create_end_transition(state))
        return Flow(
            self.name,
            self._transitions,
            start_state_name=self._start_name,
            ordering=self._ordering,
        )

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _add(self, transition: StateTransition) -> None:
        self._transitions.append(transition)

    def _end_state(self, status: FlowExecutionStatus, code: str = "") -> EndState:
        self._end_counter += 1
        return self._register(
            EndState(
                name=f"{self.name}.end{self._end_counter}",
                status=status,
                code=code,
            )
        )

    def _register(self, state: Any) -> Any:
        existing = self._states.get(state.name)
        if existing is not None:
            return existing
        self._states[state.name] = state
        return state

    def _state_for(self, target: Any) -> State:
        if isinstance(target, Flow):
            name = target.name
            if name in self._states:
                return self._states[name]
            return self._register(FlowState(flow=target))
        if isinstance(target, str):
            state = self._states.get(target)
            if state is None:
                raise FlowDefinitionError(self.name, f"unknown state '{target}'")
            return state
        if isinstance(target, (StepState, DecisionState, FlowState, SplitState, EndState)):
            return self._register(target)
        # Anything else is treated as a Step
        name = target.name
        if name in self._states:
            return self._states[name]
        return self._register(StepState(step=target))


class TransitionBuilder:
    """Completes ``builder.on(pattern)`` with a destination."""

    def __init__(self, parent: FlowBuilder, source: State, pattern: str):
        self._parent = parent
        self._source = source
        self._pattern = pattern

    def to(self, target: Any) -> FlowBuilder:
        state = self._parent._state_for(target)
        self._parent._add(StateTransition(self._source, self._pattern, state.name))
        self._parent._current = state
        return self._parent

    def end(self) -> FlowBuilder:
        self._parent._add(
            StateTransition.create_end_transition(self._source, self._pattern)
        )
        return self._parent

    def end_with(self, status: str, code: str = "") -> FlowBuilder:
        source = self._source
        end = self._parent._end_state(FlowExecutionStatus(status), code)
        self._parent._add(StateTransition(source, self._pattern, end.name))
        self._parent._add(StateTransition.create_end_transition(end))
        return self._parent

    def complete(self) -> FlowBuilder:
        return self.end_with(FlowExecutionStatus.COMPLETED.name)

    def fail(self) -> FlowBuilder:
        return self.end_with(FlowExecutionStatus.FAILED.name)

    def stop(self) -> FlowBuilder:
        return self.end_with(FlowExecutionStatus.STOPPED.name)
