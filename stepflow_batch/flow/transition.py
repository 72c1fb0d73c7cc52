"""StateTransition -- one (state, exit-code pattern, next state) rule."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from stepflow_kernel.exceptions import FlowDefinitionError

from stepflow_batch.flow.patterns import compare_patterns, match_pattern

if TYPE_CHECKING:
    from stepflow_batch.flow.state import State


@dataclass(frozen=True, eq=False)
class StateTransition:
    """Immutable routing rule out of ``state``.

    ``next`` is the name of the state to go to when the exit code matches
    ``pattern``; ``None`` makes this an end transition, which terminates
    the flow.  A blank pattern means ``"*"``.

    ``<`` and ``compare_to`` order transitions by pattern specificity,
    most specific first.  Equality and hashing are by identity: two
    declarations with the same state, pattern and target are still two
    transitions, and both stay in a flow's transition set.
    """

    state: State
    pattern: str = "*"
    next: str | None = None

    def __post_init__(self) -> None:
        if not self.pattern or not self.pattern.strip():
            object.__setattr__(self, "pattern", "*")
        if self.state.is_end_state and self.next is not None:
            raise FlowDefinitionError(
                self.state.name,
                f"end state '{self.state.name}' cannot have a next state "
                f"(got next='{self.next}')",
            )

    @classmethod
    def create_end_transition(cls, state: State, pattern: str = "*") -> StateTransition:
        return cls(state=state, pattern=pattern, next=None)

    @classmethod
    def create_state_transition(
        cls, state: State, pattern: str, next: str,
    ) -> StateTransition:
        return cls(state=state, pattern=pattern, next=next)

    @property
    def is_end(self) -> bool:
        return self.next is None

    def matches(self, exit_code: str) -> bool:
        return match_pattern(self.pattern, exit_code)

    def compare_to(self, other: StateTransition) -> int:
        return compare_patterns(self.pattern, other.pattern)

    def __lt__(self, other: StateTransition) -> bool:
        return self.compare_to(other) < 0

    def __str__(self) -> str:
        return (
            f"StateTransition: state={self.state.name}, "
            f"pattern={self.pattern}, next={self.next}"
        )
