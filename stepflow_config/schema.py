"""
Job definition schema.

Defines the human-authored source artifact for a job.  YAML documents are
parsed into these types by the loader, checked by the validator and turned
into a runnable FlowJob by the assembler.

Key distinction:
  JobDefinition = source artifact (human-authored, declarative, no objects)
  FlowJob       = runtime artifact (components resolved, flow built)

Component fields (``reader``, ``writer``, ``tasklet``, ``decider``,
``listeners``) hold names looked up in a ComponentRegistry.  Exception
fields hold dotted import paths (``myapp.errors.ParseError``) or builtin
names (``ValueError``).
"""

from __future__ import annotations

from dataclasses import dataclass


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EndDefinition:
    """End the flow through an EndState recording ``status`` on the job."""

    status: str = "COMPLETED"
    exit_code: str = ""


@dataclass(frozen=True)
class TransitionDefinition:
    """One outgoing route of a state.

    ``to`` names the next state.  Without ``to`` the transition ends the
    flow: on the state itself when ``end`` is None, or through an
    EndState when ``end`` is given.
    """

    on: str = "*"
    to: str | None = None
    end: EndDefinition | None = None

    @property
    def is_end(self) -> bool:
        return self.to is None


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChunkDefinition:
    """Read/process/write components and the number of items per chunk."""

    reader: str
    writer: str
    processor: str | None = None
    size: int = 1


@dataclass(frozen=True)
class FaultToleranceDefinition:
    """Skip, retry and rollback settings of a chunk step.

    ``retry_limit`` counts retries, so the total number of attempts is
    ``retry_limit + 1``.
    """

    skip_limit: int = 0
    skippable: tuple[str, ...] = ()
    non_skippable: tuple[str, ...] = ()
    retry_limit: int = 0
    retryable: tuple[str, ...] = ()
    non_retryable: tuple[str, ...] = ()
    no_rollback: tuple[str, ...] = ()

    @property
    def exception_names(self) -> tuple[str, ...]:
        return (
            self.skippable + self.non_skippable + self.retryable
            + self.non_retryable + self.no_rollback
        )


@dataclass(frozen=True)
class StepDefinition:
    """A step: either a tasklet or a chunk, never both."""

    name: str
    tasklet: str | None = None
    chunk: ChunkDefinition | None = None
    fault_tolerance: FaultToleranceDefinition | None = None
    start_limit: int | None = None
    allow_start_if_complete: bool = False
    listeners: tuple[str, ...] = ()
    transitions: tuple[TransitionDefinition, ...] = ()


@dataclass(frozen=True)
class DecisionDefinition:
    """A decision state routing on the exit code returned by ``decider``."""

    name: str
    decider: str
    transitions: tuple[TransitionDefinition, ...] = ()


# ---------------------------------------------------------------------------
# Job
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class JobDefinition:
    """Complete definition of one job.

    ``start`` defaults to the first declared step.  ``ordering`` selects
    how transitions of a state are tried: ``specificity`` (most specific
    pattern first) or ``declaration`` (as written).
    """

    name: str
    steps: tuple[StepDefinition, ...] = ()
    decisions: tuple[DecisionDefinition, ...] = ()
    start: str | None = None
    restartable: bool = True
    listeners: tuple[str, ...] = ()
    ordering: str = "specificity"
    checksum: str = ""

    @property
    def state_names(self) -> tuple[str, ...]:
        return tuple(s.name for s in self.steps) + tuple(d.name for d in self.decisions)

    @property
    def start_state(self) -> str | None:
        if self.start:
            return self.start
        if self.steps:
            return self.steps[0].name
        if self.decisions:
            return self.decisions[0].name
        return None

    def transitions_of(self, state_name: str) -> tuple[TransitionDefinition, ...]:
        for state in (*self.steps, *self.decisions):
            if state.name == state_name:
                return state.transitions
        return ()
