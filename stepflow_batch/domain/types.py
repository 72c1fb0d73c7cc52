"""
stepflow_batch.domain.types -- Status vocabulary and execution records.

ZERO I/O.

Status values (``BatchStatus``, ``ExitStatus``, ``FlowExecutionStatus``,
``FlowExecution``) are immutable.  Execution records (``JobExecution``,
``StepExecution``, ``StepContribution``) are mutable: the engine updates
them as a run progresses and the job repository persists them.  A single
execution record is only ever mutated by the thread running that job; the
one cross-thread write is ``JobExecution.request_stop()``, which flips
plain attributes that the running thread polls.

Invariants enforced:
    - ``StepContribution`` buffers counts for one chunk; they reach the
      ``StepExecution`` only through ``apply()``, called when the chunk's
      transaction commits.  A rolled-back chunk leaves no trace in the
      committed counts.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from functools import total_ordering
from typing import Any, ClassVar
from uuid import UUID, uuid4

# Execution-context keys written by the step handler and steps.
RESTART_KEY = "batch.restart"
EXECUTED_KEY = "batch.executed"


# =============================================================================
# BatchStatus
# =============================================================================


class BatchStatus(str, Enum):
    """Lifecycle status of a job or step execution.

    Declaration order is severity order, lowest first.
    """

    COMPLETED = "COMPLETED"
    STARTING = "STARTING"
    STARTED = "STARTED"
    STOPPING = "STOPPING"
    STOPPED = "STOPPED"
    FAILED = "FAILED"
    ABANDONED = "ABANDONED"
    UNKNOWN = "UNKNOWN"

    @property
    def severity(self) -> int:
        return _BATCH_STATUS_ORDER.index(self)

    @property
    def is_running(self) -> bool:
        return self in (BatchStatus.STARTING, BatchStatus.STARTED, BatchStatus.STOPPING)

    @property
    def is_unsuccessful(self) -> bool:
        return self in (BatchStatus.FAILED, BatchStatus.ABANDONED, BatchStatus.UNKNOWN)

    def is_greater_than(self, other: BatchStatus) -> bool:
        return self.severity > other.severity

    def upgrade_to(self, other: BatchStatus) -> BatchStatus:
        """Combine two statuses, keeping the more significant one.

        Running statuses never override a terminal one: COMPLETED upgraded
        to STARTED stays COMPLETED.
        """
        if self.is_greater_than(BatchStatus.STARTED) or other.is_greater_than(
            BatchStatus.STARTED
        ):
            return self if self.severity >= other.severity else other
        if BatchStatus.COMPLETED in (self, other):
            return BatchStatus.COMPLETED
        return self if self.severity >= other.severity else other

    @classmethod
    def from_exit_code(cls, exit_code: str) -> BatchStatus:
        """Map a flow exit code onto a batch status by prefix."""
        for status in (cls.STOPPED, cls.FAILED, cls.ABANDONED, cls.UNKNOWN):
            if exit_code.startswith(status.value):
                return status
        return cls.COMPLETED


_BATCH_STATUS_ORDER = list(BatchStatus)


# =============================================================================
# ExitStatus
# =============================================================================

_EXIT_SEVERITY = {
    "EXECUTING": 1,
    "COMPLETED": 2,
    "NOOP": 3,
    "STOPPED": 4,
    "FAILED": 5,
    "UNKNOWN": 7,
}
_CUSTOM_EXIT_SEVERITY = 6


@dataclass(frozen=True)
class ExitStatus:
    """Exit code plus free-text description of a finished execution.

    Custom exit codes are allowed and rank between FAILED and UNKNOWN
    when statuses are combined with ``and_``.
    """

    exit_code: str
    exit_description: str = ""

    UNKNOWN: ClassVar[ExitStatus]
    EXECUTING: ClassVar[ExitStatus]
    COMPLETED: ClassVar[ExitStatus]
    NOOP: ClassVar[ExitStatus]
    FAILED: ClassVar[ExitStatus]
    STOPPED: ClassVar[ExitStatus]

    @property
    def severity(self) -> int:
        return _EXIT_SEVERITY.get(self.exit_code, _CUSTOM_EXIT_SEVERITY)

    @property
    def is_running(self) -> bool:
        return self.exit_code in ("EXECUTING", "UNKNOWN")

    def and_(self, other: ExitStatus) -> ExitStatus:
        """Combine with another status; the more severe exit code wins and
        descriptions are concatenated."""
        combined = self.add_exit_description(other.exit_description)
        if other.severity > self.severity:
            return combined.replace_exit_code(other.exit_code)
        return combined

    def replace_exit_code(self, code: str) -> ExitStatus:
        return replace(self, exit_code=code)

    def add_exit_description(self, description: str | BaseException) -> ExitStatus:
        if isinstance(description, BaseException):
            description = f"{type(description).__name__}: {description}"
        if not description or description == self.exit_description:
            return self
        if not self.exit_description:
            return replace(self, exit_description=description)
        return replace(
            self, exit_description=f"{self.exit_description}; {description}"
        )

    def __str__(self) -> str:
        return f"exitCode={self.exit_code};exitDescription={self.exit_description}"


ExitStatus.UNKNOWN = ExitStatus("UNKNOWN")
ExitStatus.EXECUTING = ExitStatus("EXECUTING")
ExitStatus.COMPLETED = ExitStatus("COMPLETED")
ExitStatus.NOOP = ExitStatus("NOOP")
ExitStatus.FAILED = ExitStatus("FAILED")
ExitStatus.STOPPED = ExitStatus("STOPPED")


# =============================================================================
# Flow status
# =============================================================================

# Ordered lowest first; exit codes are classified by prefix.
_FLOW_SEVERITY = ("COMPLETED", "STOPPED", "FAILED", "UNKNOWN")


@total_ordering
@dataclass(frozen=True)
class FlowExecutionStatus:
    """Exit code produced each time a State is handled.

    The flow matches ``name`` against transition patterns.  Any string is a
    valid name; the named constants cover the ones the engine itself acts on.
    """

    name: str

    COMPLETED: ClassVar[FlowExecutionStatus]
    STOPPED: ClassVar[FlowExecutionStatus]
    FAILED: ClassVar[FlowExecutionStatus]
    UNKNOWN: ClassVar[FlowExecutionStatus]
    PENDING: ClassVar[FlowExecutionStatus]

    @property
    def is_stop(self) -> bool:
        return self.name.startswith("STOPPED")

    @property
    def is_fail(self) -> bool:
        return self.name.startswith("FAILED")

    @property
    def is_complete(self) -> bool:
        return self.name.startswith("COMPLETED")

    @property
    def is_end(self) -> bool:
        return self.is_stop or self.is_fail or self.is_complete

    @property
    def severity(self) -> int:
        for index in range(len(_FLOW_SEVERITY) - 1, 0, -1):
            if self.name.startswith(_FLOW_SEVERITY[index]):
                return index
        return 0

    def __lt__(self, other: FlowExecutionStatus) -> bool:
        return (self.severity, self.name) < (other.severity, other.name)

    def __str__(self) -> str:
        return self.name


FlowExecutionStatus.COMPLETED = FlowExecutionStatus("COMPLETED")
FlowExecutionStatus.STOPPED = FlowExecutionStatus("STOPPED")
FlowExecutionStatus.FAILED = FlowExecutionStatus("FAILED")
FlowExecutionStatus.UNKNOWN = FlowExecutionStatus("UNKNOWN")
FlowExecutionStatus.PENDING = FlowExecutionStatus("PENDING")


@dataclass(frozen=True)
class FlowExecution:
    """Result of a flow run: the last state handled and its status."""

    status: FlowExecutionStatus
    name: str


# =============================================================================
# Execution records
# =============================================================================


@dataclass(eq=False)
class JobExecution:
    """One run of a job instance."""

    job_name: str
    parameters: dict[str, Any] = field(default_factory=dict)
    job_instance_id: UUID | None = None
    id: UUID = field(default_factory=uuid4)
    status: BatchStatus = BatchStatus.STARTING
    exit_status: ExitStatus = ExitStatus.UNKNOWN
    create_time: datetime | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    last_updated: datetime | None = None
    execution_context: dict[str, Any] = field(default_factory=dict)
    step_executions: list[StepExecution] = field(default_factory=list)
    failure_exceptions: list[BaseException] = field(default_factory=list)

    @property
    def is_running(self) -> bool:
        return self.status.is_running

    @property
    def is_stopping(self) -> bool:
        return self.status == BatchStatus.STOPPING

    def create_step_execution(self, step_name: str) -> StepExecution:
        step_execution = StepExecution(step_name=step_name, job_execution=self)
        self.step_executions.append(step_execution)
        return step_execution

    def upgrade_status(self, status: BatchStatus) -> None:
        self.status = self.status.upgrade_to(status)

    def add_failure_exception(self, error: BaseException) -> None:
        self.failure_exceptions.append(error)

    def all_failure_exceptions(self) -> list[BaseException]:
        errors = list(self.failure_exceptions)
        for step_execution in self.step_executions:
            errors.extend(
                e for e in step_execution.failure_exceptions if e not in errors
            )
        return errors

    def request_stop(self) -> None:
        """Set the cooperative stop marker.

        The running thread observes it at the next chunk boundary of the
        active step and at the next state transition of the flow.
        """
        for step_execution in self.step_executions:
            if step_execution.status.is_running:
                step_execution.terminate_only = True
        if self.status.is_running:
            self.status = BatchStatus.STOPPING


@dataclass(eq=False)
class StepExecution:
    """One run of a step within a job execution."""

    step_name: str
    job_execution: JobExecution | None = field(default=None, repr=False)
    id: UUID = field(default_factory=uuid4)
    status: BatchStatus = BatchStatus.STARTING
    exit_status: ExitStatus = ExitStatus.EXECUTING
    read_count: int = 0
    write_count: int = 0
    filter_count: int = 0
    read_skip_count: int = 0
    process_skip_count: int = 0
    write_skip_count: int = 0
    commit_count: int = 0
    rollback_count: int = 0
    start_time: datetime | None = None
    end_time: datetime | None = None
    last_updated: datetime | None = None
    execution_context: dict[str, Any] = field(default_factory=dict)
    terminate_only: bool = False
    failure_exceptions: list[BaseException] = field(default_factory=list)

    @property
    def job_execution_id(self) -> UUID | None:
        return self.job_execution.id if self.job_execution is not None else None

    @property
    def skip_count(self) -> int:
        return self.read_skip_count + self.process_skip_count + self.write_skip_count

    def create_contribution(self) -> StepContribution:
        return StepContribution(step_execution=self)

    def apply(self, contribution: StepContribution) -> None:
        """Fold a committed chunk's counts into this execution."""
        self.read_count += contribution.read_count
        self.write_count += contribution.write_count
        self.filter_count += contribution.filter_count
        self.read_skip_count += contribution.read_skip_count
        self.process_skip_count += contribution.process_skip_count
        self.write_skip_count += contribution.write_skip_count
        self.exit_status = self.exit_status.and_(contribution.exit_status)

    def upgrade_status(self, status: BatchStatus) -> None:
        self.status = self.status.upgrade_to(status)

    def add_failure_exception(self, error: BaseException) -> None:
        self.failure_exceptions.append(error)


@dataclass(eq=False)
class StepContribution:
    """Counts buffered for one chunk of a step execution."""

    step_execution: StepExecution = field(repr=False)
    read_count: int = 0
    write_count: int = 0
    filter_count: int = 0
    read_skip_count: int = 0
    process_skip_count: int = 0
    write_skip_count: int = 0
    exit_status: ExitStatus = ExitStatus.EXECUTING

    def increment_read_count(self) -> None:
        self.read_count += 1

    def increment_write_count(self, count: int) -> None:
        self.write_count += count

    def increment_filter_count(self, count: int = 1) -> None:
        self.filter_count += count

    def increment_read_skip_count(self, count: int = 1) -> None:
        self.read_skip_count += count

    def increment_process_skip_count(self, count: int = 1) -> None:
        self.process_skip_count += count

    def increment_write_skip_count(self, count: int = 1) -> None:
        self.write_skip_count += count

    def set_exit_status(self, status: ExitStatus) -> None:
        self.exit_status = status

    @property
    def skip_count(self) -> int:
        return self.read_skip_count + self.process_skip_count + self.write_skip_count

    # Running totals (committed + buffered) handed to skip policies

    @property
    def step_read_skip_count(self) -> int:
        return self.step_execution.read_skip_count + self.read_skip_count

    @property
    def step_process_skip_count(self) -> int:
        return self.step_execution.process_skip_count + self.process_skip_count

    @property
    def step_write_skip_count(self) -> int:
        return self.step_execution.write_skip_count + self.write_skip_count

    @property
    def step_skip_count(self) -> int:
        return self.step_execution.skip_count + self.skip_count

    def without_writes(self) -> StepContribution:
        """Copy of this contribution with the write-phase counts cleared.

        Used when a chunk is rolled back to locate a failing item: the
        items were really read and processed, only the write is replayed.
        """
        return replace(self, write_count=0, write_skip_count=0)
