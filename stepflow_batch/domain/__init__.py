"""
stepflow_batch.domain -- Pure types and value objects for the batch engine.

ZERO I/O.
"""

from stepflow_batch.domain.chunk import (
    Chunk,
    ChunkResult,
    SkipWrapper,
    WriteOutcome,
    WriteOutcomeKind,
)
from stepflow_batch.domain.types import (
    EXECUTED_KEY,
    RESTART_KEY,
    BatchStatus,
    ExitStatus,
    FlowExecution,
    FlowExecutionStatus,
    JobExecution,
    StepContribution,
    StepExecution,
)

__all__ = [
    "EXECUTED_KEY",
    "RESTART_KEY",
    "BatchStatus",
    "Chunk",
    "ChunkResult",
    "ExitStatus",
    "FlowExecution",
    "FlowExecutionStatus",
    "JobExecution",
    "SkipWrapper",
    "StepContribution",
    "StepExecution",
    "WriteOutcome",
    "WriteOutcomeKind",
]
