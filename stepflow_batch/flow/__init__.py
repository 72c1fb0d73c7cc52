"""
stepflow_batch.flow -- The flow state machine.

Pattern matching and specificity ordering, immutable transitions, the
State variants, the Flow resolution loop and the fluent FlowBuilder.
"""

from stepflow_batch.flow.builder import FlowBuilder, TransitionBuilder
from stepflow_batch.flow.executor import FlowExecutor, JobExecutionDecider
from stepflow_batch.flow.flow import Flow, by_declaration, by_specificity
from stepflow_batch.flow.patterns import (
    compare_patterns,
    match_pattern,
    specificity_key,
)
from stepflow_batch.flow.state import (
    DecisionState,
    EndState,
    FlowState,
    SplitState,
    State,
    StepState,
)
from stepflow_batch.flow.transition import StateTransition

__all__ = [
    "DecisionState",
    "EndState",
    "Flow",
    "FlowBuilder",
    "FlowExecutor",
    "FlowState",
    "JobExecutionDecider",
    "SplitState",
    "State",
    "StateTransition",
    "StepState",
    "TransitionBuilder",
    "by_declaration",
    "by_specificity",
    "compare_patterns",
    "match_pattern",
    "specificity_key",
]
