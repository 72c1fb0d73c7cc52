"""
Job definition validator.

Checks a parsed JobDefinition for problems that would otherwise surface
only when the flow is built or, worse, half way through a run.

Errors make the definition unusable; warnings are logged by ``load_job``
and the definition is still assembled.
"""

from __future__ import annotations

import builtins
import importlib
from dataclasses import dataclass, field

from stepflow_batch.domain.types import FlowExecutionStatus

from stepflow_config.schema import JobDefinition, TransitionDefinition

_ORDERINGS = ("specificity", "declaration")
_END_STATUSES = (
    FlowExecutionStatus.COMPLETED.name,
    FlowExecutionStatus.STOPPED.name,
    FlowExecutionStatus.FAILED.name,
    FlowExecutionStatus.UNKNOWN.name,
)


@dataclass
class ConfigValidationResult:
    """Result of job definition validation."""

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return len(self.errors) == 0

    def add_error(self, message: str) -> None:
        self.errors.append(message)

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)


def resolve_exception(name: str) -> type[BaseException]:
    """Import an exception class from a dotted path or a builtin name.

    Raises:
        ImportError: The module cannot be imported.
        AttributeError: The module has no such attribute.
        TypeError: The attribute is not an exception class.
    """
    if "." in name:
        module_name, _, attr = name.rpartition(".")
        obj = getattr(importlib.import_module(module_name), attr)
    else:
        obj = getattr(builtins, name)
    if not (isinstance(obj, type) and issubclass(obj, BaseException)):
        raise TypeError(f"'{name}' is not an exception class")
    return obj


def validate_job(definition: JobDefinition) -> ConfigValidationResult:
    """Run every check and collect the findings."""
    result = ConfigValidationResult()

    _validate_job_header(definition, result)
    _validate_state_names(definition, result)
    _validate_steps(definition, result)
    _validate_transitions(definition, result)
    _validate_reachability(definition, result)

    return result


def _validate_job_header(definition: JobDefinition, result: ConfigValidationResult) -> None:
    if not definition.name:
        result.add_error("Job name must not be empty")
    if definition.ordering not in _ORDERINGS:
        result.add_error(
            f"Unknown transition ordering '{definition.ordering}', "
            f"expected one of {list(_ORDERINGS)}"
        )
    if not definition.state_names:
        result.add_error("Job declares no steps or decisions")
    elif definition.start and definition.start not in definition.state_names:
        result.add_error(f"Start state '{definition.start}' is not declared")


def _validate_state_names(definition: JobDefinition, result: ConfigValidationResult) -> None:
    seen: set[str] = set()
    for name in definition.state_names:
        if name in seen:
            result.add_error(f"State name '{name}' is declared more than once")
        seen.add(name)


def _validate_steps(definition: JobDefinition, result: ConfigValidationResult) -> None:
    for step in definition.steps:
        if (step.tasklet is None) == (step.chunk is None):
            result.add_error(
                f"Step '{step.name}' must declare exactly one of 'tasklet' or 'chunk'"
            )
        if step.chunk is not None and step.chunk.size < 1:
            result.add_error(
                f"Step '{step.name}' has chunk size {step.chunk.size}, must be >= 1"
            )
        if step.start_limit is not None and step.start_limit < 1:
            result.add_error(
                f"Step '{step.name}' has start_limit {step.start_limit}, must be >= 1"
            )

        ft = step.fault_tolerance
        if ft is None:
            continue
        if step.chunk is None:
            result.add_warning(
                f"Step '{step.name}' declares fault_tolerance but is not a chunk step"
            )
        if ft.skip_limit < 0:
            result.add_error(f"Step '{step.name}' has negative skip_limit {ft.skip_limit}")
        if ft.retry_limit < 0:
            result.add_error(f"Step '{step.name}' has negative retry_limit {ft.retry_limit}")
        if ft.skip_limit > 0 and not ft.skippable:
            result.add_warning(
                f"Step '{step.name}' has skip_limit {ft.skip_limit} but no skippable errors"
            )
        for name in ft.exception_names:
            try:
                resolve_exception(name)
            except (ImportError, AttributeError, TypeError) as exc:
                result.add_error(
                    f"Step '{step.name}' references unknown exception '{name}': {exc}"
                )


def _validate_transitions(definition: JobDefinition, result: ConfigValidationResult) -> None:
    declared = set(definition.state_names)
    has_end = False

    for state in (*definition.steps, *definition.decisions):
        if not state.transitions:
            # The builder ends the flow on a state with no outgoing routes
            has_end = True
            continue
        patterns: set[str] = set()
        for transition in state.transitions:
            if transition.on in patterns:
                result.add_error(
                    f"State '{state.name}' has more than one transition on "
                    f"'{transition.on}'"
                )
            patterns.add(transition.on)
            if transition.is_end:
                has_end = True
                _validate_end(state.name, transition, result)
            elif transition.to not in declared:
                result.add_error(
                    f"State '{state.name}' transitions on '{transition.on}' "
                    f"to undeclared state '{transition.to}'"
                )

    if declared and not has_end:
        result.add_error("No transition ends the flow")


def _validate_end(
    state_name: str,
    transition: TransitionDefinition,
    result: ConfigValidationResult,
) -> None:
    if transition.end is None:
        return
    if not transition.end.status.startswith(_END_STATUSES):
        result.add_error(
            f"State '{state_name}' ends with unknown status '{transition.end.status}'"
        )


def _validate_reachability(
    definition: JobDefinition, result: ConfigValidationResult,
) -> None:
    start = definition.start_state
    if start is None or start not in definition.state_names:
        return
    reachable = {start}
    frontier = [start]
    while frontier:
        current = frontier.pop()
        for transition in definition.transitions_of(current):
            if transition.to and transition.to not in reachable:
                reachable.add(transition.to)
                frontier.append(transition.to)
    for name in definition.state_names:
        if name not in reachable:
            result.add_warning(f"State '{name}' is not reachable from '{start}'")
