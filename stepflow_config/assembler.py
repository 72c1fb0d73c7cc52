"""
Job assembler.

Turns a validated JobDefinition into a runnable FlowJob.  Component names
in the definition are resolved through a ComponentRegistry; exception
names through ``resolve_exception``.

Readers, writers and other stateful components can be registered as
factories so each assembled job gets fresh instances.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import Any

from stepflow_kernel.domain.clock import Clock
from stepflow_kernel.exceptions import BatchConfigError

from stepflow_batch.flow.builder import FlowBuilder
from stepflow_batch.flow.flow import by_declaration, by_specificity
from stepflow_batch.job.job import FlowJob
from stepflow_batch.services.repository import JobRepository
from stepflow_batch.step.base import AbstractStep, ChunkOrientedStep, TaskletStep
from stepflow_batch.step.chunk_processor import (
    FaultTolerantChunkProcessor,
    SimpleChunkProcessor,
)
from stepflow_batch.step.classifier import BinaryExceptionClassifier
from stepflow_batch.step.listeners import CompositeListener
from stepflow_batch.step.retry import SimpleRetryPolicy
from stepflow_batch.step.skip import LimitCheckingItemSkipPolicy
from stepflow_batch.step.transaction import TransactionManager

from stepflow_config.schema import (
    FaultToleranceDefinition,
    JobDefinition,
    StepDefinition,
    TransitionDefinition,
)
from stepflow_config.validator import resolve_exception


class ComponentRegistry:
    """Named readers, writers, processors, tasklets, deciders and listeners."""

    def __init__(self) -> None:
        self._components: dict[str, Any] = {}
        self._factories: dict[str, Callable[[], Any]] = {}

    def register(self, name: str, component: Any) -> None:
        """Register a shared component instance."""
        self._check_free(name)
        self._components[name] = component

    def register_factory(self, name: str, factory: Callable[[], Any]) -> None:
        """Register a factory called once per lookup."""
        self._check_free(name)
        self._factories[name] = factory

    def get(self, name: str) -> Any:
        if name in self._components:
            return self._components[name]
        if name in self._factories:
            return self._factories[name]()
        raise KeyError(
            f"No component registered with name '{name}'. "
            f"Available: {sorted(self.names)}"
        )

    @property
    def names(self) -> list[str]:
        return [*self._components, *self._factories]

    def __contains__(self, name: object) -> bool:
        return name in self._components or name in self._factories

    def __len__(self) -> int:
        return len(self._components) + len(self._factories)

    def _check_free(self, name: str) -> None:
        if name in self:
            raise ValueError(f"Component '{name}' is already registered")


def build_job(
    definition: JobDefinition,
    components: ComponentRegistry,
    *,
    job_repository: JobRepository | None = None,
    transaction_manager: TransactionManager | None = None,
    clock: Clock | None = None,
) -> FlowJob:
    """Assemble ``definition`` into a FlowJob.

    Raises:
        BatchConfigError: A referenced component is not registered.
    """
    missing = [
        name for name in _component_names(definition) if name not in components
    ]
    if missing:
        raise BatchConfigError(
            definition.name,
            [f"Component '{name}' is not registered" for name in missing],
        )

    states: dict[str, Any] = {}
    for step_def in definition.steps:
        states[step_def.name] = _build_step(
            step_def,
            components,
            job_repository=job_repository,
            transaction_manager=transaction_manager,
            clock=clock,
        )

    ordering = by_declaration if definition.ordering == "declaration" else by_specificity
    builder = FlowBuilder(definition.name, ordering=ordering)
    for decision_def in definition.decisions:
        states[decision_def.name] = builder.decision(
            decision_def.name, components.get(decision_def.decider),
        )

    start = definition.start_state
    if start is None:
        raise BatchConfigError(definition.name, ["Job declares no steps or decisions"])
    builder.start(states[start])
    for state_def in (*definition.steps, *definition.decisions):
        for transition in state_def.transitions:
            builder.from_(states[state_def.name])
            _add_transition(builder, transition, states)

    return FlowJob(
        definition.name,
        builder.build(),
        job_repository=job_repository,
        restartable=definition.restartable,
        listeners=[components.get(name) for name in definition.listeners],
        clock=clock,
    )


def _add_transition(
    builder: FlowBuilder,
    transition: TransitionDefinition,
    states: dict[str, Any],
) -> None:
    route = builder.on(transition.on)
    if transition.to is not None:
        route.to(states[transition.to])
    elif transition.end is None:
        route.end()
    else:
        route.end_with(transition.end.status, transition.end.exit_code)


def _build_step(
    definition: StepDefinition,
    components: ComponentRegistry,
    *,
    job_repository: JobRepository | None,
    transaction_manager: TransactionManager | None,
    clock: Clock | None,
) -> AbstractStep:
    listeners = [components.get(name) for name in definition.listeners]
    common: dict[str, Any] = {
        "job_repository": job_repository,
        "transaction_manager": transaction_manager,
        "listeners": listeners,
        "allow_start_if_complete": definition.allow_start_if_complete,
        "clock": clock,
    }
    if definition.start_limit is not None:
        common["start_limit"] = definition.start_limit

    if definition.tasklet is not None:
        return TaskletStep(definition.name, components.get(definition.tasklet), **common)

    chunk = definition.chunk
    assert chunk is not None
    reader = components.get(chunk.reader)
    writer = components.get(chunk.writer)
    processor = components.get(chunk.processor) if chunk.processor else None
    listener = CompositeListener(listeners)

    ft = definition.fault_tolerance
    if ft is None:
        chunk_processor: SimpleChunkProcessor = SimpleChunkProcessor(
            reader, writer, processor, chunk_size=chunk.size, listener=listener,
        )
    else:
        chunk_processor = FaultTolerantChunkProcessor(
            reader,
            writer,
            processor,
            chunk_size=chunk.size,
            listener=listener,
            skip_policy=LimitCheckingItemSkipPolicy(
                skip_limit=ft.skip_limit,
                skippable=_exceptions(ft.skippable),
                non_skippable=_exceptions(ft.non_skippable),
            ),
            retry_policy=_retry_policy(ft),
            rollback_classifier=BinaryExceptionClassifier.no_rollback_for(
                _exceptions(ft.no_rollback),
            ),
        )
    return ChunkOrientedStep(definition.name, chunk_processor, **common)


def _retry_policy(ft: FaultToleranceDefinition) -> SimpleRetryPolicy:
    return SimpleRetryPolicy(
        max_attempts=ft.retry_limit + 1,
        retryable=_exceptions(ft.retryable),
        non_retryable=_exceptions(ft.non_retryable),
    )


def _exceptions(names: Iterable[str]) -> list[type[BaseException]]:
    return [resolve_exception(name) for name in names]


def _component_names(definition: JobDefinition) -> list[str]:
    names: list[str] = list(definition.listeners)
    for step in definition.steps:
        names.extend(step.listeners)
        if step.tasklet is not None:
            names.append(step.tasklet)
        if step.chunk is not None:
            names.extend([step.chunk.reader, step.chunk.writer])
            if step.chunk.processor:
                names.append(step.chunk.processor)
    names.extend(d.decider for d in definition.decisions)
    return list(dict.fromkeys(names))
