"""
BatchOrchestrator -- composition root for the batch engine.

Contract:
    Wires SqlJobRepository, JobRegistry, JobLauncher and JobOperator around
    one SQLAlchemy session and one Clock.  ``load_job()`` builds a FlowJob
    from a YAML definition with the orchestrator's repository and
    transaction manager and registers it.

Architecture: stepflow_batch (top-level).  This is the canonical entry point
    for configuring and running batch jobs.

Non-goals:
    - Does NOT manage session lifecycle -- caller controls commits.
"""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path
from typing import TYPE_CHECKING, Any

from sqlalchemy.orm import Session

from stepflow_kernel.domain.clock import Clock, SystemClock
from stepflow_kernel.logging_config import get_logger

from stepflow_batch.domain.types import JobExecution
from stepflow_batch.job.job import FlowJob, Job
from stepflow_batch.job.registry import JobRegistry
from stepflow_batch.services.launcher import JobLauncher, JobOperator
from stepflow_batch.services.repository import SqlJobRepository
from stepflow_batch.step.transaction import SessionTransactionManager

if TYPE_CHECKING:
    from stepflow_config.assembler import ComponentRegistry

logger = get_logger("batch.orchestrator")


class BatchOrchestrator:
    """Composition root for the batch engine.

    Contract:
        - ``from_session()`` factory creates a fully wired orchestrator.
        - ``register_job()`` / ``load_job()`` add jobs to the registry.
        - ``run()`` launches a registered job by name.

    Non-goals:
        - Does NOT manage session lifecycle -- caller controls commits.
    """

    def __init__(
        self,
        session: Session,
        job_registry: JobRegistry | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._session = session
        self._clock = clock or SystemClock()
        self._registry = job_registry if job_registry is not None else JobRegistry()
        self._repository = SqlJobRepository(session, clock=self._clock)
        self._transaction_manager = SessionTransactionManager(session)
        self._launcher = JobLauncher(self._repository)
        self._operator = JobOperator(
            self._launcher, self._repository, self._registry, clock=self._clock,
        )

    # -------------------------------------------------------------------------
    # Factory
    # -------------------------------------------------------------------------

    @classmethod
    def from_session(
        cls,
        session: Session,
        clock: Clock | None = None,
        jobs: Iterable[Job] = (),
    ) -> BatchOrchestrator:
        """Create a wired orchestrator with ``jobs`` pre-registered."""
        orchestrator = cls(session=session, clock=clock)
        for job in jobs:
            orchestrator.register_job(job)
        return orchestrator

    # -------------------------------------------------------------------------
    # Jobs
    # -------------------------------------------------------------------------

    def register_job(self, job: Job) -> None:
        self._registry.register(job)
        logger.info("job_registered", extra={"job": job.name})

    def load_job(
        self, path: str | Path, components: ComponentRegistry,
    ) -> FlowJob:
        """Build a job from a YAML definition and register it."""
        from stepflow_config import load_job

        job = load_job(
            path,
            components,
            job_repository=self._repository,
            transaction_manager=self._transaction_manager,
            clock=self._clock,
        )
        self.register_job(job)
        return job

    def run(self, job_name: str, parameters: dict[str, Any] | None = None) -> JobExecution:
        return self._operator.start(job_name, parameters)

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def session(self) -> Session:
        return self._session

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def job_registry(self) -> JobRegistry:
        return self._registry

    @property
    def job_repository(self) -> SqlJobRepository:
        return self._repository

    @property
    def transaction_manager(self) -> SessionTransactionManager:
        return self._transaction_manager

    @property
    def job_launcher(self) -> JobLauncher:
        return self._launcher

    @property
    def job_operator(self) -> JobOperator:
        return self._operator
