"""
JobLauncher and JobOperator -- starting, stopping and restarting jobs.

Contract:
    ``JobLauncher.run(job, parameters)`` synchronously runs ``job`` on the
    calling thread and returns the finished JobExecution.  While it runs,
    the execution is reachable through ``get_running()`` so another thread
    can request a stop.
    ``JobOperator`` addresses jobs by name and executions by id:
    ``start``, ``stop``, ``restart``, ``abandon``.

Invariants enforced:
    - A non-restartable job never gets a second execution for the same
      parameters.
    - Stopping is cooperative: ``stop()`` only sets the marker the running
      thread checks between chunks and between states.

Non-goals:
    - Does NOT call ``session.commit()`` -- caller controls boundaries.
    - Does NOT run jobs on background threads.
"""

from __future__ import annotations

import threading
from typing import Any
from uuid import UUID

from stepflow_kernel.domain.clock import Clock, SystemClock
from stepflow_kernel.exceptions import JobExecutionAlreadyRunningError, JobRestartError
from stepflow_kernel.logging_config import LogContext, get_logger

from stepflow_batch.domain.types import BatchStatus, JobExecution
from stepflow_batch.job.job import Job
from stepflow_batch.job.registry import JobRegistry
from stepflow_batch.services.repository import SqlJobRepository

logger = get_logger("batch.launcher")


class JobLauncher:
    """Synchronous launcher with restartability checks."""

    def __init__(self, job_repository: SqlJobRepository):
        self._repository = job_repository
        self._running: dict[UUID, JobExecution] = {}
        self._lock = threading.Lock()

    def run(
        self,
        job: Job,
        parameters: dict[str, Any] | None = None,
        correlation_id: str | None = None,
    ) -> JobExecution:
        """Run ``job`` with ``parameters`` to completion.

        Raises:
            JobRestartError: The job is not restartable, or a step of the
                last execution ended UNKNOWN.
            JobExecutionAlreadyRunningError: The instance is already running.
            JobInstanceAlreadyCompleteError: The instance already completed.
        """
        parameters = dict(parameters or {})
        last = self._repository.get_last_job_execution(job.name, parameters)
        if last is not None:
            if not job.restartable:
                raise JobRestartError(
                    job.name, "job instance already exists and is not restartable",
                )
            for step_execution in last.step_executions:
                if step_execution.status == BatchStatus.UNKNOWN:
                    raise JobRestartError(
                        job.name,
                        f"step '{step_execution.step_name}' is in UNKNOWN state; "
                        "it may have left inconsistent data",
                    )

        job_execution = self._repository.create_job_execution(job.name, parameters)

        with self._lock:
            self._running[job_execution.id] = job_execution
        try:
            with LogContext.bind(correlation_id=correlation_id):
                logger.info(
                    "job_launched",
                    extra={
                        "job": job.name,
                        "execution_id": str(job_execution.id),
                        "restart": last is not None,
                    },
                )
                job.execute(job_execution)
        finally:
            with self._lock:
                self._running.pop(job_execution.id, None)

        return job_execution

    def get_running(self, execution_id: UUID) -> JobExecution | None:
        with self._lock:
            return self._running.get(execution_id)

    def running_executions(self) -> tuple[JobExecution, ...]:
        with self._lock:
            return tuple(self._running.values())

    @property
    def job_repository(self) -> SqlJobRepository:
        return self._repository


class JobOperator:
    """Operational control over registered jobs and their executions."""

    def __init__(
        self,
        launcher: JobLauncher,
        job_repository: SqlJobRepository,
        job_registry: JobRegistry,
        clock: Clock | None = None,
    ):
        self._launcher = launcher
        self._repository = job_repository
        self._registry = job_registry
        self._clock = clock or SystemClock()

    def start(
        self, job_name: str, parameters: dict[str, Any] | None = None,
    ) -> JobExecution:
        """Raises NoSuchJobError if ``job_name`` is not registered."""
        return self._launcher.run(self._registry.get(job_name), parameters)

    def stop(self, execution_id: UUID) -> bool:
        """Request a cooperative stop.

        Returns False if the execution is not running.

        Raises:
            NoSuchJobExecutionError: If the execution id is unknown.
        """
        live = self._launcher.get_running(execution_id)
        if live is not None:
            live.request_stop()
            logger.info("job_stop_requested", extra={"execution_id": str(execution_id)})
            return True

        job_execution = self._repository.get_job_execution(execution_id)
        if not job_execution.status.is_running:
            logger.warning(
                "job_stop_ignored",
                extra={
                    "execution_id": str(execution_id),
                    "status": job_execution.status.value,
                },
            )
            return False

        # Running in another process: persist the marker for it to pick up
        job_execution.status = BatchStatus.STOPPING
        self._repository.update_job_execution(job_execution)
        logger.info("job_stop_requested", extra={"execution_id": str(execution_id)})
        return True

    def restart(self, execution_id: UUID) -> JobExecution:
        """Run the instance of ``execution_id`` again with the same parameters.

        Raises:
            NoSuchJobExecutionError, NoSuchJobError, JobRestartError,
            JobInstanceAlreadyCompleteError, JobExecutionAlreadyRunningError.
        """
        previous = self._repository.get_job_execution(execution_id)
        job = self._registry.get(previous.job_name)
        logger.info(
            "job_restart_requested",
            extra={"execution_id": str(execution_id), "job": previous.job_name},
        )
        return self._launcher.run(job, previous.parameters)

    def abandon(self, execution_id: UUID) -> JobExecution:
        """Mark a stopped or failed execution ABANDONED so it is never restarted.

        Raises:
            NoSuchJobExecutionError: If the execution id is unknown.
            JobExecutionAlreadyRunningError: If it is still running.
        """
        job_execution = self._repository.get_job_execution(execution_id)
        if job_execution.status in (BatchStatus.STARTING, BatchStatus.STARTED):
            raise JobExecutionAlreadyRunningError(
                job_execution.job_name, str(execution_id),
            )
        job_execution.upgrade_status(BatchStatus.ABANDONED)
        if job_execution.end_time is None:
            job_execution.end_time = self._clock.now()
        self._repository.update_job_execution(job_execution)
        logger.info("job_abandoned", extra={"execution_id": str(execution_id)})
        return job_execution

    def get_running_executions(self, job_name: str) -> tuple[UUID, ...]:
        """Raises NoSuchJobError if ``job_name`` is not registered."""
        self._registry.get(job_name)
        return tuple(e.id for e in self._repository.find_running_job_executions(job_name))

    def get_job_names(self) -> tuple[str, ...]:
        return self._registry.job_names()
