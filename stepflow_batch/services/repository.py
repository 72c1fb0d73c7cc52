"""
SqlJobRepository -- persistence of job instances and executions.

Contract:
    ``create_job_execution()`` finds or creates the job instance for
    (job name, identifying parameters) and opens a new execution on it,
    carrying over the execution context of the previous execution.
    ``update_*`` methods copy the in-memory records onto their rows.
    Query methods return fresh domain records.

Architecture: stepflow_batch/services.  Imports from stepflow_batch.domain,
    stepflow_batch.models and kernel primitives.

Invariants enforced:
    - One job instance per (job name, SHA-256 key of the parameters).
    - At most one running execution per job instance.
    - A COMPLETED or ABANDONED instance is never re-run.
    - An instance whose last execution ended UNKNOWN is never restarted.

Non-goals:
    - Does NOT call ``session.commit()`` -- caller controls boundaries.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Protocol, runtime_checkable
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from stepflow_kernel.domain.clock import Clock, SystemClock
from stepflow_kernel.exceptions import (
    JobExecutionAlreadyRunningError,
    JobInstanceAlreadyCompleteError,
    JobRestartError,
    NoSuchJobExecutionError,
)
from stepflow_kernel.logging_config import get_logger

from stepflow_batch.domain.types import BatchStatus, JobExecution, StepExecution
from stepflow_batch.models.batch import (
    JobExecutionModel,
    JobInstanceModel,
    StepExecutionModel,
)

logger = get_logger("batch.repository")

_RUNNING = (
    BatchStatus.STARTING.value,
    BatchStatus.STARTED.value,
    BatchStatus.STOPPING.value,
)


def job_key(parameters: dict[str, Any]) -> str:
    """SHA-256 over the canonical JSON form of the identifying parameters."""
    canonical = json.dumps(
        parameters or {}, sort_keys=True, default=str, separators=(",", ":"),
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@runtime_checkable
class JobRepository(Protocol):
    """What steps, the step handler and the launcher need from persistence."""

    def create_job_execution(
        self, job_name: str, parameters: dict[str, Any],
    ) -> JobExecution: ...

    def get_last_job_execution(
        self, job_name: str, parameters: dict[str, Any],
    ) -> JobExecution | None: ...

    def update_job_execution(self, job_execution: JobExecution) -> None: ...

    def update_job_execution_context(self, job_execution: JobExecution) -> None: ...

    def add_step_execution(self, step_execution: StepExecution) -> None: ...

    def update_step_execution(self, step_execution: StepExecution) -> None: ...

    def update_step_execution_context(self, step_execution: StepExecution) -> None: ...

    def get_last_step_execution(
        self, job_instance_id: UUID, step_name: str,
    ) -> StepExecution | None: ...

    def get_step_execution_count(self, job_instance_id: UUID, step_name: str) -> int: ...


class SqlJobRepository:
    """SQLAlchemy-backed JobRepository bound to one session."""

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()

    # -------------------------------------------------------------------------
    # Job instances and executions
    # -------------------------------------------------------------------------

    def is_job_instance_exists(self, job_name: str, parameters: dict[str, Any]) -> bool:
        return self._find_instance(job_name, parameters) is not None

    def create_job_execution(
        self, job_name: str, parameters: dict[str, Any],
    ) -> JobExecution:
        """Open a new execution for (job_name, parameters).

        Raises:
            JobExecutionAlreadyRunningError: An execution of the instance is running.
            JobRestartError: The last execution ended UNKNOWN.
            JobInstanceAlreadyCompleteError: The instance already completed.
        """
        key = job_key(parameters)
        instance = self._find_instance(job_name, parameters)
        context: dict[str, Any] = {}

        if instance is None:
            instance = JobInstanceModel(
                job_name=job_name, job_key=key, parameters=dict(parameters) or None,
            )
            self._session.add(instance)
            self._session.flush()
            seq = 1
            logger.info(
                "job_instance_created",
                extra={
                    "job_name": job_name,
                    "job_key": key,
                    "job_instance_id": str(instance.id),
                },
            )
        else:
            executions = self._executions_of(instance.id)
            for execution in executions:
                if execution.status in _RUNNING:
                    raise JobExecutionAlreadyRunningError(job_name, str(execution.id))
                if execution.status == BatchStatus.UNKNOWN.value:
                    raise JobRestartError(
                        job_name,
                        f"execution {execution.id} ended with UNKNOWN status; "
                        "it may have left inconsistent data and needs manual "
                        "intervention",
                    )
                if execution.status in (
                    BatchStatus.COMPLETED.value, BatchStatus.ABANDONED.value,
                ):
                    raise JobInstanceAlreadyCompleteError(job_name, key)
            if executions:
                context = dict(executions[-1].execution_context or {})
            seq = len(executions) + 1

        now = self._clock.now()
        job_execution = JobExecution(
            job_name=job_name,
            parameters=dict(parameters),
            job_instance_id=instance.id,
            create_time=now,
            last_updated=now,
            execution_context=context,
        )
        self._session.add(JobExecutionModel.from_dto(job_execution, seq=seq))
        self._session.flush()

        logger.info(
            "job_execution_created",
            extra={
                "job_name": job_name,
                "job_execution_id": str(job_execution.id),
                "job_instance_id": str(instance.id),
                "seq": seq,
            },
        )
        return job_execution

    def get_last_job_execution(
        self, job_name: str, parameters: dict[str, Any],
    ) -> JobExecution | None:
        instance = self._find_instance(job_name, parameters)
        if instance is None:
            return None
        executions = self._executions_of(instance.id)
        if not executions:
            return None
        return self._load_job_execution(executions[-1])

    def get_job_execution(self, execution_id: UUID) -> JobExecution:
        """Raises NoSuchJobExecutionError if the id is unknown."""
        model = self._session.get(JobExecutionModel, execution_id)
        if model is None:
            raise NoSuchJobExecutionError(str(execution_id))
        return self._load_job_execution(model)

    def find_running_job_executions(self, job_name: str) -> list[JobExecution]:
        models = self._session.execute(
            select(JobExecutionModel)
            .where(
                JobExecutionModel.job_name == job_name,
                JobExecutionModel.status.in_(_RUNNING),
            )
            .order_by(JobExecutionModel.create_time)
        ).scalars().all()
        return [self._load_job_execution(m) for m in models]

    def get_job_executions(self, job_instance_id: UUID) -> list[JobExecution]:
        return [self._load_job_execution(m) for m in self._executions_of(job_instance_id)]

    def update_job_execution(self, job_execution: JobExecution) -> None:
        model = self._session.get(JobExecutionModel, job_execution.id)
        if model is None:
            raise NoSuchJobExecutionError(str(job_execution.id))
        job_execution.last_updated = self._clock.now()
        model.update_from(job_execution)
        self._session.flush()

    def update_job_execution_context(self, job_execution: JobExecution) -> None:
        model = self._session.get(JobExecutionModel, job_execution.id)
        if model is None:
            raise NoSuchJobExecutionError(str(job_execution.id))
        model.execution_context = dict(job_execution.execution_context)
        self._session.flush()

    # -------------------------------------------------------------------------
    # Step executions
    # -------------------------------------------------------------------------

    def add_step_execution(self, step_execution: StepExecution) -> None:
        step_execution.last_updated = self._clock.now()
        self._session.add(StepExecutionModel.from_dto(step_execution))
        self._session.flush()

    def update_step_execution(self, step_execution: StepExecution) -> None:
        model = self._session.get(StepExecutionModel, step_execution.id)
        if model is None:
            self.add_step_execution(step_execution)
            return
        step_execution.last_updated = self._clock.now()
        model.update_from(step_execution)
        self._session.flush()
        self._check_for_interruption(step_execution)

    def update_step_execution_context(self, step_execution: StepExecution) -> None:
        model = self._session.get(StepExecutionModel, step_execution.id)
        if model is None:
            self.add_step_execution(step_execution)
            return
        model.execution_context = dict(step_execution.execution_context)
        self._session.flush()

    def get_last_step_execution(
        self, job_instance_id: UUID, step_name: str,
    ) -> StepExecution | None:
        model = self._session.execute(
            select(StepExecutionModel)
            .join(JobExecutionModel)
            .where(
                JobExecutionModel.job_instance_id == job_instance_id,
                StepExecutionModel.step_name == step_name,
            )
            .order_by(JobExecutionModel.seq.desc(), StepExecutionModel.start_time.desc())
            .limit(1)
        ).scalar_one_or_none()
        if model is None:
            return None
        return model.to_dto(model.job_execution.to_dto())

    def get_step_execution_count(self, job_instance_id: UUID, step_name: str) -> int:
        return self._session.execute(
            select(func.count(StepExecutionModel.id))
            .join(JobExecutionModel)
            .where(
                JobExecutionModel.job_instance_id == job_instance_id,
                StepExecutionModel.step_name == step_name,
            )
        ).scalar_one()

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _check_for_interruption(self, step_execution: StepExecution) -> None:
        """Pick up a stop persisted by another process for this job execution."""
        if step_execution.job_execution_id is None:
            return
        status = self._session.execute(
            select(JobExecutionModel.status).where(
                JobExecutionModel.id == step_execution.job_execution_id,
            )
        ).scalar_one_or_none()
        if status == BatchStatus.STOPPING.value and not step_execution.terminate_only:
            logger.info(
                "step_interrupted_by_repository",
                extra={"step_execution_id": str(step_execution.id)},
            )
            step_execution.terminate_only = True

    def _find_instance(
        self, job_name: str, parameters: dict[str, Any],
    ) -> JobInstanceModel | None:
        return self._session.execute(
            select(JobInstanceModel).where(
                JobInstanceModel.job_name == job_name,
                JobInstanceModel.job_key == job_key(parameters),
            )
        ).scalar_one_or_none()

    def _executions_of(self, job_instance_id: UUID) -> list[JobExecutionModel]:
        return list(
            self._session.execute(
                select(JobExecutionModel)
                .where(JobExecutionModel.job_instance_id == job_instance_id)
                .order_by(JobExecutionModel.seq)
            ).scalars().all()
        )

    def _load_job_execution(self, model: JobExecutionModel) -> JobExecution:
        job_execution = model.to_dto()
        step_models = self._session.execute(
            select(StepExecutionModel)
            .where(StepExecutionModel.job_execution_id == model.id)
            .order_by(StepExecutionModel.start_time)
        ).scalars().all()
        for step_model in step_models:
            job_execution.step_executions.append(step_model.to_dto(job_execution))
        return job_execution
