"""
ORM models for the job repository.

Contract:
    JobInstanceModel, JobExecutionModel and StepExecutionModel persist job
    instances, job executions and step executions.  Executions map to and
    from the domain records with ``to_dto()`` / ``from_dto()``, and
    ``update_from()`` copies the mutable state of a record onto an
    existing row.

Architecture: stepflow_batch/models. Imports from stepflow_kernel.db.base only.

Invariants enforced:
    - (job_name, job_key) is UNIQUE on JobInstanceModel: one instance per
      job name and identifying parameters.
    - Execution contexts are stored as JSON; values must be JSON-serialisable.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stepflow_kernel.db.base import TimestampedBase, UUIDString

if TYPE_CHECKING:
    from stepflow_batch.domain.types import JobExecution, StepExecution


class JobInstanceModel(TimestampedBase):
    """A job name plus the key of its identifying parameters."""

    __tablename__ = "batch_job_instances"

    __table_args__ = (
        UniqueConstraint("job_name", "job_key", name="uq_batch_job_instance_key"),
    )

    job_name: Mapped[str] = mapped_column(String(200), nullable=False)
    job_key: Mapped[str] = mapped_column(String(64), nullable=False)
    parameters: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    executions: Mapped[list["JobExecutionModel"]] = relationship(
        "JobExecutionModel",
        back_populates="job_instance",
        order_by="JobExecutionModel.seq",
    )


class JobExecutionModel(TimestampedBase):
    """One run of a job instance."""

    __tablename__ = "batch_job_executions"

    __table_args__ = (
        Index("ix_batch_job_executions_instance", "job_instance_id"),
        Index("ix_batch_job_executions_status", "status"),
        UniqueConstraint("job_instance_id", "seq", name="uq_batch_job_execution_seq"),
    )

    job_instance_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("batch_job_instances.id", ondelete="CASCADE"),
        nullable=False,
    )
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    job_name: Mapped[str] = mapped_column(String(200), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    exit_code: Mapped[str] = mapped_column(String(100), nullable=False)
    exit_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    parameters: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    execution_context: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    create_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    start_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_updated: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    job_instance: Mapped[JobInstanceModel] = relationship(
        "JobInstanceModel", back_populates="executions",
    )
    step_executions: Mapped[list["StepExecutionModel"]] = relationship(
        "StepExecutionModel",
        back_populates="job_execution",
        order_by="StepExecutionModel.start_time",
    )

    def to_dto(self) -> JobExecution:
        from stepflow_batch.domain.types import BatchStatus, ExitStatus, JobExecution

        return JobExecution(
            id=self.id,
            job_name=self.job_name,
            job_instance_id=self.job_instance_id,
            parameters=dict(self.parameters or {}),
            status=BatchStatus(self.status),
            exit_status=ExitStatus(self.exit_code, self.exit_description or ""),
            create_time=self.create_time,
            start_time=self.start_time,
            end_time=self.end_time,
            last_updated=self.last_updated,
            execution_context=dict(self.execution_context or {}),
        )

    @classmethod
    def from_dto(cls, dto: JobExecution, seq: int) -> JobExecutionModel:
        model = cls(
            id=dto.id,
            seq=seq,
            job_instance_id=dto.job_instance_id,
            job_name=dto.job_name,
            parameters=dict(dto.parameters) or None,
            create_time=dto.create_time,
        )
        model.update_from(dto)
        return model

    def update_from(self, dto: JobExecution) -> None:
        self.status = dto.status.value
        self.exit_code = dto.exit_status.exit_code
        self.exit_description = dto.exit_status.exit_description or None
        self.start_time = dto.start_time
        self.end_time = dto.end_time
        self.last_updated = dto.last_updated
        self.execution_context = dict(dto.execution_context)


class StepExecutionModel(TimestampedBase):
    """One run of a step within a job execution, with its counters."""

    __tablename__ = "batch_step_executions"

    __table_args__ = (
        Index("ix_batch_step_executions_job_execution", "job_execution_id"),
        Index("ix_batch_step_executions_step_name", "step_name"),
    )

    job_execution_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("batch_job_executions.id", ondelete="CASCADE"),
        nullable=False,
    )
    step_name: Mapped[str] = mapped_column(String(200), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    exit_code: Mapped[str] = mapped_column(String(100), nullable=False)
    exit_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    read_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    write_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    filter_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    read_skip_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    process_skip_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    write_skip_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    commit_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    rollback_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    execution_context: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    start_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_updated: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    job_execution: Mapped[JobExecutionModel] = relationship(
        "JobExecutionModel", back_populates="step_executions",
    )

    def to_dto(self, job_execution: JobExecution | None = None) -> StepExecution:
        from stepflow_batch.domain.types import BatchStatus, ExitStatus, StepExecution

        return StepExecution(
            id=self.id,
            step_name=self.step_name,
            job_execution=job_execution,
            status=BatchStatus(self.status),
            exit_status=ExitStatus(self.exit_code, self.exit_description or ""),
            read_count=self.read_count,
            write_count=self.write_count,
            filter_count=self.filter_count,
            read_skip_count=self.read_skip_count,
            process_skip_count=self.process_skip_count,
            write_skip_count=self.write_skip_count,
            commit_count=self.commit_count,
            rollback_count=self.rollback_count,
            start_time=self.start_time,
            end_time=self.end_time,
            last_updated=self.last_updated,
            execution_context=dict(self.execution_context or {}),
        )

    @classmethod
    def from_dto(cls, dto: StepExecution) -> StepExecutionModel:
        job_execution_id = dto.job_execution_id
        if job_execution_id is None:
            raise ValueError(
                f"Step execution {dto.id} ({dto.step_name}) has no job execution"
            )
        model = cls(id=dto.id, job_execution_id=job_execution_id, step_name=dto.step_name)
        model.update_from(dto)
        return model

    def update_from(self, dto: StepExecution) -> None:
        self.status = dto.status.value
        self.exit_code = dto.exit_status.exit_code
        self.exit_description = dto.exit_status.exit_description or None
        self.read_count = dto.read_count
        self.write_count = dto.write_count
        self.filter_count = dto.filter_count
        self.read_skip_count = dto.read_skip_count
        self.process_skip_count = dto.process_skip_count
        self.write_skip_count = dto.write_skip_count
        self.commit_count = dto.commit_count
        self.rollback_count = dto.rollback_count
        self.start_time = dto.start_time
        self.end_time = dto.end_time
        self.last_updated = dto.last_updated
        self.execution_context = dict(dto.execution_context)
