"""
stepflow_batch.models -- ORM models for the job repository.

Architecture: stepflow_batch/models. Imports from stepflow_kernel.db.base only.
"""

from stepflow_batch.models.batch import (
    JobExecutionModel,
    JobInstanceModel,
    StepExecutionModel,
)

__all__ = [
    "JobExecutionModel",
    "JobInstanceModel",
    "StepExecutionModel",
]
