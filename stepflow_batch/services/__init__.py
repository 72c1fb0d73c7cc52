"""
stepflow_batch.services -- Job repository, launcher and operator.
"""

from stepflow_batch.services.launcher import JobLauncher, JobOperator
from stepflow_batch.services.repository import JobRepository, SqlJobRepository, job_key

__all__ = [
    "JobLauncher",
    "JobOperator",
    "JobRepository",
    "SqlJobRepository",
    "job_key",
]
