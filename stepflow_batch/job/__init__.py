"""
stepflow_batch.job -- Jobs, step handling and the job registry.
"""

from stepflow_batch.job.executor import JobFlowExecutor
from stepflow_batch.job.job import FlowJob, Job
from stepflow_batch.job.registry import JobRegistry
from stepflow_batch.job.step_handler import SimpleStepHandler

__all__ = [
    "FlowJob",
    "Job",
    "JobFlowExecutor",
    "JobRegistry",
    "SimpleStepHandler",
]
