"""
Tests for SimpleStepHandler's restart rules.

Each test runs a first job execution, fails it, and opens a second
execution of the same instance to observe how the step is treated.
"""

import pytest

from stepflow_kernel.exceptions import (
    JobInterruptedError,
    JobRestartError,
    StartLimitExceededError,
)

from stepflow_batch.domain.types import EXECUTED_KEY, RESTART_KEY, BatchStatus, JobExecution
from stepflow_batch.job.step_handler import SimpleStepHandler
from stepflow_batch.services.repository import SqlJobRepository
from stepflow_batch.step.base import TaskletStep


class ScriptedTasklet:
    """Fails while ``failures`` remain, then succeeds."""

    def __init__(self, failures=0, context=None):
        self.failures = failures
        self.context = context or {}
        self.calls = 0

    def __call__(self, contribution, step_execution):
        self.calls += 1
        step_execution.execution_context.update(self.context)
        if self.failures > 0:
            self.failures -= 1
            raise RuntimeError("scripted failure")


@pytest.fixture
def repository(session, deterministic_clock):
    return SqlJobRepository(session, clock=deterministic_clock)


@pytest.fixture
def handler(repository):
    return SimpleStepHandler(repository)


def _step(repository, tasklet, **kwargs):
    return TaskletStep("load", tasklet, job_repository=repository, **kwargs)


def _second_run(repository, first):
    first.status = BatchStatus.FAILED
    repository.update_job_execution(first)
    return repository.create_job_execution(first.job_name, first.parameters)


class TestSimpleStepHandler:
    def test_first_run_executes_step(self, repository, handler):
        tasklet = ScriptedTasklet()
        job_execution = repository.create_job_execution("job", {})

        step_execution = handler.handle_step(_step(repository, tasklet), job_execution)

        assert tasklet.calls == 1
        assert step_execution.status == BatchStatus.COMPLETED
        assert job_execution.step_executions == [step_execution]

    def test_completed_step_is_not_rerun(self, repository, handler):
        tasklet = ScriptedTasklet()
        step = _step(repository, tasklet)
        first = repository.create_job_execution("job", {})
        completed = handler.handle_step(step, first)

        second = _second_run(repository, first)
        result = handler.handle_step(step, second)

        assert tasklet.calls == 1
        assert result.id == completed.id
        assert result.status == BatchStatus.COMPLETED
        assert second.step_executions == []

    def test_allow_start_if_complete(self, repository, handler):
        tasklet = ScriptedTasklet()
        step = _step(repository, tasklet, allow_start_if_complete=True)
        first = repository.create_job_execution("job", {})
        handler.handle_step(step, first)

        second = _second_run(repository, first)
        handler.handle_step(step, second)

        assert tasklet.calls == 2

    def test_failed_step_restarts_with_previous_context(self, repository, handler):
        tasklet = ScriptedTasklet(failures=1, context={"cursor": 5})
        step = _step(repository, tasklet)
        first = repository.create_job_execution("job", {})
        failed = handler.handle_step(step, first)
        assert failed.status == BatchStatus.FAILED

        second = _second_run(repository, first)
        restarted = handler.handle_step(step, second)

        assert restarted.id != failed.id
        assert restarted.status == BatchStatus.COMPLETED
        assert restarted.execution_context["cursor"] == 5
        assert restarted.execution_context[RESTART_KEY] is True
        assert restarted.execution_context[EXECUTED_KEY] is True

    def test_start_limit(self, repository, handler):
        step = _step(repository, ScriptedTasklet(failures=5), start_limit=1)
        first = repository.create_job_execution("job", {})
        handler.handle_step(step, first)

        second = _second_run(repository, first)
        with pytest.raises(StartLimitExceededError):
            handler.handle_step(step, second)

    def test_unknown_step_cannot_restart(self, repository, handler):
        step = _step(repository, ScriptedTasklet(failures=1))
        first = repository.create_job_execution("job", {})
        step_execution = handler.handle_step(step, first)
        step_execution.status = BatchStatus.UNKNOWN
        repository.update_step_execution(step_execution)

        second = _second_run(repository, first)
        with pytest.raises(JobRestartError):
            handler.handle_step(step, second)

    def test_stopping_job_does_not_start_steps(self, repository, handler):
        tasklet = ScriptedTasklet()
        job_execution = repository.create_job_execution("job", {})
        job_execution.status = BatchStatus.STOPPING

        with pytest.raises(JobInterruptedError):
            handler.handle_step(_step(repository, tasklet), job_execution)
        assert tasklet.calls == 0

    def test_stopped_step_interrupts_job(self, repository, handler):
        def stopping_tasklet(contribution, step_execution):
            step_execution.terminate_only = True

        job_execution = repository.create_job_execution("job", {})
        job_execution.status = BatchStatus.STARTED

        with pytest.raises(JobInterruptedError) as info:
            handler.handle_step(_step(repository, stopping_tasklet), job_execution)

        assert info.value.status == "STOPPED"
        assert job_execution.status == BatchStatus.STOPPING

    def test_repeat_visit_in_same_execution_runs_again(self, repository, handler):
        tasklet = ScriptedTasklet()
        step = _step(repository, tasklet)
        job_execution = repository.create_job_execution("job", {})

        handler.handle_step(step, job_execution)
        handler.handle_step(step, job_execution)

        assert tasklet.calls == 2

    def test_without_repository(self):
        tasklet = ScriptedTasklet()
        job_execution = JobExecution(job_name="job")
        SimpleStepHandler().handle_step(TaskletStep("load", tasklet), job_execution)

        assert tasklet.calls == 1
