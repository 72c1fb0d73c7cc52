"""
Typed Exception Hierarchy for the StepFlow engine.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

The engine makes control decisions from failures: a skip policy decides
whether an item may be dropped, a rollback classifier decides whether the
chunk's transaction is discarded, a job decides between FAILED and STOPPED.
Those decisions must be made by type, never by parsing messages.

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, log-safe)
  3. Exceptions carry structured DATA (not just a message string)

Example - RIGHT way:
    try:
        launcher.run(job, parameters)
    except JobExecutionAlreadyRunningError as e:
        log.warning("already running", extra={"execution": e.execution_id})

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    BatchKernelError (base)
    |
    +-- FlowError
    |   +-- FlowDefinitionError
    |   +-- FlowExecutionError
    |
    +-- SkipError
    |   +-- SkipLimitExceededError
    |   +-- SkipPolicyFailedError
    |   +-- SkipListenerFailedError
    |   +-- NonSkippableReadError
    |   +-- NonSkippableProcessError
    |
    +-- RetryExhaustedError
    |
    +-- JobExecutionError
    |   +-- JobInterruptedError
    |   +-- JobRestartError
    |   +-- JobInstanceAlreadyCompleteError
    |   +-- JobExecutionAlreadyRunningError
    |   +-- StartLimitExceededError
    |   +-- NoSuchJobError
    |   +-- NoSuchJobExecutionError
    |
    +-- BatchConfigError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category   | Code                          | When Raised
-----------|-------------------------------|-----------------------------------
Flow       | FLOW_DEFINITION_INVALID       | Bad/missing transitions or states
           | FLOW_EXECUTION_FAILED         | State.handle raised, or no route
-----------|-------------------------------|-----------------------------------
Skip       | SKIP_LIMIT_EXCEEDED           | Skippable error past its limit
           | SKIP_POLICY_FAILED            | Skip policy itself raised
           | SKIP_LISTENER_FAILED          | Skip listener raised
           | NON_SKIPPABLE_READ            | Read error the policy refused
           | NON_SKIPPABLE_PROCESS         | Process error the policy refused
-----------|-------------------------------|-----------------------------------
Retry      | RETRY_EXHAUSTED               | Retry attempts used up
-----------|-------------------------------|-----------------------------------
Job        | JOB_INTERRUPTED               | Stop requested while running
           | JOB_RESTART_INVALID           | Restart not allowed
           | JOB_INSTANCE_ALREADY_COMPLETE | Instance already COMPLETED
           | JOB_EXECUTION_ALREADY_RUNNING | Instance has a live execution
           | START_LIMIT_EXCEEDED          | Step started too many times
           | NO_SUCH_JOB                   | Job name not registered
           | NO_SUCH_JOB_EXECUTION         | Execution id unknown
-----------|-------------------------------|-----------------------------------
Config     | BATCH_CONFIG_INVALID          | YAML job definition rejected
"""

from __future__ import annotations

from typing import Sequence


class BatchKernelError(Exception):
    """
    Base exception for all engine errors.

    All subclasses must have a ``code`` class attribute for machine-readable
    error identification.
    """

    code: str = "BATCH_KERNEL_ERROR"


# Flow exceptions


class FlowError(BatchKernelError):
    """Base exception for flow definition and execution errors."""

    code: str = "FLOW_ERROR"


class FlowDefinitionError(FlowError):
    """
    The flow's states or transitions are inconsistent.

    Raised at build time only and never retried: missing next state,
    no end transition, no transitions at all, duplicate state names,
    unknown start state.
    """

    code: str = "FLOW_DEFINITION_INVALID"

    def __init__(self, flow_name: str, reason: str):
        self.flow_name = flow_name
        self.reason = reason
        super().__init__(f"Invalid flow '{flow_name}': {reason}")


class FlowExecutionError(FlowError):
    """
    The flow could not continue.

    Either a state's ``handle`` raised (the original error is the
    ``__cause__``) or no transition could be resolved for the exit code.
    """

    code: str = "FLOW_EXECUTION_FAILED"

    def __init__(
        self,
        flow_name: str,
        state_name: str | None,
        message: str,
    ):
        self.flow_name = flow_name
        self.state_name = state_name
        super().__init__(message)


# Skip exceptions


class SkipError(BatchKernelError):
    """Base exception for skip processing failures."""

    code: str = "SKIP_ERROR"


class SkipLimitExceededError(SkipError):
    """A skippable error occurred once the skip limit was already reached."""

    code: str = "SKIP_LIMIT_EXCEEDED"

    def __init__(self, skip_limit: int, error: BaseException):
        self.skip_limit = skip_limit
        self.error_type = type(error).__name__
        super().__init__(
            f"Skip limit of {skip_limit} exceeded by "
            f"{type(error).__name__}: {error}"
        )


class SkipPolicyFailedError(SkipError):
    """
    The skip policy raised while classifying an error.

    Always fatal and never itself skippable, so a broken policy cannot
    drive the read loop into endless retries.
    """

    code: str = "SKIP_POLICY_FAILED"

    def __init__(self, policy_error: BaseException, error: BaseException):
        self.policy_error_type = type(policy_error).__name__
        self.error_type = type(error).__name__
        super().__init__(
            f"Fatal exception in skip policy ({type(policy_error).__name__}: "
            f"{policy_error}) while classifying {type(error).__name__}"
        )


class SkipListenerFailedError(SkipError):
    """A skip listener raised while being notified of a skip."""

    code: str = "SKIP_LISTENER_FAILED"

    def __init__(self, listener_error: BaseException, error: BaseException):
        self.listener_error_type = type(listener_error).__name__
        self.error_type = type(error).__name__
        super().__init__(
            f"Fatal exception in skip listener ({type(listener_error).__name__}: "
            f"{listener_error}) for skipped {type(error).__name__}"
        )


class NonSkippableReadError(SkipError):
    """A read failed and the skip policy refused to skip it."""

    code: str = "NON_SKIPPABLE_READ"

    def __init__(self, error: BaseException):
        self.error_type = type(error).__name__
        super().__init__(
            f"Non-skippable exception during read: {type(error).__name__}: {error}"
        )


class NonSkippableProcessError(SkipError):
    """
    A processor error was classified as no-rollback but is not skippable.

    Not rolling back while also not skipping would silently lose the item,
    so this combination is a configuration error.
    """

    code: str = "NON_SKIPPABLE_PROCESS"

    def __init__(self, error: BaseException):
        self.error_type = type(error).__name__
        super().__init__(
            "Non-skippable exception in processor. Make sure any exceptions "
            f"that do not cause a rollback are skippable: "
            f"{type(error).__name__}: {error}"
        )


# Retry exceptions


class RetryExhaustedError(BatchKernelError):
    """All retry attempts failed for an error that may not be skipped."""

    code: str = "RETRY_EXHAUSTED"

    def __init__(self, attempts: int, error: BaseException):
        self.attempts = attempts
        self.error_type = type(error).__name__
        super().__init__(
            f"Retry exhausted after {attempts} attempt(s): "
            f"{type(error).__name__}: {error}"
        )


# Job execution exceptions


class JobExecutionError(BatchKernelError):
    """Base exception for job launch and execution errors."""

    code: str = "JOB_EXECUTION_ERROR"


class JobInterruptedError(JobExecutionError):
    """A stop was requested while the job was running."""

    code: str = "JOB_INTERRUPTED"

    def __init__(self, message: str, status: str = "STOPPED"):
        self.status = status
        super().__init__(message)


class JobRestartError(JobExecutionError):
    """The job (or one of its steps) may not be restarted."""

    code: str = "JOB_RESTART_INVALID"

    def __init__(self, job_name: str, reason: str):
        self.job_name = job_name
        self.reason = reason
        super().__init__(f"Cannot restart job '{job_name}': {reason}")


class JobInstanceAlreadyCompleteError(JobExecutionError):
    """The job instance for these parameters already completed."""

    code: str = "JOB_INSTANCE_ALREADY_COMPLETE"

    def __init__(self, job_name: str, job_key: str):
        self.job_name = job_name
        self.job_key = job_key
        super().__init__(
            f"A job instance already exists and is complete for "
            f"job={job_name} key={job_key}. Change the parameters to run again."
        )


class JobExecutionAlreadyRunningError(JobExecutionError):
    """The job instance already has a running execution."""

    code: str = "JOB_EXECUTION_ALREADY_RUNNING"

    def __init__(self, job_name: str, execution_id: str):
        self.job_name = job_name
        self.execution_id = execution_id
        super().__init__(
            f"A job execution for this job is already running: "
            f"job={job_name} execution={execution_id}"
        )


class StartLimitExceededError(JobExecutionError):
    """A step has been started as many times as it is allowed to."""

    code: str = "START_LIMIT_EXCEEDED"

    def __init__(self, step_name: str, start_limit: int):
        self.step_name = step_name
        self.start_limit = start_limit
        super().__init__(
            f"Maximum start limit exceeded for step: {step_name} "
            f"(start_limit={start_limit})"
        )


class NoSuchJobError(JobExecutionError):
    """No job is registered under the requested name."""

    code: str = "NO_SUCH_JOB"

    def __init__(self, job_name: str, available: Sequence[str] = ()):
        self.job_name = job_name
        self.available = tuple(available)
        super().__init__(
            f"No job registered with name '{job_name}'. "
            f"Available: {sorted(self.available)}"
        )


class NoSuchJobExecutionError(JobExecutionError):
    """No job execution exists with the requested id."""

    code: str = "NO_SUCH_JOB_EXECUTION"

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Job execution not found: {execution_id}")


# Configuration exceptions


class BatchConfigError(BatchKernelError):
    """A YAML job definition could not be parsed, validated or assembled."""

    code: str = "BATCH_CONFIG_INVALID"

    def __init__(self, source: str, errors: Sequence[str]):
        self.source = source
        self.errors = tuple(errors)
        details = "\n".join(f"  - {e}" for e in self.errors)
        super().__init__(f"Invalid job definition {source}:\n{details}")
