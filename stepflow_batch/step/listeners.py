"""
Listener protocols and the CompositeListener multicaster.

Listeners are plain objects implementing any subset of the hooks below;
CompositeListener calls whichever hooks each registered object defines.
``before_*`` hooks run in registration order, ``after_*`` hooks in
reverse order.

Skip hooks are notification-only.  An error raised by a skip listener is
re-raised as SkipListenerFailedError (chained) so it can never be
mistaken for an item failure.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Any, Protocol, runtime_checkable

from stepflow_kernel.exceptions import SkipListenerFailedError

from stepflow_batch.domain.types import ExitStatus, JobExecution, StepExecution


@runtime_checkable
class SkipListener(Protocol):
    def on_skip_in_read(self, error: BaseException) -> None: ...

    def on_skip_in_process(self, item: Any, error: BaseException) -> None: ...

    def on_skip_in_write(self, items: Sequence[Any], error: BaseException) -> None: ...


@runtime_checkable
class RetryListener(Protocol):
    def on_retry_error(self, error: BaseException, attempt: int) -> None: ...

    def on_retry_exhausted(self, error: BaseException) -> None: ...


@runtime_checkable
class StepExecutionListener(Protocol):
    def before_step(self, step_execution: StepExecution) -> None: ...

    def after_step(self, step_execution: StepExecution) -> ExitStatus | None: ...


@runtime_checkable
class JobExecutionListener(Protocol):
    def before_job(self, job_execution: JobExecution) -> None: ...

    def after_job(self, job_execution: JobExecution) -> None: ...


class CompositeListener:
    """Fans each hook out to every registered listener that implements it."""

    def __init__(self, listeners: Iterable[Any] = ()):
        self._listeners: list[Any] = list(listeners)

    def register(self, listener: Any) -> None:
        self._listeners.append(listener)

    def __len__(self) -> int:
        return len(self._listeners)

    def _hooks(self, name: str, reverse: bool = False) -> list[Any]:
        listeners = reversed(self._listeners) if reverse else self._listeners
        return [
            hook for hook in (getattr(listener, name, None) for listener in listeners)
            if callable(hook)
        ]

    # Skip hooks

    def on_skip_in_read(self, error: BaseException) -> None:
        for hook in self._hooks("on_skip_in_read"):
            try:
                hook(error)
            except Exception as exc:
                raise SkipListenerFailedError(exc, error) from exc

    def on_skip_in_process(self, item: Any, error: BaseException) -> None:
        for hook in self._hooks("on_skip_in_process"):
            try:
                hook(item, error)
            except Exception as exc:
                raise SkipListenerFailedError(exc, error) from exc

    def on_skip_in_write(self, items: Sequence[Any], error: BaseException) -> None:
        for hook in self._hooks("on_skip_in_write"):
            try:
                hook(list(items), error)
            except Exception as exc:
                raise SkipListenerFailedError(exc, error) from exc

    # Retry hooks

    def on_retry_error(self, error: BaseException, attempt: int) -> None:
        for hook in self._hooks("on_retry_error"):
            hook(error, attempt)

    def on_retry_exhausted(self, error: BaseException) -> None:
        for hook in self._hooks("on_retry_exhausted"):
            hook(error)

    # Step hooks

    def before_step(self, step_execution: StepExecution) -> None:
        for hook in self._hooks("before_step"):
            hook(step_execution)

    def after_step(self, step_execution: StepExecution) -> ExitStatus | None:
        """Run every ``after_step`` hook and combine the returned exit statuses."""
        result: ExitStatus | None = None
        for hook in self._hooks("after_step", reverse=True):
            status = hook(step_execution)
            if status is None:
                continue
            result = status if result is None else result.and_(status)
        return result

    # Job hooks

    def before_job(self, job_execution: JobExecution) -> None:
        for hook in self._hooks("before_job"):
            hook(job_execution)

    def after_job(self, job_execution: JobExecution) -> None:
        for hook in self._hooks("after_job", reverse=True):
            hook(job_execution)
