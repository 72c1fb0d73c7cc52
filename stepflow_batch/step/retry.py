"""Retry policy consulted by the fault-tolerant chunk processor."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Protocol, runtime_checkable

from stepflow_batch.step.classifier import BinaryExceptionClassifier


@runtime_checkable
class RetryPolicy(Protocol):
    def can_retry(self, error: BaseException, attempts: int) -> bool: ...


class SimpleRetryPolicy:
    """Retry declared error types up to ``max_attempts`` total attempts.

    ``attempts`` is the number of attempts already made, so the default
    ``max_attempts=1`` never retries.
    """

    def __init__(
        self,
        max_attempts: int = 1,
        retryable: Iterable[type[BaseException]] = (Exception,),
        non_retryable: Iterable[type[BaseException]] = (),
    ):
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        self.max_attempts = max_attempts
        type_map = {t: True for t in retryable}
        type_map.update({t: False for t in non_retryable})
        self._classifier = BinaryExceptionClassifier(type_map, default=False)

    def can_retry(self, error: BaseException, attempts: int) -> bool:
        return attempts < self.max_attempts and self._classifier.classify(error)


class NeverRetryPolicy(SimpleRetryPolicy):
    def __init__(self) -> None:
        super().__init__(max_attempts=1)

    def can_retry(self, error: BaseException, attempts: int) -> bool:
        return False
