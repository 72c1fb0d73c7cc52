"""
Skip policies -- may a failed item be dropped so the step can continue?

Contract:
    ``should_skip(error, skip_count) -> bool``.  ``skip_count`` is the
    step's running count for the phase the error came from; a negative
    count asks "is this error skippable at all" without any limit check.
    Policies are stateless: the count lives on the step execution.

Failure modes:
    - SkipLimitExceededError: a skippable error arrived with
      ``skip_count >= skip_limit``.
    - SkipPolicyFailedError: raised by ``should_skip()`` (the module
      function) when a policy fails with anything other than a SkipError.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Protocol, runtime_checkable

from stepflow_kernel.exceptions import (
    SkipError,
    SkipLimitExceededError,
    SkipPolicyFailedError,
)

from stepflow_batch.step.classifier import BinaryExceptionClassifier, SubclassClassifier


@runtime_checkable
class SkipPolicy(Protocol):
    def should_skip(self, error: BaseException, skip_count: int) -> bool: ...


class AlwaysSkipItemSkipPolicy:
    def should_skip(self, error: BaseException, skip_count: int) -> bool:
        return True


class NeverSkipItemSkipPolicy:
    def should_skip(self, error: BaseException, skip_count: int) -> bool:
        return False


class LimitCheckingItemSkipPolicy:
    """Skip declared error types until ``skip_limit`` skips have happened.

    ``skippable`` and ``non_skippable`` are matched against the nearest
    declared class in the error's MRO, so a non-skippable subclass of a
    skippable base is not skipped.
    """

    def __init__(
        self,
        skip_limit: int = 0,
        skippable: Iterable[type[BaseException]] | Mapping[type[BaseException], bool] = (),
        non_skippable: Iterable[type[BaseException]] = (),
    ):
        if skip_limit < 0:
            raise ValueError(f"skip_limit must be >= 0, got {skip_limit}")
        self.skip_limit = skip_limit
        if isinstance(skippable, Mapping):
            type_map = dict(skippable)
        else:
            type_map = {t: True for t in skippable}
        type_map.update({t: False for t in non_skippable})
        self._classifier = BinaryExceptionClassifier(type_map, default=False)

    def is_skippable(self, error: BaseException) -> bool:
        return self._classifier.classify(error)

    def should_skip(self, error: BaseException, skip_count: int) -> bool:
        if not self._classifier.classify(error):
            return False
        if skip_count < self.skip_limit:
            return True
        raise SkipLimitExceededError(self.skip_limit, error) from error


class CompositeSkipPolicy:
    """Skip if any delegate says so; delegates are asked in order."""

    def __init__(self, policies: Iterable[SkipPolicy] = ()):
        self._policies = tuple(policies)

    def should_skip(self, error: BaseException, skip_count: int) -> bool:
        for policy in self._policies:
            if policy.should_skip(error, skip_count):
                return True
        return False


class ExceptionClassifierSkipPolicy:
    """Dispatch to a delegate policy chosen by the error's type."""

    def __init__(
        self,
        policies: Mapping[type[BaseException], SkipPolicy],
        default: SkipPolicy | None = None,
    ):
        self._classifier: SubclassClassifier[SkipPolicy] = SubclassClassifier(
            policies, default or NeverSkipItemSkipPolicy(),
        )

    def should_skip(self, error: BaseException, skip_count: int) -> bool:
        policy = self._classifier.classify(error)
        assert policy is not None
        return policy.should_skip(error, skip_count)


def should_skip(policy: SkipPolicy, error: BaseException, skip_count: int) -> bool:
    """Ask ``policy`` about ``error``, converting policy bugs into a fatal error."""
    try:
        return policy.should_skip(error, skip_count)
    except SkipError:
        raise
    except Exception as exc:
        raise SkipPolicyFailedError(exc, error) from exc
