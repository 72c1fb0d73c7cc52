"""
Chunk processors -- one read/process/write pass per call.

Contract:
    ``process_chunk(contribution) -> ChunkResult`` reads up to
    ``chunk_size`` items, transforms them and writes the outputs once.
    All counts go to ``contribution``; the caller applies it to the step
    execution only if the chunk's transaction commits.
    ``rollback_on(error)`` tells the caller whether an error that
    propagated out of ``process_chunk`` must roll the transaction back.
    ``scan_item(contribution, item)`` writes a single output item; the
    step uses it to find the culprit after a write skip.

SimpleChunkProcessor:
    Any read, process or write error propagates at once and always rolls
    back.

FaultTolerantChunkProcessor:
    Read   -- skippable errors are counted, recorded on the chunk, reported
              and the read repeats; otherwise NonSkippableReadError.
    Process -- retried per the retry policy, then skipped (item dropped)
              or re-raised.
    Write  -- retried, then:
              skippable      -> WriteOutcome.SKIPPED_WITH_ROLLBACK, listener
                                told about every item of the chunk;
              not skippable  -> WriteOutcome.FAILED with the rollback
                                classifier's verdict.
    Skip policies receive the running per-phase skip count (committed plus
    this chunk).
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, Protocol, TypeVar, runtime_checkable

from stepflow_kernel.exceptions import (
    NonSkippableProcessError,
    NonSkippableReadError,
    RetryExhaustedError,
    SkipError,
)
from stepflow_kernel.logging_config import get_logger

from stepflow_batch.domain.chunk import Chunk, ChunkResult, WriteOutcome
from stepflow_batch.domain.types import StepContribution
from stepflow_batch.step.classifier import BinaryExceptionClassifier
from stepflow_batch.step.item import (
    ItemProcessor,
    ItemReader,
    ItemStream,
    ItemWriter,
    as_processor,
)
from stepflow_batch.step.listeners import CompositeListener
from stepflow_batch.step.retry import NeverRetryPolicy, RetryPolicy
from stepflow_batch.step.skip import NeverSkipItemSkipPolicy, SkipPolicy, should_skip

logger = get_logger("batch.chunk")

R = TypeVar("R")

# Sentinel for an item dropped by a process skip
_SKIPPED = object()


@runtime_checkable
class ChunkProcessor(Protocol):
    def process_chunk(self, contribution: StepContribution) -> ChunkResult: ...

    def rollback_on(self, error: BaseException) -> bool: ...

    def scan_item(self, contribution: StepContribution, item: Any) -> WriteOutcome: ...

    @property
    def streams(self) -> list[ItemStream]: ...


class SimpleChunkProcessor:
    """Read, transform and write one chunk with no fault tolerance."""

    def __init__(
        self,
        reader: ItemReader,
        writer: ItemWriter,
        processor: ItemProcessor | Callable[[Any], Any] | None = None,
        chunk_size: int = 1,
        listener: CompositeListener | None = None,
    ):
        if chunk_size < 1:
            raise ValueError(f"chunk_size must be >= 1, got {chunk_size}")
        self.reader = reader
        self.writer = writer
        self.processor = as_processor(processor)
        self.chunk_size = chunk_size
        self.listener = listener or CompositeListener()

    @property
    def streams(self) -> list[ItemStream]:
        candidates = (self.reader, self.processor, self.writer)
        seen: list[ItemStream] = []
        for candidate in candidates:
            if isinstance(candidate, ItemStream) and not any(
                candidate is s for s in seen
            ):
                seen.append(candidate)
        return seen

    def process_chunk(self, contribution: StepContribution) -> ChunkResult:
        inputs = self._read_chunk(contribution)
        outputs = self._transform(contribution, inputs)
        outcome = self._write(contribution, outputs)
        return ChunkResult(inputs=inputs, outputs=outputs, outcome=outcome)

    def rollback_on(self, error: BaseException) -> bool:
        return True

    def scan_item(self, contribution: StepContribution, item: Any) -> WriteOutcome:
        try:
            self.writer.write([item])
        except Exception as exc:
            return WriteOutcome.failed(exc, rollback=True)
        contribution.increment_write_count(1)
        return WriteOutcome.committed()

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _read_chunk(self, contribution: StepContribution) -> Chunk:
        inputs: Chunk = Chunk()
        while len(inputs) < self.chunk_size:
            item = self._read(contribution, inputs)
            if item is None:
                inputs.set_end()
                break
            contribution.increment_read_count()
            inputs.add(item)
        return inputs

    def _read(self, contribution: StepContribution, inputs: Chunk) -> Any:
        return self.reader.read()

    def _transform(self, contribution: StepContribution, inputs: Chunk) -> Chunk:
        outputs: Chunk = Chunk()
        for item in inputs:
            result = self._process(contribution, item)
            if result is _SKIPPED:
                continue
            if result is None:
                contribution.increment_filter_count()
                continue
            outputs.add(result)
        if inputs.is_end:
            outputs.set_end()
        return outputs

    def _process(self, contribution: StepContribution, item: Any) -> Any:
        if self.processor is None:
            return item
        return self.processor.process(item)

    def _write(self, contribution: StepContribution, outputs: Chunk) -> WriteOutcome:
        if outputs.is_empty:
            return WriteOutcome.nothing_to_write()
        items = list(outputs.items)
        self.writer.write(items)
        contribution.increment_write_count(len(items))
        return WriteOutcome.committed()


class FaultTolerantChunkProcessor(SimpleChunkProcessor):
    """Chunk processor with skip, retry and rollback classification."""

    def __init__(
        self,
        reader: ItemReader,
        writer: ItemWriter,
        processor: ItemProcessor | Callable[[Any], Any] | None = None,
        chunk_size: int = 1,
        listener: CompositeListener | None = None,
        skip_policy: SkipPolicy | None = None,
        retry_policy: RetryPolicy | None = None,
        rollback_classifier: BinaryExceptionClassifier | None = None,
    ):
        super().__init__(reader, writer, processor, chunk_size, listener)
        self.skip_policy = skip_policy or NeverSkipItemSkipPolicy()
        self.retry_policy = retry_policy or NeverRetryPolicy()
        self.rollback_classifier = rollback_classifier or BinaryExceptionClassifier()

    def rollback_on(self, error: BaseException) -> bool:
        if isinstance(error, SkipError):
            return True
        if isinstance(error, RetryExhaustedError) and error.__cause__ is not None:
            error = error.__cause__
        return self.rollback_classifier.classify(error)

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def _read(self, contribution: StepContribution, inputs: Chunk) -> Any:
        while True:
            try:
                return self.reader.read()
            except Exception as exc:
                if not should_skip(
                    self.skip_policy, exc, contribution.step_read_skip_count,
                ):
                    self.listener.on_retry_exhausted(exc)
                    raise NonSkippableReadError(exc) from exc
                contribution.increment_read_skip_count()
                inputs.skip(exc)
                logger.info(
                    "item_skipped_in_read",
                    extra={
                        "error_type": type(exc).__name__,
                        "read_skip_count": contribution.step_read_skip_count,
                    },
                )
                self.listener.on_skip_in_read(exc)

    # ------------------------------------------------------------------
    # Process
    # ------------------------------------------------------------------

    def _process(self, contribution: StepContribution, item: Any) -> Any:
        if self.processor is None:
            return item
        processor = self.processor
        attempt = self._with_retry(lambda: processor.process(item))
        if attempt.error is None:
            return attempt.value

        exc = attempt.error
        if should_skip(self.skip_policy, exc, contribution.step_process_skip_count):
            contribution.increment_process_skip_count()
            logger.info(
                "item_skipped_in_process",
                extra={
                    "error_type": type(exc).__name__,
                    "process_skip_count": contribution.step_process_skip_count,
                },
            )
            self.listener.on_skip_in_process(item, exc)
            return _SKIPPED

        self.listener.on_retry_exhausted(exc)
        if not self.rollback_classifier.classify(exc):
            raise NonSkippableProcessError(exc) from exc
        if attempt.attempts > 1:
            raise RetryExhaustedError(attempt.attempts, exc) from exc
        raise exc

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def _write(self, contribution: StepContribution, outputs: Chunk) -> WriteOutcome:
        if outputs.is_empty:
            return WriteOutcome.nothing_to_write()
        items = list(outputs.items)
        attempt = self._with_retry(lambda: self.writer.write(items))
        if attempt.error is None:
            contribution.increment_write_count(len(items))
            return WriteOutcome.committed()

        exc = attempt.error
        if should_skip(self.skip_policy, exc, contribution.step_write_skip_count):
            # The culprit is unknown until the items are replayed one by one
            self.listener.on_skip_in_write(items, exc)
            contribution.increment_write_skip_count()
            logger.info(
                "chunk_write_skipped",
                extra={"error_type": type(exc).__name__, "chunk_size": len(items)},
            )
            return WriteOutcome.skipped_with_rollback(exc)

        self.listener.on_retry_exhausted(exc)
        error: BaseException = exc
        if attempt.attempts > 1:
            error = RetryExhaustedError(attempt.attempts, exc)
            error.__cause__ = exc
        return WriteOutcome.failed(error, rollback=self.rollback_classifier.classify(exc))

    def scan_item(self, contribution: StepContribution, item: Any) -> WriteOutcome:
        """Write one item on its own; skippable failures are counted."""
        try:
            self.writer.write([item])
        except Exception as exc:
            if should_skip(self.skip_policy, exc, contribution.step_write_skip_count):
                contribution.increment_write_skip_count()
                logger.info(
                    "item_skipped_in_write",
                    extra={
                        "error_type": type(exc).__name__,
                        "write_skip_count": contribution.step_write_skip_count,
                    },
                )
                self.listener.on_skip_in_write([item], exc)
                return WriteOutcome.skipped_with_rollback(exc)
            self.listener.on_retry_exhausted(exc)
            return WriteOutcome.failed(exc, rollback=self.rollback_classifier.classify(exc))
        contribution.increment_write_count(1)
        return WriteOutcome.committed()

    # ------------------------------------------------------------------
    # Retry
    # ------------------------------------------------------------------

    def _with_retry(self, action: Callable[[], R]) -> _Attempt[R]:
        attempts = 0
        while True:
            attempts += 1
            try:
                return _Attempt(value=action(), attempts=attempts)
            except Exception as exc:
                self.listener.on_retry_error(exc, attempts)
                if not self.retry_policy.can_retry(exc, attempts):
                    return _Attempt(error=exc, attempts=attempts)
                logger.debug(
                    "item_retry",
                    extra={"error_type": type(exc).__name__, "attempt": attempts},
                )


@dataclass(frozen=True)
class _Attempt(Generic[R]):
    """Outcome of a retried action: its value, or the last error."""

    value: R | None = None
    error: Exception | None = None
    attempts: int = 1
