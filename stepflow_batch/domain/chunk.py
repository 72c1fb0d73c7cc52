"""
stepflow_batch.domain.chunk -- Chunk buffer and write outcome variants.

ZERO I/O.

A ``Chunk`` is created fresh for every pass of the chunk loop and owned by
the processor invocation that created it.  ``WriteOutcome`` reports how the
write phase ended without using exceptions for the expected cases: a
skippable write failure is ``SKIPPED_WITH_ROLLBACK``, which tells the
caller to roll back and replay the chunk's items one at a time.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, Iterator, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class SkipWrapper(Generic[T]):
    """Marker for a skipped entry: the item (None for read failures) and why."""

    item: T | None
    error: BaseException


class Chunk(Generic[T]):
    """Ordered buffer of items plus skip markers and an end-of-input flag."""

    def __init__(self, items: list[T] | None = None):
        self._items: list[T] = list(items) if items else []
        self._skips: list[SkipWrapper[T]] = []
        self._end = False

    @property
    def items(self) -> list[T]:
        return list(self._items)

    @property
    def skips(self) -> list[SkipWrapper[T]]:
        return list(self._skips)

    @property
    def is_end(self) -> bool:
        return self._end

    def set_end(self) -> None:
        self._end = True

    def add(self, item: T) -> None:
        self._items.append(item)

    def skip(self, error: BaseException, item: T | None = None) -> None:
        self._skips.append(SkipWrapper(item=item, error=error))

    def clear_skips(self) -> None:
        self._skips.clear()

    @property
    def is_empty(self) -> bool:
        return not self._items

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[T]:
        return iter(list(self._items))

    def __repr__(self) -> str:
        return (
            f"Chunk(items={self._items!r}, skips={len(self._skips)}, "
            f"end={self._end})"
        )


class WriteOutcomeKind(str, Enum):
    """How the write phase of a chunk ended."""

    COMMITTED = "committed"
    NOTHING_TO_WRITE = "nothing_to_write"
    SKIPPED_WITH_ROLLBACK = "skipped_with_rollback"
    FAILED = "failed"


@dataclass(frozen=True)
class WriteOutcome:
    """Result variant of the write phase.

    ``rollback`` says whether the chunk's transaction must be discarded:
    always for ``SKIPPED_WITH_ROLLBACK``, per the rollback classifier for
    ``FAILED``, never otherwise.
    """

    kind: WriteOutcomeKind
    error: BaseException | None = None
    rollback: bool = False

    @classmethod
    def committed(cls) -> WriteOutcome:
        return cls(WriteOutcomeKind.COMMITTED)

    @classmethod
    def nothing_to_write(cls) -> WriteOutcome:
        return cls(WriteOutcomeKind.NOTHING_TO_WRITE)

    @classmethod
    def skipped_with_rollback(cls, error: BaseException) -> WriteOutcome:
        return cls(WriteOutcomeKind.SKIPPED_WITH_ROLLBACK, error=error, rollback=True)

    @classmethod
    def failed(cls, error: BaseException, rollback: bool = True) -> WriteOutcome:
        return cls(WriteOutcomeKind.FAILED, error=error, rollback=rollback)

    @property
    def requires_rollback(self) -> bool:
        return self.rollback


@dataclass(frozen=True)
class ChunkResult(Generic[T]):
    """What one pass of a chunk processor produced."""

    inputs: Chunk[Any]
    outputs: Chunk[T]
    outcome: WriteOutcome = field(default_factory=WriteOutcome.nothing_to_write)

    @property
    def is_end(self) -> bool:
        return self.inputs.is_end
