"""
Item reader / processor / writer protocols and simple implementations.

A reader returns ``None`` once its input is exhausted.  A processor
returning ``None`` filters the item out.  A writer receives every output
item of a chunk in one call.

Readers and writers that also implement ItemStream have their restart
state saved in the step execution context before every chunk commit and
restored from it when the step opens.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import Any, Generic, Protocol, TypeVar, runtime_checkable

T = TypeVar("T")
S = TypeVar("S")


@runtime_checkable
class ItemReader(Protocol[T]):
    def read(self) -> T | None: ...


@runtime_checkable
class ItemProcessor(Protocol[T, S]):
    def process(self, item: T) -> S | None: ...


@runtime_checkable
class ItemWriter(Protocol[S]):
    def write(self, items: list[S]) -> None: ...


@runtime_checkable
class ItemStream(Protocol):
    def open(self, context: dict[str, Any]) -> None: ...

    def update(self, context: dict[str, Any]) -> None: ...

    def close(self) -> None: ...


class ListItemReader(Generic[T]):
    """Reads items from an in-memory list.

    The read position is an ItemStream value, so a restarted step resumes
    after the last committed chunk.
    """

    def __init__(self, items: Iterable[T], name: str = "list_reader"):
        self._items = list(items)
        self._position = 0
        self._key = f"{name}.read.count"

    def open(self, context: dict[str, Any]) -> None:
        self._position = int(context.get(self._key, 0))

    def update(self, context: dict[str, Any]) -> None:
        context[self._key] = self._position

    def close(self) -> None:
        pass

    def read(self) -> T | None:
        if self._position >= len(self._items):
            return None
        item = self._items[self._position]
        self._position += 1
        return item


class ListItemWriter(Generic[S]):
    """Collects written chunks in memory."""

    def __init__(self) -> None:
        self.chunks: list[list[S]] = []

    def write(self, items: list[S]) -> None:
        self.chunks.append(list(items))

    @property
    def written(self) -> list[S]:
        return [item for chunk in self.chunks for item in chunk]


class CallableItemProcessor(Generic[T, S]):
    """Adapts a plain function to the ItemProcessor protocol."""

    def __init__(self, fn: Callable[[T], S | None]):
        self._fn = fn

    def process(self, item: T) -> S | None:
        return self._fn(item)


def as_processor(processor: Any) -> ItemProcessor | None:
    if processor is None or isinstance(processor, ItemProcessor):
        return processor
    if callable(processor):
        return CallableItemProcessor(processor)
    raise TypeError(f"Not an item processor: {processor!r}")
