"""
Exception classifiers.

``SubclassClassifier`` maps an error onto a value through the nearest
declared class in the error's MRO; ``BinaryExceptionClassifier`` is the
boolean specialisation used for rollback and skippability decisions.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Generic, TypeVar

C = TypeVar("C")


class SubclassClassifier(Generic[C]):
    """Classify by walking the error's MRO until a declared type is found."""

    def __init__(
        self,
        type_map: Mapping[type[BaseException], C] | None = None,
        default: C | None = None,
    ):
        self._type_map: dict[type[BaseException], C] = dict(type_map or {})
        self._default = default

    @property
    def default(self) -> C | None:
        return self._default

    def add(self, error_type: type[BaseException], value: C) -> None:
        self._type_map[error_type] = value

    def classify(self, error: BaseException | None) -> C | None:
        if error is None:
            return self._default
        for klass in type(error).__mro__:
            if klass in self._type_map:
                return self._type_map[klass]
        return self._default


class BinaryExceptionClassifier(SubclassClassifier[bool]):
    """True/False classification with a default for undeclared errors.

    As a rollback classifier the default is True: every error rolls back
    unless declared otherwise.
    """

    def __init__(
        self,
        type_map: Mapping[type[BaseException], bool] | None = None,
        default: bool = True,
    ):
        super().__init__(type_map, default)

    @classmethod
    def from_types(
        cls,
        types: Iterable[type[BaseException]],
        value: bool = True,
    ) -> BinaryExceptionClassifier:
        """Declared ``types`` classify as ``value``, everything else as the opposite."""
        return cls({t: value for t in types}, default=not value)

    @classmethod
    def no_rollback_for(
        cls, types: Iterable[type[BaseException]],
    ) -> BinaryExceptionClassifier:
        return cls.from_types(types, value=False)

    def classify(self, error: BaseException | None) -> bool:
        return bool(super().classify(error))
