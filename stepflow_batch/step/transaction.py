"""
Transaction managers wrapping each chunk (and each tasklet call).

``SessionTransactionManager`` opens one SAVEPOINT per unit of work with
``Session.begin_nested()``; the caller owns the outer transaction and the
final ``session.commit()``.  ``ResourcelessTransactionManager`` is for
steps whose writers are not transactional.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from sqlalchemy.orm import Session


@runtime_checkable
class Transaction(Protocol):
    def commit(self) -> None: ...

    def rollback(self) -> None: ...


@runtime_checkable
class TransactionManager(Protocol):
    def begin(self) -> Transaction: ...


class _NoOpTransaction:
    def commit(self) -> None:
        pass

    def rollback(self) -> None:
        pass


class ResourcelessTransactionManager:
    def begin(self) -> Transaction:
        return _NoOpTransaction()


class SessionTransactionManager:
    """One SQLAlchemy SAVEPOINT per chunk."""

    def __init__(self, session: Session):
        self._session = session

    def begin(self) -> Transaction:
        return self._session.begin_nested()
