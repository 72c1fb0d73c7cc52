"""Database layer - declarative base, engine and session plumbing."""

from stepflow_kernel.db.base import Base, TimestampedBase, UUIDString
from stepflow_kernel.db.engine import (
    create_tables,
    drop_tables,
    enable_sqlite_savepoints,
    get_engine,
    get_session,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
    session_scope,
)

__all__ = [
    "Base",
    "TimestampedBase",
    "UUIDString",
    "create_tables",
    "drop_tables",
    "enable_sqlite_savepoints",
    "get_engine",
    "get_session",
    "get_session_factory",
    "init_engine_from_url",
    "reset_engine",
    "session_scope",
]
