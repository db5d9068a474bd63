"""Database layer - engine, base classes, types, and append-only enforcement."""

from costing_kernel.db.base import UUID, Base, TimestampedBase, UUIDString
from costing_kernel.db.engine import create_tables, get_engine, get_session, session_scope
from costing_kernel.db.types import Money, Quantity

__all__ = [
    "get_engine",
    "get_session",
    "session_scope",
    "create_tables",
    "Base",
    "TimestampedBase",
    "UUIDString",
    "UUID",
    "Money",
    "Quantity",
]
