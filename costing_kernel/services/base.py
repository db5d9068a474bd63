"""
BaseService -- abstract base for all costing services.

Responsibility:
    Common constructor and session-handling contract for every service that
    writes lot state, consumption rows, or audit rows.  Services receive a
    SQLAlchemy ``Session`` and use ``session.flush()`` -- never
    ``session.commit()``.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.  The concrete
    services live in ``costing_services/``.

Invariants enforced:
    Transaction boundaries: services flush within the caller's transaction
    and never commit or rollback themselves.  The caller (request handler,
    batch job, ``session_scope()``, or test harness) owns commit/rollback,
    so a consume, a recalculation, and the document write that triggered
    them succeed or fail together.

Failure modes:
    - A subclass that calls ``session.commit()`` breaks the all-or-nothing
      guarantee of recalculation.
"""

from abc import ABC
from typing import Generic, TypeVar

from sqlalchemy import select
from sqlalchemy.orm import Session

from costing_kernel.db.base import Base
from costing_kernel.domain.clock import Clock, SystemClock

ModelType = TypeVar("ModelType", bound=Base)


class BaseService(ABC, Generic[ModelType]):
    """
    Abstract base class for all costing services.

    Contract:
        Accepts a SQLAlchemy ``Session`` from the caller and uses
        ``session.flush()`` to persist changes within the active transaction.

    Non-goals:
        - Does NOT manage transaction lifecycle (commit/rollback).
        - Does NOT provide reporting queries -- those belong in
          ``costing_kernel/selectors/``.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        """
        Args:
            session: SQLAlchemy session for database operations.
            clock: Time source; defaults to SystemClock.
        """
        self.session = session
        self._clock = clock or SystemClock()

    def _lock_row(self, model: type[Base], row_id, lock: bool = True):
        """
        Load one row, optionally with ``SELECT ... FOR UPDATE``.

        Returns None when the row does not exist.  SQLite ignores the
        lock clause.
        """
        stmt = select(model).where(model.id == row_id)
        if lock:
            stmt = stmt.with_for_update()
        return self.session.execute(stmt).scalars().first()
