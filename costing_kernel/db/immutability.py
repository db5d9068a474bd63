"""
ORM-Level Append-Only and Bounds Enforcement.

===============================================================================
WHAT THIS GUARDS
===============================================================================

Entity              | Rule                                   | Error
--------------------|----------------------------------------|---------------------------
CostAuditLog        | ALWAYS immutable, never deleted        | ImmutabilityViolationError
StockLot            | 0 <= remaining <= initial at flush     | LotOverdrawnError /
                    |                                        | LotOverRestoredError

SQLAlchemy fires mapper events before UPDATE/DELETE statements reach the
database:

    session.flush()
         |
         v
    [before_update] --> _check_*() --> error, flush aborted
         |
         v
    [before_delete] --> _check_*() --> error, flush aborted
         |
         v
    SQL sent to database (only if checks pass)

The services check lot bounds before they write; the flush-time check
catches any path that bypasses them.  Bulk UPDATE statements issued with
session.execute() do not fire mapper events and are not covered.

===============================================================================
USAGE
===============================================================================

    from costing_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # once at startup

TESTS ONLY:

    unregister_immutability_listeners()

===============================================================================
"""

from sqlalchemy import event

from costing_kernel.exceptions import (
    ImmutabilityViolationError,
    LotOverdrawnError,
    LotOverRestoredError,
)
from costing_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


def _check_cost_audit_log_immutability(mapper, connection, target):
    """Prevent any updates to CostAuditLog records."""
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": "CostAuditLog",
            "entity_id": str(target.id),
            "operation": "UPDATE",
        },
    )
    raise ImmutabilityViolationError(
        entity_type="CostAuditLog",
        entity_id=str(target.id),
        reason="Cost audit records are immutable and cannot be modified",
    )


def _check_cost_audit_log_delete(mapper, connection, target):
    """Prevent deletion of CostAuditLog records."""
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": "CostAuditLog",
            "entity_id": str(target.id),
            "operation": "DELETE",
        },
    )
    raise ImmutabilityViolationError(
        entity_type="CostAuditLog",
        entity_id=str(target.id),
        reason="Cost audit records cannot be deleted",
    )


def _check_stock_lot_bounds(mapper, connection, target):
    """Reject a flush that leaves a lot outside 0 <= remaining <= initial."""
    remaining = target.remaining_quantity
    initial = target.initial_quantity
    if remaining < 0:
        logger.error(
            "stock_lot_bounds_violation_blocked",
            extra={"stock_lot_id": str(target.id), "remaining": str(remaining)},
        )
        raise LotOverdrawnError(
            lot_id=str(target.id),
            remaining=remaining,
            requested=-remaining,
        )
    if remaining > initial:
        logger.error(
            "stock_lot_bounds_violation_blocked",
            extra={
                "stock_lot_id": str(target.id),
                "remaining": str(remaining),
                "initial": str(initial),
            },
        )
        raise LotOverRestoredError(
            lot_id=str(target.id),
            remaining=initial,
            restoring=remaining - initial,
            initial=initial,
        )


_LISTENERS = (
    ("CostAuditLogModel", "before_update", _check_cost_audit_log_immutability),
    ("CostAuditLogModel", "before_delete", _check_cost_audit_log_delete),
    ("StockLotModel", "before_update", _check_stock_lot_bounds),
)


def _targets():
    from costing_kernel.models.cost_audit_log import CostAuditLogModel
    from costing_kernel.models.stock_lot import StockLotModel

    return {
        "CostAuditLogModel": CostAuditLogModel,
        "StockLotModel": StockLotModel,
    }


def register_immutability_listeners():
    """
    Register the append-only and lot bounds listeners.

    Idempotent: a listener already registered is not added twice.
    """
    targets = _targets()
    for model_name, event_name, listener_fn in _LISTENERS:
        model = targets[model_name]
        if not event.contains(model, event_name, listener_fn):
            event.listen(model, event_name, listener_fn)


def _safe_remove_listener(target, event_name, listener_fn):
    """Remove an event listener, ignoring it if not registered."""
    if event.contains(target, event_name, listener_fn):
        event.remove(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove the listeners.

    WARNING: Only use this in tests that need to violate the rules on purpose.
    """
    targets = _targets()
    for model_name, event_name, listener_fn in _LISTENERS:
        _safe_remove_listener(targets[model_name], event_name, listener_fn)
