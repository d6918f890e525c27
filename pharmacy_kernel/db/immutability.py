"""
ORM-Level Immutability Enforcement.

===============================================================================
WHY THIS EXISTS
===============================================================================

The allocation audit trail must be tamper-proof. Ledger and reporting
collaborators read SalesLine and SalesLineBatchAllocation rows after commit
and assume they never change. Correcting a sale is a separate compensating
operation (a sales return) that writes NEW rows.

SQLAlchemy fires events before UPDATE/DELETE operations reach the database.
We register listeners that intercept these events and check our invariants:

    session.flush()
         |
         v
    [before_update event] --> _check_*() --> ImmutabilityViolationError
         |                                   NegativeStockError
         v
    [before_delete event] --> _check_*_delete() --> ImmutabilityViolationError
         |
         v
    SQL sent to database (only if checks pass)

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity                    | Rule                                | Why
--------------------------|-------------------------------------|------------------------------
SalesLine                 | No UPDATE, no DELETE                | Sale snapshot is the audit record
SalesLineBatchAllocation  | No UPDATE, no DELETE                | Batch trail for ledgers
InventoryBatch            | No DELETE; UPDATE must keep         | Batches are only status-
                          | strip_qty/tablet_qty >= 0           | transitioned; stock never < 0

The InventoryBatch quantity check is a second line behind
BatchRepository.apply_decrement and the table CHECK constraints.

===============================================================================
USAGE
===============================================================================

    from pharmacy_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # Called once at startup

To temporarily disable (TESTS ONLY - never in production):

    unregister_immutability_listeners()
"""

from sqlalchemy import event

from pharmacy_kernel.exceptions import ImmutabilityViolationError, NegativeStockError
from pharmacy_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


def _block(entity_type: str, target, operation: str, reason: str):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(target.id),
            "operation": operation,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=reason,
    )


def _check_sales_line_update(mapper, connection, target):
    _block("SalesLine", target, "UPDATE", "Sales line snapshots are immutable")


def _check_sales_line_delete(mapper, connection, target):
    _block("SalesLine", target, "DELETE", "Sales line snapshots cannot be deleted")


def _check_allocation_update(mapper, connection, target):
    _block(
        "SalesLineBatchAllocation", target, "UPDATE",
        "Batch allocation rows are immutable",
    )


def _check_allocation_delete(mapper, connection, target):
    _block(
        "SalesLineBatchAllocation", target, "DELETE",
        "Batch allocation rows cannot be deleted",
    )


def _check_batch_delete(mapper, connection, target):
    _block(
        "InventoryBatch", target, "DELETE",
        "Inventory batches are never deleted; change their status instead",
    )


def _check_batch_quantities(mapper, connection, target):
    """
    Reject any flush that would persist a negative batch quantity.

    Reaching this means a caller bypassed BatchRepository.apply_decrement.
    """
    if target.strip_qty >= 0 and target.tablet_qty >= 0:
        return

    from sqlalchemy.orm.attributes import get_history

    def _before(attr: str, current: int) -> int:
        history = get_history(target, attr)
        if history.deleted:
            return history.deleted[0]
        return current

    logger.error(
        "negative_stock_blocked",
        extra={
            "batch_id": str(target.id),
            "strip_qty": target.strip_qty,
            "tablet_qty": target.tablet_qty,
            "layer": "orm",
        },
    )
    raise NegativeStockError(
        batch_id=str(target.id),
        strip_qty=_before("strip_qty", target.strip_qty),
        tablet_qty=_before("tablet_qty", target.tablet_qty),
        resulting_strip_qty=target.strip_qty,
        resulting_tablet_qty=target.tablet_qty,
    )


def _listeners():
    from pharmacy_kernel.models.inventory_batch import InventoryBatch
    from pharmacy_kernel.models.sales_line import SalesLine, SalesLineBatchAllocation

    return (
        (SalesLine, "before_update", _check_sales_line_update),
        (SalesLine, "before_delete", _check_sales_line_delete),
        (SalesLineBatchAllocation, "before_update", _check_allocation_update),
        (SalesLineBatchAllocation, "before_delete", _check_allocation_delete),
        (InventoryBatch, "before_delete", _check_batch_delete),
        (InventoryBatch, "before_update", _check_batch_quantities),
    )


def register_immutability_listeners():
    """
    Register all immutability enforcement event listeners.

    Call this after all models are imported but before any database
    operations begin.  Safe to call more than once.
    """
    for target, event_name, listener_fn in _listeners():
        if not event.contains(target, event_name, listener_fn):
            event.listen(target, event_name, listener_fn)


def _safe_remove_listener(target, event_name, listener_fn):
    """Safely remove an event listener, ignoring if not registered."""
    if event.contains(target, event_name, listener_fn):
        event.remove(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests where you need to intentionally
    violate immutability rules to verify detection.
    """
    for target, event_name, listener_fn in _listeners():
        _safe_remove_listener(target, event_name, listener_fn)
