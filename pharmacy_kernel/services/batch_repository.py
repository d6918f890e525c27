"""
BatchRepository -- persisted inventory batches per product.

Responsibility:
    Owns every read and write of InventoryBatch rows on the allocation path:
    locked, FIFO-ordered candidate reads; guarded decrements; and the batch
    lifecycle around them (receipt, status transitions, expiry sweep).

Architecture position:
    Kernel > Services -- imperative shell.  Flushes within the caller's
    transaction; never commits or rolls back.

Invariants enforced:
    - Candidates are status=available and expiry_date >= as_of, ordered by
      (expiry_date, created_at, batch_no, id).
    - Candidate rows (and the product row) are read with FOR UPDATE, so on
      PostgreSQL they stay locked until the caller's transaction ends.
    - apply_decrement never leaves strip_qty or tablet_qty below zero.
    - Batches are never deleted; status changes follow
      BATCH_STATUS_TRANSITIONS.

Failure modes:
    - UnknownProductError: product missing or inactive.
    - BatchNotFoundError: batch_id does not exist.
    - NegativeStockError: a decrement would go below zero (nothing applied).
    - AllocationBusyError: PostgreSQL lock_timeout elapsed while waiting for
      row locks.
    - InvalidBatchStatusTransitionError: illegal lifecycle move.

Audit relevance:
    Every decrement is logged with before/after quantities.  Decrements are
    paired with SalesLineBatchAllocation rows by the audit writer in the
    same transaction.
"""

from __future__ import annotations

from datetime import date
from uuid import UUID

from sqlalchemy import select, text
from sqlalchemy.exc import OperationalError

from pharmacy_kernel.db.engine import is_postgres
from pharmacy_kernel.exceptions import (
    AllocationBusyError,
    BatchNotFoundError,
    InvalidBatchStatusTransitionError,
    NegativeStockError,
    UnknownProductError,
)
from pharmacy_kernel.logging_config import get_logger
from pharmacy_kernel.models.inventory_batch import (
    BATCH_STATUS_TRANSITIONS,
    BatchStatus,
    InventoryBatch,
)
from pharmacy_kernel.models.product import Product
from pharmacy_kernel.services.base import BaseService

logger = get_logger("services.batch_repository")

# PostgreSQL SQLSTATE for lock_not_available
_PG_LOCK_NOT_AVAILABLE = "55P03"


class BatchRepository(BaseService[InventoryBatch]):
    """
    Repository for InventoryBatch rows.

    Contract:
        Receives a Session owned by the caller.  Locked reads hold their
        locks for the caller's whole transaction.
    """

    # -----------------------------------------------------------------
    # Products
    # -----------------------------------------------------------------

    def get_product(self, product_id: str) -> Product:
        """
        Return the active product, without locking.

        Raises:
            UnknownProductError: If the product is missing or inactive.
        """
        product = self.session.execute(
            select(Product).where(Product.product_id == product_id)
        ).scalar_one_or_none()
        if product is None or not product.is_active:
            raise UnknownProductError(product_id)
        return product

    def lock_product(self, product_id: str, lock_timeout: float | None = None) -> Product:
        """
        Lock the product row FOR UPDATE.

        This is the storage-level per-product critical section: it holds
        even when the product currently has no candidate batches.
        """
        self._set_lock_timeout(lock_timeout)
        stmt = (
            select(Product)
            .where(Product.product_id == product_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        product = self._execute_locked(stmt, product_id, lock_timeout).scalar_one_or_none()
        if product is None or not product.is_active:
            raise UnknownProductError(product_id)
        return product

    # -----------------------------------------------------------------
    # Allocation path
    # -----------------------------------------------------------------

    def list_candidates(
        self,
        product_id: str,
        as_of: date | None = None,
        lock_timeout: float | None = None,
    ) -> list[InventoryBatch]:
        """
        Return allocatable batches for a product, FIFO by expiry, locked.

        Preconditions:
            Caller is inside a transaction it will end with commit/rollback.

        Postconditions:
            Every returned row is locked FOR UPDATE until that transaction
            ends (PostgreSQL).  Rows are refreshed from the database.

        Raises:
            AllocationBusyError: If row locks are not granted within
                ``lock_timeout`` seconds (PostgreSQL).
        """
        as_of = as_of or self.clock.today()
        self._set_lock_timeout(lock_timeout)

        stmt = (
            select(InventoryBatch)
            .where(
                InventoryBatch.product_id == product_id,
                InventoryBatch.status == BatchStatus.AVAILABLE.value,
                InventoryBatch.expiry_date >= as_of,
            )
            .order_by(
                InventoryBatch.expiry_date.asc(),
                InventoryBatch.created_at.asc(),
                InventoryBatch.batch_no.asc(),
                InventoryBatch.id.asc(),
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        batches = list(self._execute_locked(stmt, product_id, lock_timeout).scalars())

        logger.info(
            "candidates_locked",
            extra={
                "product_id": product_id,
                "as_of": as_of,
                "candidate_count": len(batches),
                "total_tablets": sum(b.total_tablets for b in batches),
            },
        )
        return batches

    def apply_decrement(
        self,
        batch_id: UUID,
        strips_to_remove: int,
        tablets_to_remove: int,
        strips_to_break: int = 0,
    ) -> InventoryBatch:
        """
        Decrement a batch within the caller's transaction.

        resulting strip_qty  = strip_qty - strips_to_remove - strips_to_break
        resulting tablet_qty = tablet_qty + strips_to_break * pack_size
                               - tablets_to_remove

        A batch left with no stock moves to EXHAUSTED.

        Raises:
            ValueError: If any component is negative.
            BatchNotFoundError: If the batch does not exist.
            NegativeStockError: If either resulting field would be < 0.
                The batch is left untouched.
        """
        if min(strips_to_remove, tablets_to_remove, strips_to_break) < 0:
            raise ValueError(
                "Decrement components must be non-negative: "
                f"strips={strips_to_remove} tablets={tablets_to_remove} "
                f"break={strips_to_break}"
            )

        batch = self.get_batch(batch_id)
        new_strip = batch.strip_qty - strips_to_remove - strips_to_break
        new_tablet = batch.tablet_qty + strips_to_break * batch.pack_size - tablets_to_remove

        if new_strip < 0 or new_tablet < 0:
            logger.error(
                "negative_stock_blocked",
                extra={
                    "batch_id": str(batch_id),
                    "strip_qty": batch.strip_qty,
                    "tablet_qty": batch.tablet_qty,
                    "strips_to_remove": strips_to_remove,
                    "tablets_to_remove": tablets_to_remove,
                    "strips_to_break": strips_to_break,
                    "layer": "repository",
                },
            )
            raise NegativeStockError(
                batch_id=str(batch_id),
                strip_qty=batch.strip_qty,
                tablet_qty=batch.tablet_qty,
                resulting_strip_qty=new_strip,
                resulting_tablet_qty=new_tablet,
            )

        before = (batch.strip_qty, batch.tablet_qty)
        batch.strip_qty = new_strip
        batch.tablet_qty = new_tablet
        if batch.total_tablets == 0 and batch.status == BatchStatus.AVAILABLE:
            batch.status = BatchStatus.EXHAUSTED.value
        self.session.flush()

        logger.info(
            "batch_decremented",
            extra={
                "batch_id": str(batch_id),
                "strip_qty_before": before[0],
                "tablet_qty_before": before[1],
                "strip_qty_after": new_strip,
                "tablet_qty_after": new_tablet,
                "strips_broken": strips_to_break,
                "status": str(batch.status),
            },
        )
        return batch

    def get_batch(self, batch_id: UUID) -> InventoryBatch:
        batch = self.session.get(InventoryBatch, batch_id)
        if batch is None:
            raise BatchNotFoundError(str(batch_id))
        return batch

    # -----------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------

    def receive_batch(
        self,
        product_id: str,
        batch_no: str,
        expiry_date: date,
        strip_qty: int,
        tablet_qty: int = 0,
        pack_size: int | None = None,
    ) -> InventoryBatch:
        """
        Create a batch from a purchase receipt.

        ``pack_size`` defaults to the product's pack size.

        Raises:
            UnknownProductError: If the product is missing or inactive.
            ValueError: On negative quantities or non-positive pack size.
        """
        product = self.get_product(product_id)
        pack_size = pack_size if pack_size is not None else product.pack_size
        if strip_qty < 0 or tablet_qty < 0:
            raise ValueError(
                f"Received quantities must be >= 0, got strips={strip_qty} tablets={tablet_qty}"
            )
        if pack_size <= 0:
            raise ValueError(f"pack_size must be > 0, got {pack_size}")

        batch = InventoryBatch(
            product_id=product_id,
            batch_no=batch_no,
            expiry_date=expiry_date,
            strip_qty=strip_qty,
            tablet_qty=tablet_qty,
            pack_size=pack_size,
            status=BatchStatus.AVAILABLE.value,
            created_at=self.clock.now(),
        )
        self.session.add(batch)
        self.session.flush()

        logger.info(
            "batch_received",
            extra={
                "batch_id": str(batch.id),
                "product_id": product_id,
                "batch_no": batch_no,
                "expiry_date": expiry_date,
                "strip_qty": strip_qty,
                "tablet_qty": tablet_qty,
                "pack_size": pack_size,
            },
        )
        return batch

    def transition_status(self, batch_id: UUID, new_status: BatchStatus) -> InventoryBatch:
        """
        Move a batch to ``new_status``.

        Raises:
            InvalidBatchStatusTransitionError: If not in BATCH_STATUS_TRANSITIONS.
        """
        batch = self.get_batch(batch_id)
        current = BatchStatus(batch.status)
        new_status = BatchStatus(new_status)
        if new_status not in BATCH_STATUS_TRANSITIONS[current]:
            raise InvalidBatchStatusTransitionError(
                batch_id=str(batch_id),
                from_status=current.value,
                to_status=new_status.value,
            )
        batch.status = new_status.value
        self.session.flush()
        logger.info(
            "batch_status_changed",
            extra={
                "batch_id": str(batch_id),
                "from_status": current.value,
                "to_status": new_status.value,
            },
        )
        return batch

    def expire_batches(
        self,
        as_of: date | None = None,
        product_id: str | None = None,
    ) -> list[InventoryBatch]:
        """Move available batches with expiry_date < as_of to EXPIRED."""
        as_of = as_of or self.clock.today()
        stmt = select(InventoryBatch).where(
            InventoryBatch.status == BatchStatus.AVAILABLE.value,
            InventoryBatch.expiry_date < as_of,
        )
        if product_id is not None:
            stmt = stmt.where(InventoryBatch.product_id == product_id)

        expired = list(self.session.execute(stmt.with_for_update()).scalars())
        for batch in expired:
            batch.status = BatchStatus.EXPIRED.value
        self.session.flush()

        logger.info(
            "batches_expired",
            extra={"as_of": as_of, "product_id": product_id, "count": len(expired)},
        )
        return expired

    # -----------------------------------------------------------------
    # Locking helpers
    # -----------------------------------------------------------------

    def _set_lock_timeout(self, lock_timeout: float | None) -> None:
        if lock_timeout is None or not is_postgres(self.session):
            return
        millis = max(int(lock_timeout * 1000), 1)
        self.session.execute(text(f"SET LOCAL lock_timeout = '{millis}ms'"))

    def _execute_locked(self, stmt, product_id: str, lock_timeout: float | None):
        try:
            return self.session.execute(stmt)
        except OperationalError as exc:
            if getattr(exc.orig, "pgcode", None) == _PG_LOCK_NOT_AVAILABLE:
                logger.warning(
                    "row_lock_timeout",
                    extra={"product_id": product_id, "timeout_seconds": lock_timeout},
                )
                raise AllocationBusyError(
                    product_id=product_id,
                    timeout_seconds=lock_timeout or 0.0,
                ) from exc
            raise
