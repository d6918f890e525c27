"""
Module: pharmacy_kernel.selectors.stock_selector
Responsibility: Read-only views of batch stock levels and of the allocation
    audit trail.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - No row locks are taken.  Callers needing a consistent view for a
      mutation go through BatchRepository.list_candidates instead.
    - Stock totals are always strip_qty * pack_size + tablet_qty.

Audit relevance:
    allocations_for_sales_line() is how ledger and reporting collaborators
    read the batch trail of a sale line.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select

from pharmacy_kernel.models.inventory_batch import BatchStatus, InventoryBatch
from pharmacy_kernel.models.sales_line import SalesLine, SalesLineBatchAllocation
from pharmacy_kernel.selectors.base import BaseSelector


@dataclass(frozen=True)
class BatchStockView:
    """Stock level of one batch."""

    batch_id: UUID
    product_id: str
    batch_no: str
    expiry_date: date
    strip_qty: int
    tablet_qty: int
    pack_size: int
    status: str

    @property
    def total_tablets(self) -> int:
        return self.strip_qty * self.pack_size + self.tablet_qty


@dataclass(frozen=True)
class AllocationRecordView:
    """One audit row: tablets of a batch consumed by a sale line."""

    sales_line_id: UUID
    batch_id: UUID
    batch_no: str
    qty_in_tablets: int
    strips_removed: int
    tablets_removed: int
    strips_broken: int
    allocated_by: str
    auto_allocated: bool
    timestamp: datetime


@dataclass(frozen=True)
class SalesLineView:
    sales_line_id: UUID
    product_id: str
    qty: int
    unit: str
    pack_size: int
    qty_in_tablets: int
    price: Decimal | None
    actor_id: UUID | None
    created_at: datetime


class StockSelector(BaseSelector[InventoryBatch]):
    """Read-only stock and allocation-trail queries."""

    def batch_levels(
        self,
        product_id: str,
        statuses: tuple[BatchStatus, ...] | None = None,
    ) -> list[BatchStockView]:
        """
        Batches of a product in FIFO-by-expiry order.

        Args:
            product_id: Product to list.
            statuses: Restrict to these statuses; all statuses if None.
        """
        stmt = select(InventoryBatch).where(InventoryBatch.product_id == product_id)
        if statuses:
            stmt = stmt.where(InventoryBatch.status.in_([s.value for s in statuses]))
        stmt = stmt.order_by(
            InventoryBatch.expiry_date,
            InventoryBatch.created_at,
            InventoryBatch.batch_no,
        )
        return [self._to_view(b) for b in self.session.execute(stmt).scalars()]

    def batch(self, batch_id: UUID) -> BatchStockView | None:
        row = self.session.get(InventoryBatch, batch_id)
        return self._to_view(row) if row is not None else None

    def product_total(self, product_id: str, as_of: date | None = None) -> int:
        """
        Allocatable tablets for a product.

        Counts available batches only; with ``as_of``, batches expiring
        before that date are excluded as well.
        """
        stmt = select(InventoryBatch).where(
            InventoryBatch.product_id == product_id,
            InventoryBatch.status == BatchStatus.AVAILABLE.value,
        )
        if as_of is not None:
            stmt = stmt.where(InventoryBatch.expiry_date >= as_of)
        return sum(b.total_tablets for b in self.session.execute(stmt).scalars())

    def near_expiry_batches(
        self,
        as_of: date,
        near_expiry_days: int,
        product_id: str | None = None,
    ) -> list[BatchStockView]:
        """Available, unexpired batches expiring within ``near_expiry_days``."""
        horizon = as_of + timedelta(days=near_expiry_days)
        stmt = select(InventoryBatch).where(
            InventoryBatch.status == BatchStatus.AVAILABLE.value,
            InventoryBatch.expiry_date >= as_of,
            InventoryBatch.expiry_date <= horizon,
        )
        if product_id is not None:
            stmt = stmt.where(InventoryBatch.product_id == product_id)
        stmt = stmt.order_by(InventoryBatch.expiry_date, InventoryBatch.batch_no)
        return [self._to_view(b) for b in self.session.execute(stmt).scalars()]

    def sales_line(self, sales_line_id: UUID) -> SalesLineView | None:
        row = self.session.get(SalesLine, sales_line_id)
        if row is None:
            return None
        return SalesLineView(
            sales_line_id=row.id,
            product_id=row.product_id,
            qty=row.qty,
            unit=row.unit,
            pack_size=row.pack_size,
            qty_in_tablets=row.qty_in_tablets,
            price=row.price,
            actor_id=row.actor_id,
            created_at=row.created_at,
        )

    def allocations_for_sales_line(self, sales_line_id: UUID) -> list[AllocationRecordView]:
        """Audit rows of a sale line, in FIFO-by-expiry order of their batches."""
        stmt = (
            select(SalesLineBatchAllocation, InventoryBatch.batch_no)
            .join(InventoryBatch, InventoryBatch.id == SalesLineBatchAllocation.batch_id)
            .where(SalesLineBatchAllocation.sales_line_id == sales_line_id)
            .order_by(
                InventoryBatch.expiry_date,
                InventoryBatch.created_at,
                InventoryBatch.batch_no,
            )
        )
        return [
            AllocationRecordView(
                sales_line_id=row.sales_line_id,
                batch_id=row.batch_id,
                batch_no=batch_no,
                qty_in_tablets=row.qty_in_tablets,
                strips_removed=row.strips_removed,
                tablets_removed=row.tablets_removed,
                strips_broken=row.strips_broken,
                allocated_by=row.allocated_by,
                auto_allocated=row.auto_allocated,
                timestamp=row.timestamp,
            )
            for row, batch_no in self.session.execute(stmt).all()
        ]

    def allocations_for_batch(self, batch_id: UUID) -> list[AllocationRecordView]:
        """Every sale line that drew on one batch, oldest first."""
        stmt = (
            select(SalesLineBatchAllocation, InventoryBatch.batch_no)
            .join(InventoryBatch, InventoryBatch.id == SalesLineBatchAllocation.batch_id)
            .where(SalesLineBatchAllocation.batch_id == batch_id)
            .order_by(SalesLineBatchAllocation.timestamp)
        )
        return [
            AllocationRecordView(
                sales_line_id=row.sales_line_id,
                batch_id=row.batch_id,
                batch_no=batch_no,
                qty_in_tablets=row.qty_in_tablets,
                strips_removed=row.strips_removed,
                tablets_removed=row.tablets_removed,
                strips_broken=row.strips_broken,
                allocated_by=row.allocated_by,
                auto_allocated=row.auto_allocated,
                timestamp=row.timestamp,
            )
            for row, batch_no in self.session.execute(stmt).all()
        ]

    @staticmethod
    def _to_view(batch: InventoryBatch) -> BatchStockView:
        return BatchStockView(
            batch_id=batch.id,
            product_id=batch.product_id,
            batch_no=batch.batch_no,
            expiry_date=batch.expiry_date,
            strip_qty=batch.strip_qty,
            tablet_qty=batch.tablet_qty,
            pack_size=batch.pack_size,
            status=str(BatchStatus(batch.status).value),
        )
