"""
AuditWriter -- append-only record of which batches fed which sale line.

Responsibility:
    On commit of an allocation transaction, writes one SalesLine snapshot
    and one SalesLineBatchAllocation row per batch with a non-zero
    quantity, in the same database transaction as the batch decrements.

Architecture position:
    Kernel > Services -- imperative shell.  Flush-only; the allocation
    coordinator owns commit and rollback.

Invariants enforced:
    - Audit rows and decrements commit together or not at all.
    - Zero-quantity decrements (operator override entries of 0) are not
      recorded.
    - Rows are immutable after insert (db/immutability.py).

Failure modes:
    - IntegrityError on a duplicate (sales_line_id, batch_id) pair.

Audit relevance:
    These rows are the interface to ledger and reporting collaborators.
    ``allocated_by``/``auto_allocated`` tell a system FIFO proposal apart
    from an operator override.
"""

from __future__ import annotations

from collections.abc import Sequence

from pharmacy_kernel.domain.dtos import BatchDecrement, SalesLineSnapshot
from pharmacy_kernel.logging_config import get_logger
from pharmacy_kernel.models.sales_line import (
    AllocatedBy,
    SalesLine,
    SalesLineBatchAllocation,
)
from pharmacy_kernel.services.base import BaseService

logger = get_logger("services.audit_writer")


class AuditWriter(BaseService[SalesLineBatchAllocation]):
    """Writes SalesLine and SalesLineBatchAllocation rows."""

    def record_commit(
        self,
        sales_line: SalesLineSnapshot,
        decrements: Sequence[BatchDecrement],
        allocated_by: AllocatedBy,
        auto_allocated: bool,
    ) -> list[SalesLineBatchAllocation]:
        """
        Record a committed allocation.

        Args:
            sales_line: Frozen description of what was sold.
            decrements: Per-batch mutations applied in this transaction.
            allocated_by: SYSTEM for an accepted proposal, OPERATOR for an
                override.
            auto_allocated: True iff the system proposal was accepted as-is.

        Returns:
            The allocation rows written, in decrement order.
        """
        now = self.clock.now()

        line = SalesLine(
            id=sales_line.sales_line_id,
            product_id=sales_line.product_id,
            qty=sales_line.qty,
            unit=sales_line.unit.value,
            pack_size=sales_line.pack_size,
            qty_in_tablets=sales_line.qty_in_tablets,
            price=sales_line.price,
            actor_id=sales_line.actor_id,
            created_at=now,
        )
        self.session.add(line)
        # Parent row must exist before allocation rows reference it
        self.session.flush()

        rows: list[SalesLineBatchAllocation] = []
        for decrement in decrements:
            if decrement.qty_in_tablets == 0:
                continue
            row = SalesLineBatchAllocation(
                sales_line_id=sales_line.sales_line_id,
                batch_id=decrement.batch_id,
                qty_in_tablets=decrement.qty_in_tablets,
                strips_removed=decrement.strips_to_remove,
                tablets_removed=decrement.tablets_to_remove,
                strips_broken=decrement.strips_to_break,
                allocated_by=AllocatedBy(allocated_by).value,
                auto_allocated=auto_allocated,
                timestamp=now,
            )
            self.session.add(row)
            rows.append(row)
        self.session.flush()

        logger.info(
            "allocation_recorded",
            extra={
                "sales_line_id": str(sales_line.sales_line_id),
                "product_id": sales_line.product_id,
                "qty_in_tablets": sales_line.qty_in_tablets,
                "allocated_by": AllocatedBy(allocated_by).value,
                "auto_allocated": auto_allocated,
                "batch_count": len(rows),
            },
        )
        return rows
