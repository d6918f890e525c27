"""
Module: pharmacy_kernel.models.inventory_batch
Responsibility: ORM persistence for physical stock batches.  Each batch is a
    receipt lot of one product with its own batch number, expiry date and
    on-hand quantity split into whole strips and loose tablets.
Architecture position: Kernel > Models.  May import from db/base.py only.
    MUST NOT import from services/, selectors/, domain/, or outer layers.

Invariants enforced:
    B1 -- strip_qty >= 0 and tablet_qty >= 0 (CHECK constraints, plus the
          repository guard and the ORM before_update listener).
    B2 -- pack_size > 0.
    B3 -- FIFO-by-expiry ordering support: (product_id, status, expiry_date,
          created_at) index backs the candidate query.
    B4 -- Batches are never deleted; they only change status.

Failure modes:
    - IntegrityError if a raw UPDATE tries to drive a quantity negative.
    - ImmutabilityViolationError on DELETE (db/immutability.py).

Audit relevance:
    Quantities change only in the allocation coordinator's commit step (and
    receipt, which creates the row).  Every decrement is paired with a
    SalesLineBatchAllocation row written in the same transaction.
"""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column

from pharmacy_kernel.db.base import Base


class BatchStatus(str, Enum):
    """Lifecycle status of an inventory batch.

    Contract: only AVAILABLE batches are allocation candidates.
    EXPIRED and EXHAUSTED are terminal.
    """

    AVAILABLE = "available"
    EXPIRED = "expired"
    QUARANTINED = "quarantined"
    EXHAUSTED = "exhausted"


BATCH_STATUS_TRANSITIONS: dict[BatchStatus, frozenset[BatchStatus]] = {
    BatchStatus.AVAILABLE: frozenset({
        BatchStatus.EXPIRED, BatchStatus.QUARANTINED, BatchStatus.EXHAUSTED,
    }),
    BatchStatus.QUARANTINED: frozenset({
        BatchStatus.AVAILABLE, BatchStatus.EXPIRED,
    }),
    # Terminal states
    BatchStatus.EXPIRED: frozenset(),
    BatchStatus.EXHAUSTED: frozenset(),
}


class InventoryBatch(Base):
    """
    One receipt lot of a product.

    Contract:
        Created by the receiving process (purchase entry).  Quantities are
        mutated only inside an allocation transaction that holds the
        product lock.

    Guarantees:
        - total_tablets = strip_qty * pack_size + tablet_qty >= 0.
        - created_at is set explicitly from the injected clock so FIFO
          tie-breaks are reproducible.
    """

    __tablename__ = "inventory_batches"

    __table_args__ = (
        CheckConstraint("strip_qty >= 0", name="ck_batch_strip_qty_nonneg"),
        CheckConstraint("tablet_qty >= 0", name="ck_batch_tablet_qty_nonneg"),
        CheckConstraint("pack_size > 0", name="ck_batch_pack_size_positive"),
        # Query: candidates for a product, FIFO by expiry
        Index(
            "idx_batch_candidates",
            "product_id", "status", "expiry_date", "created_at",
        ),
        Index("idx_batch_expiry", "expiry_date"),
    )

    product_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("products.product_id"),
        nullable=False,
    )

    batch_no: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )

    expiry_date: Mapped[date] = mapped_column(
        Date,
        nullable=False,
    )

    # INVARIANT B1: never negative
    strip_qty: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    tablet_qty: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    pack_size: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    status: Mapped[BatchStatus] = mapped_column(
        String(20),
        nullable=False,
        default=BatchStatus.AVAILABLE,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    @property
    def batch_id(self) -> UUID:
        return self.id

    @property
    def total_tablets(self) -> int:
        return self.strip_qty * self.pack_size + self.tablet_qty

    @property
    def is_available(self) -> bool:
        return self.status == BatchStatus.AVAILABLE

    def __repr__(self) -> str:
        return (
            f"<InventoryBatch {self.batch_no} ({self.product_id}): "
            f"{self.strip_qty}x{self.pack_size}+{self.tablet_qty} "
            f"exp={self.expiry_date} {self.status}>"
        )
