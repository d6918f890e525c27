"""
Module: pharmacy_kernel.models.sales_line
Responsibility: Append-only audit rows written when an allocation commits:
    one SalesLine snapshot per sale line and one SalesLineBatchAllocation per
    batch that contributed stock.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    A1 -- Append-only.  Both tables reject UPDATE and DELETE through ORM
          listeners (db/immutability.py).
    A2 -- qty_in_tablets > 0 on allocation rows (zero-quantity override
          entries are not recorded).
    A3 -- One allocation row per (sales_line_id, batch_id).

Audit relevance:
    These rows are what ledger and reporting collaborators read after commit.
    allocated_by / auto_allocated distinguish the system's FIFO proposal from
    an operator override.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from pharmacy_kernel.db.base import Base, UUIDString


class AllocatedBy(str, Enum):
    """Who decided the batch split."""

    SYSTEM = "system"
    OPERATOR = "operator"


class SalesLine(Base):
    """Snapshot of a sold line, frozen at commit."""

    __tablename__ = "sales_lines"

    __table_args__ = (
        CheckConstraint("qty > 0", name="ck_sales_line_qty_positive"),
        Index("idx_sales_line_product", "product_id"),
    )

    product_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )

    qty: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    unit: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
    )

    pack_size: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    qty_in_tablets: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    # Opaque; pricing is owned by the billing collaborator
    price: Mapped[Decimal | None] = mapped_column(
        Numeric(18, 4),
        nullable=True,
    )

    actor_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    @property
    def sales_line_id(self) -> UUID:
        return self.id

    def __repr__(self) -> str:
        return (
            f"<SalesLine {self.id}: {self.qty} {self.unit} of {self.product_id}>"
        )


class SalesLineBatchAllocation(Base):
    """How many tablets of one batch went into one sale line."""

    __tablename__ = "sales_line_batch_allocations"

    __table_args__ = (
        UniqueConstraint(
            "sales_line_id", "batch_id", name="uq_allocation_line_batch",
        ),
        CheckConstraint("qty_in_tablets > 0", name="ck_allocation_qty_positive"),
        Index("idx_allocation_batch", "batch_id"),
        Index("idx_allocation_timestamp", "timestamp"),
    )

    sales_line_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("sales_lines.id"),
        nullable=False,
    )

    batch_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("inventory_batches.id"),
        nullable=False,
    )

    qty_in_tablets: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    # Mutation detail actually applied to the batch
    strips_removed: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    tablets_removed: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    strips_broken: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    allocated_by: Mapped[AllocatedBy] = mapped_column(
        String(10),
        nullable=False,
    )

    auto_allocated: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
    )

    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<SalesLineBatchAllocation line={self.sales_line_id} "
            f"batch={self.batch_id} qty={self.qty_in_tablets} "
            f"by={self.allocated_by}>"
        )
