"""
Module: pharmacy_kernel.models.product
Responsibility: Minimal catalog anchor for allocation.  The catalog
    collaborator owns product CRUD; the allocation engine only needs to know
    that a product exists, is active, and what its strip pack size is.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - product_id is unique (uq_product_id).
    - pack_size > 0 (ck_product_pack_size_positive).

Audit relevance:
    The product row is also the storage-level lock target for an allocation
    transaction: ``SELECT ... FOR UPDATE`` on it serializes allocations for
    the product even when it currently has no batches.
"""

from sqlalchemy import Boolean, CheckConstraint, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from pharmacy_kernel.db.base import Base


class Product(Base):
    """A sellable product as seen by the allocation engine."""

    __tablename__ = "products"

    __table_args__ = (
        UniqueConstraint("product_id", name="uq_product_id"),
        CheckConstraint("pack_size > 0", name="ck_product_pack_size_positive"),
    )

    # Catalog code (e.g. "PARA-500")
    product_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )

    name: Mapped[str] = mapped_column(
        String(200),
        nullable=False,
    )

    # Tablets per strip, used to convert strip-unit requests
    pack_size: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
    )

    def __repr__(self) -> str:
        return f"<Product {self.product_id}: pack_size={self.pack_size}>"
