"""
DTOs -- Pure domain data transfer objects.

Responsibility:
    Defines the immutable data structures that flow through the allocation
    pipeline: AllocationRequest and AllocationConfig (input), BatchSnapshot
    (locked batch state handed to the pure planner), AllocationProposal and
    ProposalLine (planner output), OverrideLine (operator input),
    BatchDecrement (what commit applies to one batch), SalesLineSnapshot
    (what the audit writer records) and AllocationOutcome (commit result).

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.
    from_model() class methods exist as boundary converters but are only
    invoked from the service layer (never from engine logic).

Invariants enforced:
    - All quantities are integers in tablets (fine units) unless the field
      name says otherwise.
    - BatchSnapshot.total_tablets = strip_qty * pack_size + tablet_qty.
    - AllocationConfig is frozen and passed per call; no ambient state.

Failure modes:
    - ValueError on AllocationConfig with negative near_expiry_days.
    - ValueError on BatchDecrement with negative components.

Data flow:
    AllocationRequest -> BatchSnapshot* -> AllocationProposal
        -> (OverrideLine*) -> BatchDecrement* -> SalesLineSnapshot
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING
from uuid import UUID

if TYPE_CHECKING:
    from pharmacy_kernel.models.inventory_batch import InventoryBatch


class Unit(str, Enum):
    """Sale unit: coarse strip/pack, or loose tablet."""

    STRIP = "strip"
    TABLET = "tablet"


def to_tablets(qty: int, unit: Unit, pack_size: int) -> int:
    """Convert a quantity in ``unit`` to tablets."""
    if unit == Unit.STRIP:
        return qty * pack_size
    return qty


@dataclass(frozen=True)
class AllocationConfig:
    """
    Per-call allocation policy.

    Contract:
        Supplied by the configuration collaborator on every coordinator call.
    Guarantees:
        - ``near_expiry_days`` is non-negative.
    """

    near_expiry_days: int = 30
    allow_break_packs: bool = True

    def __post_init__(self) -> None:
        if self.near_expiry_days < 0:
            raise ValueError(
                f"near_expiry_days must be >= 0, got {self.near_expiry_days}"
            )


@dataclass(frozen=True)
class AllocationRequest:
    """A request to sell ``qty`` of ``unit`` of a product."""

    product_id: str
    qty: int
    unit: Unit = Unit.TABLET


@dataclass(frozen=True)
class BatchSnapshot:
    """
    Point-in-time view of one inventory batch.

    Contract:
        Built from a locked ORM row; the planner never sees ORM objects.
    """

    batch_id: UUID
    product_id: str
    batch_no: str
    expiry_date: date
    strip_qty: int
    tablet_qty: int
    pack_size: int
    created_at: datetime
    status: str = "available"

    @property
    def total_tablets(self) -> int:
        return self.strip_qty * self.pack_size + self.tablet_qty

    @property
    def sort_key(self) -> tuple:
        """FIFO-by-expiry ordering key with deterministic tie-breaks."""
        return (self.expiry_date, self.created_at, self.batch_no, str(self.batch_id))

    def is_near_expiry(self, as_of: date, near_expiry_days: int) -> bool:
        return (self.expiry_date - as_of).days <= near_expiry_days

    @classmethod
    def from_model(cls, batch: InventoryBatch) -> BatchSnapshot:
        return cls(
            batch_id=batch.id,
            product_id=batch.product_id,
            batch_no=batch.batch_no,
            expiry_date=batch.expiry_date,
            strip_qty=batch.strip_qty,
            tablet_qty=batch.tablet_qty,
            pack_size=batch.pack_size,
            created_at=batch.created_at,
            status=batch.status,
        )


@dataclass(frozen=True)
class ProposalLine:
    """One batch's share of a proposal."""

    batch_id: UUID
    batch_no: str
    expiry_date: date
    qty_in_tablets: int
    strips_to_break: int = 0
    near_expiry: bool = False


@dataclass(frozen=True)
class AllocationProposal:
    """
    Ordered FIFO-by-expiry allocation proposal.

    Ephemeral: recomputed per request and discarded after commit/rollback.
    """

    product_id: str
    unit: Unit
    requested_tablets: int
    lines: tuple[ProposalLine, ...]

    @property
    def total_allocated(self) -> int:
        return sum(line.qty_in_tablets for line in self.lines)

    @property
    def is_complete(self) -> bool:
        return self.total_allocated == self.requested_tablets

    @property
    def batch_ids(self) -> tuple[UUID, ...]:
        return tuple(line.batch_id for line in self.lines)

    def as_pairs(self) -> list[tuple[UUID, int]]:
        """Return ``[(batch_id, qty_in_tablets), ...]`` in allocation order."""
        return [(line.batch_id, line.qty_in_tablets) for line in self.lines]


@dataclass(frozen=True)
class ProposalDisplayLine:
    """Row shown to the operator for a proposed allocation."""

    batch_no: str
    expiry_date: date
    qty_allocated: int
    near_expiry: bool


@dataclass(frozen=True)
class OverrideLine:
    """Operator-chosen quantity (in tablets) for one batch."""

    batch_id: UUID
    qty: int


@dataclass(frozen=True)
class BatchDecrement:
    """
    Mutation applied to one batch at commit.

    resulting strip_qty  = strip_qty - strips_to_remove - strips_to_break
    resulting tablet_qty = tablet_qty + strips_to_break * pack_size - tablets_to_remove
    """

    batch_id: UUID
    qty_in_tablets: int
    strips_to_remove: int = 0
    tablets_to_remove: int = 0
    strips_to_break: int = 0

    def __post_init__(self) -> None:
        if min(
            self.qty_in_tablets,
            self.strips_to_remove,
            self.tablets_to_remove,
            self.strips_to_break,
        ) < 0:
            raise ValueError(f"BatchDecrement components must be >= 0: {self}")


@dataclass(frozen=True)
class SalesLineSnapshot:
    """What was sold, frozen at commit time."""

    sales_line_id: UUID
    product_id: str
    qty: int
    unit: Unit
    pack_size: int
    qty_in_tablets: int
    price: Decimal | None = None
    actor_id: UUID | None = None


@dataclass(frozen=True)
class AllocationOutcome:
    """Result of a committed allocation transaction."""

    transaction_id: UUID
    sales_line_id: UUID
    product_id: str
    allocated_by: str
    decrements: tuple[BatchDecrement, ...] = field(default_factory=tuple)

    @property
    def total_tablets(self) -> int:
        return sum(d.qty_in_tablets for d in self.decrements)
