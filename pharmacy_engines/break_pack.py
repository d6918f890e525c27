"""
Module: pharmacy_engines.break_pack
Responsibility:
    Decide how much one batch can contribute to a request and how that
    contribution maps onto the batch's strips and loose tablets, opening
    ("breaking") whole strips into loose tablets when policy allows.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import pharmacy_kernel/domain.

Invariants enforced:
    - A contribution never exceeds the batch total, for either unit.
    - With break packs disallowed, a contribution never exceeds the stock
      that needs no opening: loose tablets, plus whole strips for a strip
      request.
    - Strip-unit decrements prefer whole strips before loose tablets.
    - strips_to_break = ceil(shortfall / pack_size), the fewest strips that
      cover the shortfall.

Failure modes:
    - ValueError on a negative quantity.

Usage:
    resolver = BreakPackResolver(allow_break_packs=True)
    resolution = resolver.resolve(snapshot, wanted=8, unit=Unit.TABLET)
    decrement = resolver.decrement_for(snapshot, 8, Unit.TABLET)
"""

from __future__ import annotations

from dataclasses import dataclass

from pharmacy_kernel.domain.dtos import BatchDecrement, BatchSnapshot, Unit
from pharmacy_kernel.logging_config import get_logger

logger = get_logger("engines.break_pack")


def _ceil_div(numerator: int, denominator: int) -> int:
    return -(-numerator // denominator)


@dataclass(frozen=True)
class BreakPackResolution:
    """
    What one batch contributes to a request.

    ``declined`` is True when break packs are disallowed and loose tablets
    alone could not cover ``wanted``.
    """

    take: int
    strips_to_break: int = 0
    declined: bool = False


class BreakPackResolver:
    """
    Resolve per-batch contributions under a break-pack policy.

    Contract:
        Stateless apart from the policy flag; safe to share across threads.
    """

    def __init__(self, allow_break_packs: bool = True):
        self.allow_break_packs = allow_break_packs

    def resolve(self, batch: BatchSnapshot, wanted: int, unit: Unit) -> BreakPackResolution:
        """
        How many tablets ``batch`` contributes toward ``wanted``.

        Both units walk the batch total. Stock that can be handed over
        without opening a pack comes first: whole strips (strip unit only,
        up to wanted // pack_size) plus loose tablets. If that covers
        ``wanted`` nothing is broken. Otherwise, when break packs are
        allowed, the batch gives min(total, wanted) and opens the fewest
        strips that make up the difference; when they are not, it gives
        only the intact stock and the rest moves on to the next candidate.
        """
        if wanted < 0:
            raise ValueError(f"wanted must be >= 0, got {wanted}")
        if wanted == 0:
            return BreakPackResolution(take=0)

        whole_strips = 0
        if unit == Unit.STRIP:
            whole_strips = min(batch.strip_qty, wanted // batch.pack_size)
        intact = whole_strips * batch.pack_size + batch.tablet_qty

        if intact >= wanted:
            return BreakPackResolution(take=wanted)

        if not self.allow_break_packs:
            logger.debug(
                "break_pack_declined",
                extra={
                    "batch_id": str(batch.batch_id),
                    "unit": unit.value,
                    "wanted": wanted,
                    "intact": intact,
                },
            )
            return BreakPackResolution(take=intact, declined=True)

        take = min(batch.total_tablets, wanted)
        decrement = self.decrement_for(batch, take, unit)
        return BreakPackResolution(take=take, strips_to_break=decrement.strips_to_break)

    def decrement_for(self, batch: BatchSnapshot, qty_in_tablets: int, unit: Unit) -> BatchDecrement:
        """
        Translate ``qty_in_tablets`` from ``batch`` into a BatchDecrement.

        Tablet unit: loose tablets first, then broken strips.
        Strip unit: whole strips first, then loose tablets, then broken
        strips.

        With break packs disallowed no strips are broken; if loose tablets
        do not cover the quantity the resulting decrement drives tablet_qty
        negative and the repository rejects it with NegativeStockError.
        """
        if qty_in_tablets < 0:
            raise ValueError(f"qty_in_tablets must be >= 0, got {qty_in_tablets}")

        strips_to_remove = 0
        if unit == Unit.STRIP:
            strips_to_remove = min(batch.strip_qty, qty_in_tablets // batch.pack_size)

        tablets_to_remove = qty_in_tablets - strips_to_remove * batch.pack_size
        shortfall = tablets_to_remove - batch.tablet_qty

        strips_to_break = 0
        if shortfall > 0 and self.allow_break_packs:
            strips_to_break = _ceil_div(shortfall, batch.pack_size)

        return BatchDecrement(
            batch_id=batch.batch_id,
            qty_in_tablets=qty_in_tablets,
            strips_to_remove=strips_to_remove,
            tablets_to_remove=tablets_to_remove,
            strips_to_break=strips_to_break,
        )
