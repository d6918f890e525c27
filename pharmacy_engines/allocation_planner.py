"""
Module: pharmacy_engines.allocation_planner
Responsibility:
    Produce a FIFO-by-expiry allocation proposal for a quantity of one
    product over a set of candidate batch snapshots.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import pharmacy_kernel/domain, pharmacy_kernel.exceptions and
    sibling engine modules.

Invariants enforced:
    - Ordering: candidates are walked by (expiry_date, created_at,
      batch_no, batch_id) regardless of the order the caller passes them.
    - Conservation: a returned proposal allocates exactly the requested
      tablets; otherwise InsufficientStockError and no proposal.
    - Per-batch bound: no line exceeds its batch total, and with break packs
      disallowed no line opens a strip.
    - Both units walk batch totals; with break packs allowed the request
      succeeds whenever the candidates hold enough tablets in total.
    - Purity: no clock access; ``as_of`` is passed in.

Failure modes:
    - InsufficientStockError(requested, available) when the candidates
      cannot cover the request; ``available`` is what the walk could draw.
    - ValueError on a non-positive quantity.

Audit relevance:
    Every planning run emits ENGINE_TRACE with a fingerprint of
    (product_id, qty_in_tablets, unit) via ``@traced_engine``.

Usage:
    planner = AllocationPlanner()
    proposal = planner.plan(
        product_id="PARA-500",
        qty_in_tablets=10,
        candidates=snapshots,
        unit=Unit.TABLET,
        config=AllocationConfig(),
        as_of=date(2024, 12, 1),
    )
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import date

from pharmacy_engines.break_pack import BreakPackResolver
from pharmacy_engines.tracer import traced_engine
from pharmacy_kernel.domain.dtos import (
    AllocationConfig,
    AllocationProposal,
    BatchSnapshot,
    ProposalLine,
    Unit,
)
from pharmacy_kernel.exceptions import InsufficientStockError
from pharmacy_kernel.logging_config import get_logger

logger = get_logger("engines.allocation_planner")


def order_candidates(candidates: Sequence[BatchSnapshot]) -> list[BatchSnapshot]:
    """FIFO-by-expiry order with deterministic tie-breaks."""
    return sorted(candidates, key=lambda b: b.sort_key)


class AllocationPlanner:
    """
    FIFO-by-expiry allocation planner.

    Contract:
        Pure and deterministic: identical inputs always produce an identical
        proposal (same batches, same order, same quantities).
    Non-goals:
        - Does not lock or mutate anything; the coordinator applies the
          proposal against locked rows.
    """

    @traced_engine(
        "allocation_planner", "1.0",
        fingerprint_fields=("product_id", "qty_in_tablets", "unit"),
    )
    def plan(
        self,
        *,
        product_id: str,
        qty_in_tablets: int,
        candidates: Sequence[BatchSnapshot],
        unit: Unit,
        config: AllocationConfig,
        as_of: date,
    ) -> AllocationProposal:
        """
        Allocate ``qty_in_tablets`` across ``candidates``.

        Args:
            product_id: Product being sold.
            qty_in_tablets: Request converted to tablets (strip -> qty * pack_size).
            candidates: Available, unexpired batches of the product.
            unit: Unit of the original request.
            config: Break-pack policy and near-expiry window.
            as_of: Date used for near-expiry flags.

        Returns:
            AllocationProposal whose lines sum to ``qty_in_tablets``.

        Raises:
            InsufficientStockError: If the candidates fall short.
        """
        if qty_in_tablets <= 0:
            raise ValueError(f"qty_in_tablets must be > 0, got {qty_in_tablets}")

        ordered = order_candidates(candidates)
        resolver = BreakPackResolver(config.allow_break_packs)

        logger.info(
            "allocation_planning_started",
            extra={
                "product_id": product_id,
                "qty_in_tablets": qty_in_tablets,
                "unit": unit.value,
                "candidate_count": len(ordered),
                "allow_break_packs": config.allow_break_packs,
            },
        )

        remaining = qty_in_tablets
        lines: list[ProposalLine] = []
        for batch in ordered:
            if remaining == 0:
                break
            if batch.total_tablets <= 0:
                continue

            resolution = resolver.resolve(batch, remaining, unit)
            if resolution.take <= 0:
                continue

            lines.append(
                ProposalLine(
                    batch_id=batch.batch_id,
                    batch_no=batch.batch_no,
                    expiry_date=batch.expiry_date,
                    qty_in_tablets=resolution.take,
                    strips_to_break=resolution.strips_to_break,
                    near_expiry=batch.is_near_expiry(as_of, config.near_expiry_days),
                )
            )
            remaining -= resolution.take

        if remaining > 0:
            available = qty_in_tablets - remaining
            logger.warning(
                "allocation_insufficient_stock",
                extra={
                    "product_id": product_id,
                    "requested": qty_in_tablets,
                    "available": available,
                },
            )
            raise InsufficientStockError(
                product_id=product_id,
                requested=qty_in_tablets,
                available=available,
            )

        proposal = AllocationProposal(
            product_id=product_id,
            unit=unit,
            requested_tablets=qty_in_tablets,
            lines=tuple(lines),
        )
        logger.info(
            "allocation_planned",
            extra={
                "product_id": product_id,
                "qty_in_tablets": qty_in_tablets,
                "line_count": len(lines),
                "near_expiry_lines": sum(1 for line in lines if line.near_expiry),
            },
        )
        return proposal
