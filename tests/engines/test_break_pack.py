"""
Tests for the Break-Pack Resolver.

Covers:
- resolve(): loose tablets sufficient, break needed, break disallowed,
  too few strips, strip-unit requests
- decrement_for(): mapping a tablet quantity onto strips / loose / broken
  strips for both units
"""

from datetime import date, datetime, timezone
from uuid import uuid4

import pytest

from pharmacy_engines.break_pack import BreakPackResolution, BreakPackResolver
from pharmacy_kernel.domain.dtos import BatchDecrement, BatchSnapshot, Unit


def snapshot(strip_qty: int, tablet_qty: int, pack_size: int = 10) -> BatchSnapshot:
    return BatchSnapshot(
        batch_id=uuid4(),
        product_id="PARA-500",
        batch_no="B1",
        expiry_date=date(2025, 3, 1),
        strip_qty=strip_qty,
        tablet_qty=tablet_qty,
        pack_size=pack_size,
        created_at=datetime(2024, 11, 1, tzinfo=timezone.utc),
    )


def apply(batch: BatchSnapshot, decrement: BatchDecrement) -> tuple[int, int]:
    """Resulting (strip_qty, tablet_qty) after a decrement."""
    strips = batch.strip_qty - decrement.strips_to_remove - decrement.strips_to_break
    tablets = (
        batch.tablet_qty
        + decrement.strips_to_break * batch.pack_size
        - decrement.tablets_to_remove
    )
    return strips, tablets


class TestResolveTabletUnit:

    def test_loose_tablets_cover_request(self):
        resolver = BreakPackResolver(allow_break_packs=True)
        assert resolver.resolve(snapshot(3, 8), 5, Unit.TABLET) == BreakPackResolution(take=5)

    def test_breaks_ceil_of_shortfall(self):
        """Scenario C: p=10, t=2, s=3, want 8 -> break one strip."""
        resolver = BreakPackResolver(allow_break_packs=True)

        resolution = resolver.resolve(snapshot(3, 2), 8, Unit.TABLET)

        assert resolution.take == 8
        assert resolution.strips_to_break == 1
        assert not resolution.declined

    def test_shortfall_spanning_several_strips(self):
        resolver = BreakPackResolver(allow_break_packs=True)

        resolution = resolver.resolve(snapshot(5, 2), 25, Unit.TABLET)

        assert resolution.take == 25
        assert resolution.strips_to_break == 3

    def test_declines_when_break_disallowed(self):
        resolver = BreakPackResolver(allow_break_packs=False)

        resolution = resolver.resolve(snapshot(3, 2), 8, Unit.TABLET)

        assert resolution.take == 2
        assert resolution.strips_to_break == 0
        assert resolution.declined

    def test_too_few_strips_gives_whole_batch(self):
        resolver = BreakPackResolver(allow_break_packs=True)

        resolution = resolver.resolve(snapshot(2, 4), 50, Unit.TABLET)

        assert resolution.take == 24
        assert resolution.strips_to_break == 2

    def test_zero_wanted(self):
        resolver = BreakPackResolver()
        assert resolver.resolve(snapshot(3, 2), 0, Unit.TABLET).take == 0

    def test_negative_wanted_rejected(self):
        with pytest.raises(ValueError):
            BreakPackResolver().resolve(snapshot(3, 2), -1, Unit.TABLET)


class TestResolveStripUnit:

    def test_whole_strips_then_loose(self):
        resolution = BreakPackResolver().resolve(snapshot(2, 9), 30, Unit.STRIP)

        assert resolution == BreakPackResolution(take=29, strips_to_break=0)

    def test_loose_tablets_cover_strip_request(self):
        resolution = BreakPackResolver().resolve(snapshot(0, 25), 20, Unit.STRIP)

        assert resolution == BreakPackResolution(take=20)

    def test_breaks_when_whole_strips_overshoot(self):
        """Batch packed in sixes against a ten-tablet strip request."""
        batch = snapshot(5, 0, pack_size=6)
        resolver = BreakPackResolver()

        resolution = resolver.resolve(batch, 10, Unit.STRIP)

        assert resolution == BreakPackResolution(take=10, strips_to_break=1)
        assert apply(batch, resolver.decrement_for(batch, 10, Unit.STRIP)) == (3, 2)

    def test_break_disallowed_gives_intact_stock(self):
        resolver = BreakPackResolver(allow_break_packs=False)

        resolution = resolver.resolve(snapshot(3, 4), 25, Unit.STRIP)

        assert resolution == BreakPackResolution(take=24, declined=True)

    def test_takes_whole_batch_when_short(self):
        resolution = BreakPackResolver().resolve(snapshot(1, 3), 40, Unit.STRIP)

        assert resolution.take == 13


class TestDecrementFor:

    def test_tablet_unit_loose_first(self):
        batch = snapshot(3, 8)
        decrement = BreakPackResolver().decrement_for(batch, 5, Unit.TABLET)

        assert decrement.tablets_to_remove == 5
        assert decrement.strips_to_break == 0
        assert apply(batch, decrement) == (3, 3)

    def test_tablet_unit_scenario_c_post_state(self):
        batch = snapshot(3, 2)
        decrement = BreakPackResolver().decrement_for(batch, 8, Unit.TABLET)

        assert decrement == BatchDecrement(
            batch_id=batch.batch_id,
            qty_in_tablets=8,
            strips_to_remove=0,
            tablets_to_remove=8,
            strips_to_break=1,
        )
        assert apply(batch, decrement) == (2, 4)

    def test_tablet_unit_whole_batch(self):
        batch = snapshot(2, 4)
        decrement = BreakPackResolver().decrement_for(batch, 24, Unit.TABLET)

        assert apply(batch, decrement) == (0, 0)

    def test_strip_unit_whole_strips(self):
        batch = snapshot(4, 3)
        decrement = BreakPackResolver().decrement_for(batch, 20, Unit.STRIP)

        assert decrement.strips_to_remove == 2
        assert decrement.tablets_to_remove == 0
        assert apply(batch, decrement) == (2, 3)

    def test_strip_unit_falls_back_to_loose_then_break(self):
        """Operator override of 25 tablets against a strip sale."""
        batch = snapshot(3, 3)
        decrement = BreakPackResolver().decrement_for(batch, 25, Unit.STRIP)

        assert decrement.strips_to_remove == 2
        assert decrement.tablets_to_remove == 5
        assert decrement.strips_to_break == 1
        assert apply(batch, decrement) == (0, 8)

    def test_break_disallowed_plans_as_is(self):
        """The negative result is left for the repository guard to reject."""
        batch = snapshot(3, 2)
        decrement = BreakPackResolver(allow_break_packs=False).decrement_for(
            batch, 8, Unit.TABLET,
        )

        assert decrement.strips_to_break == 0
        assert apply(batch, decrement)[1] < 0

    def test_zero_quantity(self):
        batch = snapshot(3, 2)
        decrement = BreakPackResolver().decrement_for(batch, 0, Unit.TABLET)

        assert apply(batch, decrement) == (3, 2)
