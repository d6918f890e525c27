"""
Hypothesis-based fuzzing of the pure allocation engines.

Properties checked over random batch sets and requests:
- With break packs allowed, the planner succeeds exactly when the batch
  totals cover the request, for strip and tablet requests alike
- With break packs off, a tablet request succeeds exactly when loose
  tablets cover it
- A failure always reports less available than requested
- A successful proposal allocates exactly the requested tablets
- No line exceeds its batch, and no strip is opened with break packs off
- Lines follow FIFO-by-expiry order and candidate order does not matter
- Decrements derived from a proposal never drive a batch negative
"""

from datetime import date, datetime, timedelta, timezone

from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st
from hypothesis.strategies import composite

from pharmacy_engines.allocation_planner import AllocationPlanner
from pharmacy_engines.break_pack import BreakPackResolver
from pharmacy_kernel.domain.dtos import AllocationConfig, BatchSnapshot, Unit
from pharmacy_kernel.exceptions import InsufficientStockError

AS_OF = date(2024, 12, 1)
BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)

FUZZ_SETTINGS = settings(
    max_examples=200,
    deadline=None,
    suppress_health_check=[HealthCheck.too_slow],
)


@composite
def batch_sets(draw):
    """1-6 batches of one product; pack sizes sometimes differ per batch."""
    product_pack = draw(st.integers(min_value=1, max_value=20))
    mixed_packs = draw(st.booleans())
    count = draw(st.integers(min_value=1, max_value=6))
    ids = draw(st.lists(st.uuids(), min_size=count, max_size=count, unique=True))
    batches = []
    for i, batch_id in enumerate(ids):
        pack_size = product_pack
        if mixed_packs and i > 0:
            pack_size = draw(st.integers(min_value=1, max_value=20))
        batches.append(
            BatchSnapshot(
                batch_id=batch_id,
                product_id="FUZZ",
                batch_no=f"B{i}",
                expiry_date=AS_OF + timedelta(days=draw(st.integers(0, 400))),
                strip_qty=draw(st.integers(min_value=0, max_value=10)),
                tablet_qty=draw(st.integers(min_value=0, max_value=30)),
                pack_size=pack_size,
                created_at=BASE_TIME + timedelta(seconds=i),
            )
        )
    return batches


def _qty_in_tablets(qty: int, unit: Unit, batches: list[BatchSnapshot]) -> int:
    """The first batch carries the product's pack size."""
    if unit == Unit.STRIP:
        return qty * batches[0].pack_size
    return qty


def _plan(batches, qty_in_tablets, unit, allow_break_packs):
    return AllocationPlanner().plan(
        product_id="FUZZ",
        qty_in_tablets=qty_in_tablets,
        candidates=batches,
        unit=unit,
        config=AllocationConfig(near_expiry_days=30, allow_break_packs=allow_break_packs),
        as_of=AS_OF,
    )


class TestPlannerProperties:

    @given(
        batches=batch_sets(),
        qty=st.integers(min_value=1, max_value=300),
        unit=st.sampled_from(list(Unit)),
    )
    @FUZZ_SETTINGS
    def test_succeeds_whenever_batch_totals_suffice(self, batches, qty, unit):
        qty_in_tablets = _qty_in_tablets(qty, unit, batches)
        total = sum(b.total_tablets for b in batches)

        try:
            proposal = _plan(batches, qty_in_tablets, unit, allow_break_packs=True)
        except InsufficientStockError as exc:
            assert qty_in_tablets > total
            assert exc.requested == qty_in_tablets
            assert exc.available == total
            return

        assert qty_in_tablets <= total
        assert proposal.total_allocated == qty_in_tablets
        assert proposal.is_complete

    @given(
        batches=batch_sets(),
        qty=st.integers(min_value=1, max_value=300),
    )
    @FUZZ_SETTINGS
    def test_tablet_request_without_breaking_uses_loose_stock(self, batches, qty):
        loose = sum(b.tablet_qty for b in batches)

        try:
            proposal = _plan(batches, qty, Unit.TABLET, allow_break_packs=False)
        except InsufficientStockError as exc:
            assert qty > loose
            assert exc.available == loose
            return

        assert qty <= loose
        assert proposal.total_allocated == qty

    @given(
        batches=batch_sets(),
        qty=st.integers(min_value=1, max_value=300),
        unit=st.sampled_from(list(Unit)),
        allow_break_packs=st.booleans(),
    )
    @FUZZ_SETTINGS
    def test_failure_reports_shortfall(self, batches, qty, unit, allow_break_packs):
        qty_in_tablets = _qty_in_tablets(qty, unit, batches)
        try:
            proposal = _plan(batches, qty_in_tablets, unit, allow_break_packs)
        except InsufficientStockError as exc:
            assert 0 <= exc.available < exc.requested
            return

        assert proposal.total_allocated == qty_in_tablets

    @given(
        batches=batch_sets(),
        qty=st.integers(min_value=1, max_value=300),
        unit=st.sampled_from(list(Unit)),
        allow_break_packs=st.booleans(),
    )
    @FUZZ_SETTINGS
    def test_lines_bounded_by_batch(self, batches, qty, unit, allow_break_packs):
        qty_in_tablets = _qty_in_tablets(qty, unit, batches)
        try:
            proposal = _plan(batches, qty_in_tablets, unit, allow_break_packs)
        except InsufficientStockError:
            return

        by_id = {b.batch_id: b for b in batches}
        for line in proposal.lines:
            batch = by_id[line.batch_id]
            assert 0 < line.qty_in_tablets <= batch.total_tablets
            if not allow_break_packs:
                assert line.strips_to_break == 0
                if unit == Unit.TABLET:
                    assert line.qty_in_tablets <= batch.tablet_qty

    @given(
        batches=batch_sets(),
        qty=st.integers(min_value=1, max_value=300),
        unit=st.sampled_from(list(Unit)),
        allow_break_packs=st.booleans(),
        shuffle_seed=st.randoms(use_true_random=False),
    )
    @FUZZ_SETTINGS
    def test_fifo_order_independent_of_input_order(
        self, batches, qty, unit, allow_break_packs, shuffle_seed,
    ):
        qty_in_tablets = _qty_in_tablets(qty, unit, batches)
        shuffled = list(batches)
        shuffle_seed.shuffle(shuffled)

        try:
            first = _plan(batches, qty_in_tablets, unit, allow_break_packs)
        except InsufficientStockError:
            return
        second = _plan(shuffled, qty_in_tablets, unit, allow_break_packs)

        assert first == second
        expiries = [line.expiry_date for line in first.lines]
        assert expiries == sorted(expiries)


class TestDecrementProperties:

    @given(
        batches=batch_sets(),
        qty=st.integers(min_value=1, max_value=300),
        unit=st.sampled_from(list(Unit)),
        allow_break_packs=st.booleans(),
    )
    @FUZZ_SETTINGS
    def test_planned_decrements_never_go_negative(
        self, batches, qty, unit, allow_break_packs,
    ):
        qty_in_tablets = _qty_in_tablets(qty, unit, batches)
        try:
            proposal = _plan(batches, qty_in_tablets, unit, allow_break_packs)
        except InsufficientStockError:
            return

        resolver = BreakPackResolver(allow_break_packs)
        by_id = {b.batch_id: b for b in batches}
        for line in proposal.lines:
            batch = by_id[line.batch_id]
            dec = resolver.decrement_for(batch, line.qty_in_tablets, unit)

            strips_after = batch.strip_qty - dec.strips_to_remove - dec.strips_to_break
            tablets_after = (
                batch.tablet_qty
                + dec.strips_to_break * batch.pack_size
                - dec.tablets_to_remove
            )
            assert strips_after >= 0
            assert tablets_after >= 0
            assert (
                strips_after * batch.pack_size + tablets_after
                == batch.total_tablets - line.qty_in_tablets
            )
