"""
Tests for BatchRepository.

Covers:
- list_candidates filtering (status, expiry) and FIFO ordering
- apply_decrement arithmetic, exhaustion and the negative-stock guard
- receive_batch, transition_status and expire_batches
- Unknown / inactive products
"""

from datetime import date
from uuid import uuid4

import pytest

from pharmacy_kernel.exceptions import (
    BatchNotFoundError,
    InvalidBatchStatusTransitionError,
    NegativeStockError,
    UnknownProductError,
)
from pharmacy_kernel.models.inventory_batch import BatchStatus
from pharmacy_kernel.services.batch_repository import BatchRepository

TODAY = date(2024, 12, 1)


@pytest.fixture
def product(create_product):
    return create_product("PARA-500", pack_size=10)


class TestListCandidates:
    """Available, unexpired batches in FIFO-by-expiry order."""

    def test_orders_by_expiry_then_receipt(self, session, clock, product, create_batch):
        create_batch(product, "LATE", date(2025, 6, 1), tablet_qty=5)
        create_batch(product, "FIRST-RECEIVED", date(2025, 1, 1), tablet_qty=5)
        create_batch(product, "SECOND-RECEIVED", date(2025, 1, 1), tablet_qty=5)

        batches = BatchRepository(session, clock).list_candidates(product, as_of=TODAY)

        assert [b.batch_no for b in batches] == ["FIRST-RECEIVED", "SECOND-RECEIVED", "LATE"]

    def test_excludes_expired_dates_and_other_statuses(
        self, session, clock, product, create_batch,
    ):
        create_batch(product, "PAST", date(2024, 11, 30), tablet_qty=5)
        create_batch(product, "TODAY", TODAY, tablet_qty=5)
        quarantined = create_batch(product, "HELD", date(2025, 2, 1), tablet_qty=5)

        repo = BatchRepository(session, clock)
        repo.transition_status(quarantined, BatchStatus.QUARANTINED)
        session.commit()

        batches = repo.list_candidates(product, as_of=TODAY)

        assert [b.batch_no for b in batches] == ["TODAY"]

    def test_other_products_not_included(self, session, clock, create_product, create_batch):
        create_product("PARA-500")
        create_product("IBU-200")
        create_batch("PARA-500", "P1", date(2025, 1, 1), tablet_qty=5)
        create_batch("IBU-200", "I1", date(2025, 1, 1), tablet_qty=5)

        batches = BatchRepository(session, clock).list_candidates("PARA-500", as_of=TODAY)

        assert [b.batch_no for b in batches] == ["P1"]

    def test_as_of_defaults_to_clock(self, session, clock, product, create_batch):
        create_batch(product, "B1", date(2024, 12, 2), tablet_qty=5)
        clock.set_time(clock.now().replace(day=3))

        assert BatchRepository(session, clock).list_candidates(product) == []


class TestApplyDecrement:

    def test_scenario_c_arithmetic(self, session, clock, product, create_batch, batch_state):
        batch_id = create_batch(product, "B1", date(2025, 3, 1), strip_qty=3, tablet_qty=2)

        BatchRepository(session, clock).apply_decrement(
            batch_id, strips_to_remove=0, tablets_to_remove=8, strips_to_break=1,
        )
        session.commit()

        assert batch_state(batch_id) == (2, 4, "available")

    def test_whole_strip_removal(self, session, clock, product, create_batch, batch_state):
        batch_id = create_batch(product, "B1", date(2025, 3, 1), strip_qty=3, tablet_qty=2)

        BatchRepository(session, clock).apply_decrement(batch_id, 2, 0)
        session.commit()

        assert batch_state(batch_id) == (1, 2, "available")

    def test_exhausted_when_total_reaches_zero(
        self, session, clock, product, create_batch, batch_state,
    ):
        batch_id = create_batch(product, "B1", date(2025, 3, 1), strip_qty=1, tablet_qty=2)

        BatchRepository(session, clock).apply_decrement(batch_id, 0, 12, 1)
        session.commit()

        assert batch_state(batch_id) == (0, 0, "exhausted")

    def test_negative_tablets_blocked(self, session, clock, product, create_batch, batch_state):
        batch_id = create_batch(product, "B1", date(2025, 3, 1), strip_qty=3, tablet_qty=2)

        with pytest.raises(NegativeStockError) as exc_info:
            BatchRepository(session, clock).apply_decrement(batch_id, 0, 8)

        assert exc_info.value.resulting_tablet_qty == -6
        assert exc_info.value.code == "NEGATIVE_STOCK"
        session.rollback()
        assert batch_state(batch_id) == (3, 2, "available")

    def test_negative_strips_blocked(self, session, clock, product, create_batch):
        batch_id = create_batch(product, "B1", date(2025, 3, 1), strip_qty=1, tablet_qty=0)

        with pytest.raises(NegativeStockError) as exc_info:
            BatchRepository(session, clock).apply_decrement(batch_id, 1, 0, strips_to_break=1)

        assert exc_info.value.resulting_strip_qty == -1

    def test_negative_components_rejected(self, session, clock, product, create_batch):
        batch_id = create_batch(product, "B1", date(2025, 3, 1), tablet_qty=5)

        with pytest.raises(ValueError):
            BatchRepository(session, clock).apply_decrement(batch_id, 0, -1)

    def test_unknown_batch(self, session, clock):
        with pytest.raises(BatchNotFoundError):
            BatchRepository(session, clock).apply_decrement(uuid4(), 0, 1)


class TestProducts:

    def test_unknown_product(self, session, clock):
        with pytest.raises(UnknownProductError) as exc_info:
            BatchRepository(session, clock).get_product("NOPE")
        assert exc_info.value.code == "UNKNOWN_PRODUCT"

    def test_inactive_product_is_unknown(self, session, clock, create_product):
        create_product("OLD-1", is_active=False)
        with pytest.raises(UnknownProductError):
            BatchRepository(session, clock).get_product("OLD-1")

    def test_lock_product(self, session, clock, product):
        locked = BatchRepository(session, clock).lock_product(product, lock_timeout=1.0)
        assert locked.pack_size == 10


class TestBatchLifecycle:

    def test_receive_defaults_pack_size_from_product(self, session, clock, product):
        batch = BatchRepository(session, clock).receive_batch(
            product, "B1", date(2025, 3, 1), strip_qty=4,
        )
        assert batch.pack_size == 10
        assert batch.total_tablets == 40
        assert batch.status == BatchStatus.AVAILABLE
        assert batch.created_at == clock.now()

    def test_receive_rejects_negative_quantities(self, session, clock, product):
        with pytest.raises(ValueError):
            BatchRepository(session, clock).receive_batch(
                product, "B1", date(2025, 3, 1), strip_qty=-1,
            )

    def test_receive_for_unknown_product(self, session, clock):
        with pytest.raises(UnknownProductError):
            BatchRepository(session, clock).receive_batch(
                "NOPE", "B1", date(2025, 3, 1), strip_qty=1,
            )

    def test_quarantine_and_release(self, session, clock, product, create_batch, batch_state):
        batch_id = create_batch(product, "B1", date(2025, 3, 1), tablet_qty=5)
        repo = BatchRepository(session, clock)

        repo.transition_status(batch_id, BatchStatus.QUARANTINED)
        repo.transition_status(batch_id, BatchStatus.AVAILABLE)
        session.commit()

        assert batch_state(batch_id)[2] == "available"

    def test_terminal_status_cannot_change(self, session, clock, product, create_batch):
        batch_id = create_batch(product, "B1", date(2025, 3, 1), tablet_qty=5)
        repo = BatchRepository(session, clock)
        repo.transition_status(batch_id, BatchStatus.EXPIRED)

        with pytest.raises(InvalidBatchStatusTransitionError) as exc_info:
            repo.transition_status(batch_id, BatchStatus.AVAILABLE)

        assert exc_info.value.from_status == "expired"
        assert exc_info.value.to_status == "available"

    def test_expire_batches(self, session, clock, product, create_batch, batch_state):
        old = create_batch(product, "OLD", date(2024, 11, 30), tablet_qty=5)
        current = create_batch(product, "CUR", date(2025, 3, 1), tablet_qty=5)

        expired = BatchRepository(session, clock).expire_batches(as_of=TODAY)
        session.commit()

        assert [b.batch_no for b in expired] == ["OLD"]
        assert batch_state(old)[2] == "expired"
        assert batch_state(current)[2] == "available"
