"""
pharmacy_services.allocation_coordinator -- Allocation transaction state machine.

Responsibility:
    Drives one sale line from request to committed batch decrements:
    validate input, take the per-product critical section, lock candidate
    batches, plan FIFO-by-expiry, then either accept the proposal or apply an
    operator override, and finally commit decrements and audit rows in one
    database transaction.

Architecture position:
    Services -- stateful orchestration over engines + kernel.  The only
    place that opens sessions and commits on the allocation path.

State machine:

    IDLE -> LOCKED -> PROPOSED -> COMMITTED
                          |
                          +-> OVERRIDDEN -> VALIDATED -> COMMITTED
                                  ^   |
                                  +---+  (resubmission after a failed validation)

    Every non-terminal state may move to ROLLED_BACK.
    COMMITTED and ROLLED_BACK are terminal.

Invariants enforced:
    - Input is validated before any lock is taken.
    - At most one open transaction per product_id (ProductLockRegistry plus
      FOR UPDATE on the product and batch rows).
    - Decrements and audit rows commit together or not at all.
    - No batch ever ends with a negative strip_qty or tablet_qty.

Failure modes:
    - AllocationInputError / UnknownProductError: rejected before locking.
    - AllocationBusyError: lock not granted within the timeout (retryable).
    - InsufficientStockError: candidates cannot cover the request
      (transaction ROLLED_BACK, nothing mutated).
    - AllocationValidationError: override rejected; transaction stays
      OVERRIDDEN and open for resubmission.
    - NegativeStockError: an override would drive a batch negative
      (transaction ROLLED_BACK, nothing applied).
    - InvalidAllocationTransitionError: method called in the wrong state.

Audit relevance:
    allocation_proposed, allocation_committed and allocation_rolled_back are
    logged with the transaction id, product and sales line bound through
    allocation_context.  A rollback caused by an error carries the error.

Usage:
    coordinator = AllocationCoordinator(get_session_factory(), clock=clock)

    outcome = coordinator.allocate(AllocationRequest("PARA-500", 10), config)

    with coordinator.begin(request, config) as txn:
        for row in txn.proposal_view():
            ...
        txn.override([OverrideLine(batch_id, 10)])
"""

from __future__ import annotations

import time
from collections.abc import Callable, Sequence
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy.orm import Session, sessionmaker

from pharmacy_engines.allocation_planner import AllocationPlanner
from pharmacy_config.schema import Settings
from pharmacy_engines.break_pack import BreakPackResolver
from pharmacy_kernel.domain.clock import Clock, SystemClock
from pharmacy_kernel.domain.dtos import (
    AllocationConfig,
    AllocationOutcome,
    AllocationProposal,
    AllocationRequest,
    BatchDecrement,
    BatchSnapshot,
    OverrideLine,
    ProposalDisplayLine,
    SalesLineSnapshot,
    Unit,
    to_tablets,
)
from pharmacy_kernel.exceptions import (
    AllocationBusyError,
    AllocationInputError,
    AllocationValidationError,
    InvalidAllocationTransitionError,
)
from pharmacy_kernel.logging_config import allocation_context, get_logger
from pharmacy_kernel.models.sales_line import AllocatedBy
from pharmacy_kernel.services.audit_writer import AuditWriter
from pharmacy_kernel.services.batch_repository import BatchRepository
from pharmacy_kernel.services.product_lock import ProductLockRegistry

logger = get_logger("services.allocation_coordinator")


class AllocationState(str, Enum):
    """Lifecycle state of one allocation transaction."""

    IDLE = "idle"
    LOCKED = "locked"
    PROPOSED = "proposed"
    OVERRIDDEN = "overridden"
    VALIDATED = "validated"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


VALID_TRANSITIONS: dict[AllocationState, frozenset[AllocationState]] = {
    AllocationState.IDLE: frozenset({
        AllocationState.LOCKED, AllocationState.ROLLED_BACK,
    }),
    AllocationState.LOCKED: frozenset({
        AllocationState.PROPOSED, AllocationState.ROLLED_BACK,
    }),
    AllocationState.PROPOSED: frozenset({
        AllocationState.COMMITTED,
        AllocationState.OVERRIDDEN,
        AllocationState.ROLLED_BACK,
    }),
    AllocationState.OVERRIDDEN: frozenset({
        AllocationState.OVERRIDDEN,
        AllocationState.VALIDATED,
        AllocationState.ROLLED_BACK,
    }),
    AllocationState.VALIDATED: frozenset({
        AllocationState.COMMITTED, AllocationState.ROLLED_BACK,
    }),
    # Terminal states
    AllocationState.COMMITTED: frozenset(),
    AllocationState.ROLLED_BACK: frozenset(),
}

TERMINAL_STATES = frozenset({AllocationState.COMMITTED, AllocationState.ROLLED_BACK})


class AllocationTransaction:
    """
    One open allocation for one sale line.

    Contract:
        Created by ``AllocationCoordinator.begin`` in PROPOSED state, holding
        the product lock and an open session with the candidate rows
        locked.  Must end with ``accept``, a successful ``override`` or
        ``cancel``; leaving a ``with`` block while still open cancels it.

    Non-goals:
        - Not thread-safe; one caller drives a transaction.
    """

    def __init__(
        self,
        *,
        coordinator: AllocationCoordinator,
        session: Session,
        request: AllocationRequest,
        config: AllocationConfig,
        pack_size: int,
        sales_line_id: UUID,
        actor_id: UUID | None,
        price: Decimal | None,
    ):
        self.transaction_id: UUID = uuid4()
        self.request = request
        self.config = config
        self.pack_size = pack_size
        self.qty_in_tablets = to_tablets(request.qty, request.unit, pack_size)
        self.sales_line_id = sales_line_id
        self.actor_id = actor_id
        self.price = price
        self.state = AllocationState.IDLE
        self.history: list[AllocationState] = [AllocationState.IDLE]
        self.proposal: AllocationProposal | None = None
        self.outcome: AllocationOutcome | None = None

        self._coordinator = coordinator
        self._session: Session | None = session
        self._repository = BatchRepository(session, coordinator.clock)
        self._resolver = BreakPackResolver(config.allow_break_packs)
        self._snapshots: dict[UUID, BatchSnapshot] = {}
        self._lock_held = False

    # -----------------------------------------------------------------
    # Properties
    # -----------------------------------------------------------------

    @property
    def product_id(self) -> str:
        return self.request.product_id

    @property
    def is_open(self) -> bool:
        return self.state not in TERMINAL_STATES

    @property
    def locked_batches(self) -> tuple[BatchSnapshot, ...]:
        """Candidate batches as read under lock, FIFO order."""
        return tuple(sorted(self._snapshots.values(), key=lambda b: b.sort_key))

    # -----------------------------------------------------------------
    # Operator-facing operations
    # -----------------------------------------------------------------

    def proposal_view(self) -> list[ProposalDisplayLine]:
        """Rows for the batch picker: batch_no, expiry, qty, near-expiry flag."""
        if self.proposal is None:
            return []
        return [
            ProposalDisplayLine(
                batch_no=line.batch_no,
                expiry_date=line.expiry_date,
                qty_allocated=line.qty_in_tablets,
                near_expiry=line.near_expiry,
            )
            for line in self.proposal.lines
        ]

    def accept(self) -> AllocationOutcome:
        """
        Commit the system proposal as-is.

        Audit rows are written with allocated_by=system, auto_allocated=True.
        """
        with self._log_context():
            self._require(AllocationState.COMMITTED)
            decrements = [
                self._resolver.decrement_for(
                    self._snapshots[line.batch_id],
                    line.qty_in_tablets,
                    self.request.unit,
                )
                for line in self.proposal.lines
            ]
            return self._commit(decrements, AllocatedBy.SYSTEM, auto_allocated=True)

    def override(self, lines: Sequence[OverrideLine]) -> AllocationOutcome:
        """
        Replace the proposal with an operator-chosen split and commit it.

        Validation runs against the batches locked by this transaction:
            - every batch is one of the locked candidates;
            - each batch's quantity (entries for the same batch are summed)
              is between 0 and the batch total;
            - the quantities add up to the requested tablets.

        Decrements and audit rows follow the order the batches were first
        entered, not FIFO order.

        Raises:
            AllocationValidationError: Validation failed.  The transaction
                stays OVERRIDDEN and may be resubmitted or cancelled.
            NegativeStockError: Applying a decrement would go negative.  The
                transaction is ROLLED_BACK.
        """
        with self._log_context():
            self._transition(AllocationState.OVERRIDDEN)

            per_batch, problems = self._validate_override(lines)
            if problems:
                logger.warning(
                    "allocation_override_rejected",
                    extra={
                        "problem_count": len(problems),
                        "problems": problems,
                    },
                )
                raise AllocationValidationError(
                    transaction_id=str(self.transaction_id),
                    problems=problems,
                )

            self._transition(AllocationState.VALIDATED)
            decrements = [
                self._resolver.decrement_for(
                    self._snapshots[batch_id],
                    per_batch[batch_id],
                    self.request.unit,
                )
                for batch_id in per_batch
                if per_batch[batch_id] > 0
            ]
            return self._commit(decrements, AllocatedBy.OPERATOR, auto_allocated=False)

    def cancel(self) -> None:
        """Abandon the transaction; releases every lock.  Nothing is applied."""
        with self._log_context():
            self._require(AllocationState.ROLLED_BACK)
            self._rollback("cancelled")

    def __enter__(self) -> AllocationTransaction:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self.is_open:
            with self._log_context():
                self._rollback("context_exit" if exc_type is None else "error", exc)

    # -----------------------------------------------------------------
    # Driven by the coordinator
    # -----------------------------------------------------------------

    def _open(self, timeout_seconds: float) -> None:
        """Take the product lock, lock candidates and plan."""
        registry = self._coordinator.lock_registry
        try:
            registry.acquire(self.product_id, timeout_seconds)
        except AllocationBusyError as exc:
            self._rollback("busy", exc)
            raise
        self._lock_held = True

        try:
            self._transition(AllocationState.LOCKED)
            as_of = self._coordinator.clock.today()
            self._repository.lock_product(self.product_id, timeout_seconds)
            batches = self._repository.list_candidates(
                self.product_id, as_of=as_of, lock_timeout=timeout_seconds,
            )
            self._snapshots = {b.id: BatchSnapshot.from_model(b) for b in batches}

            self.proposal = self._coordinator.planner.plan(
                product_id=self.product_id,
                qty_in_tablets=self.qty_in_tablets,
                candidates=list(self._snapshots.values()),
                unit=self.request.unit,
                config=self.config,
                as_of=as_of,
            )
            self._transition(AllocationState.PROPOSED)
        except Exception as exc:
            self._rollback(getattr(exc, "code", type(exc).__name__), exc)
            raise

        logger.info(
            "allocation_proposed",
            extra={
                "qty_in_tablets": self.qty_in_tablets,
                "unit": self.request.unit.value,
                "proposal": [
                    {"batch_no": line.batch_no, "qty": line.qty_in_tablets}
                    for line in self.proposal.lines
                ],
            },
        )

    # -----------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------

    def _validate_override(
        self, lines: Sequence[OverrideLine],
    ) -> tuple[dict[UUID, int], list[dict[str, Any]]]:
        problems: list[dict[str, Any]] = []
        per_batch: dict[UUID, int] = {}

        for index, line in enumerate(lines):
            qty = line.qty
            if isinstance(qty, bool) or not isinstance(qty, int):
                problems.append({
                    "index": index,
                    "batch_id": str(line.batch_id),
                    "reason": "quantity_not_integer",
                    "qty": qty,
                })
                continue
            if qty < 0:
                problems.append({
                    "index": index,
                    "batch_id": str(line.batch_id),
                    "reason": "negative_quantity",
                    "qty": qty,
                })
                continue
            if line.batch_id not in self._snapshots:
                problems.append({
                    "index": index,
                    "batch_id": str(line.batch_id),
                    "reason": "batch_not_locked",
                    "qty": qty,
                })
                continue
            per_batch[line.batch_id] = per_batch.get(line.batch_id, 0) + qty

        for batch_id, qty in per_batch.items():
            available = self._snapshots[batch_id].total_tablets
            if qty > available:
                problems.append({
                    "batch_id": str(batch_id),
                    "reason": "exceeds_batch_total",
                    "qty": qty,
                    "available": available,
                })

        total = sum(per_batch.values())
        if not problems and total != self.qty_in_tablets:
            problems.append({
                "reason": "total_mismatch",
                "expected": self.qty_in_tablets,
                "actual": total,
            })

        return per_batch, problems

    def _commit(
        self,
        decrements: Sequence[BatchDecrement],
        allocated_by: AllocatedBy,
        auto_allocated: bool,
    ) -> AllocationOutcome:
        self._require(AllocationState.COMMITTED)
        session = self._session

        snapshot = SalesLineSnapshot(
            sales_line_id=self.sales_line_id,
            product_id=self.product_id,
            qty=self.request.qty,
            unit=self.request.unit,
            pack_size=self.pack_size,
            qty_in_tablets=self.qty_in_tablets,
            price=self.price,
            actor_id=self.actor_id,
        )

        try:
            for decrement in decrements:
                if decrement.qty_in_tablets == 0:
                    continue
                self._repository.apply_decrement(
                    decrement.batch_id,
                    decrement.strips_to_remove,
                    decrement.tablets_to_remove,
                    decrement.strips_to_break,
                )
            AuditWriter(session, self._coordinator.clock).record_commit(
                snapshot, decrements, allocated_by, auto_allocated,
            )
            session.commit()
        except Exception as exc:
            self._rollback(getattr(exc, "code", type(exc).__name__), exc)
            raise

        self._transition(AllocationState.COMMITTED)
        self._release()

        self.outcome = AllocationOutcome(
            transaction_id=self.transaction_id,
            sales_line_id=self.sales_line_id,
            product_id=self.product_id,
            allocated_by=allocated_by.value,
            decrements=tuple(d for d in decrements if d.qty_in_tablets > 0),
        )
        logger.info(
            "allocation_committed",
            extra={
                "allocated_by": allocated_by.value,
                "auto_allocated": auto_allocated,
                "qty_in_tablets": self.qty_in_tablets,
                "batch_count": len(self.outcome.decrements),
            },
        )
        return self.outcome

    def _rollback(self, reason: str, exc: BaseException | None = None) -> None:
        if self._session is not None:
            self._session.rollback()
        self._release()
        self.proposal = None
        self._force_state(AllocationState.ROLLED_BACK)
        logger.info("allocation_rolled_back", extra={"reason": reason}, exc_info=exc)

    def _release(self) -> None:
        if self._session is not None:
            self._session.close()
            self._session = None
        if self._lock_held:
            self._coordinator.lock_registry.release(self.product_id)
            self._lock_held = False

    def _require(self, target: AllocationState) -> None:
        if target not in VALID_TRANSITIONS[self.state]:
            raise InvalidAllocationTransitionError(
                transaction_id=str(self.transaction_id),
                from_state=self.state.value,
                to_state=target.value,
            )

    def _transition(self, target: AllocationState) -> None:
        self._require(target)
        self._force_state(target)

    def _force_state(self, target: AllocationState) -> None:
        self.history.append(target)
        self.state = target

    def _log_context(self):
        return allocation_context(
            product_id=self.product_id,
            transaction_id=str(self.transaction_id),
            sales_line_id=str(self.sales_line_id),
            actor_id=str(self.actor_id) if self.actor_id else None,
        )


class AllocationCoordinator:
    """
    Opens allocation transactions.

    Contract:
        Owns the session factory, the per-product lock registry, the lock
        timeout and the busy-retry policy used by ``allocate_with_retry``.  Each ``begin`` opens its own session, so a
        coordinator may be shared by threads.

    Guarantees:
        - ``begin`` returns a PROPOSED transaction or raises; on raise no
          lock is left held and no session is left open.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session] | Callable[[], Session],
        lock_registry: ProductLockRegistry | None = None,
        clock: Clock | None = None,
        lock_timeout_seconds: float = 5.0,
        planner: AllocationPlanner | None = None,
        retry_attempts: int = 3,
        retry_backoff_seconds: float = 0.05,
    ):
        if lock_timeout_seconds < 0:
            raise ValueError(
                f"lock_timeout_seconds must be >= 0, got {lock_timeout_seconds}"
            )
        if retry_attempts < 1:
            raise ValueError(f"retry_attempts must be >= 1, got {retry_attempts}")
        if retry_backoff_seconds < 0:
            raise ValueError(
                f"retry_backoff_seconds must be >= 0, got {retry_backoff_seconds}"
            )
        self.session_factory = session_factory
        self.lock_registry = lock_registry or ProductLockRegistry()
        self.clock = clock or SystemClock()
        self.lock_timeout_seconds = lock_timeout_seconds
        self.planner = planner or AllocationPlanner()
        self.retry_attempts = retry_attempts
        self.retry_backoff_seconds = retry_backoff_seconds

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_factory: sessionmaker[Session] | Callable[[], Session],
        *,
        lock_registry: ProductLockRegistry | None = None,
        clock: Clock | None = None,
    ) -> AllocationCoordinator:
        """Coordinator whose lock timeout and retry policy come from ``settings.locking``."""
        locking = settings.locking
        coordinator = cls(
            session_factory,
            lock_registry=lock_registry,
            clock=clock,
            lock_timeout_seconds=locking.timeout_seconds,
            retry_attempts=locking.retry_attempts,
            retry_backoff_seconds=locking.retry_backoff_seconds,
        )
        logger.info(
            "allocation_coordinator_configured",
            extra={
                "config_id": settings.config_id,
                "config_version": settings.version,
                "lock_timeout_seconds": locking.timeout_seconds,
                "retry_attempts": locking.retry_attempts,
            },
        )
        return coordinator

    def begin(
        self,
        request: AllocationRequest,
        config: AllocationConfig,
        *,
        sales_line_id: UUID | None = None,
        actor_id: UUID | None = None,
        price: Decimal | None = None,
    ) -> AllocationTransaction:
        """
        Validate, lock and plan.

        Raises:
            AllocationInputError: qty is not a positive integer or the unit
                is unknown.
            UnknownProductError: product missing or inactive.
            AllocationBusyError: lock not granted in time.
            InsufficientStockError: not enough stock.
        """
        request = self._validate_request(request)

        session = self.session_factory()
        try:
            product = BatchRepository(session, self.clock).get_product(request.product_id)
            pack_size = product.pack_size
        except Exception:
            session.close()
            raise

        txn = AllocationTransaction(
            coordinator=self,
            session=session,
            request=request,
            config=config,
            pack_size=pack_size,
            sales_line_id=sales_line_id or uuid4(),
            actor_id=actor_id,
            price=price,
        )
        with txn._log_context():
            logger.info(
                "allocation_started",
                extra={"qty": request.qty, "unit": request.unit.value},
            )
            txn._open(self.lock_timeout_seconds)
        return txn

    def allocate(
        self,
        request: AllocationRequest,
        config: AllocationConfig,
        **kwargs: Any,
    ) -> AllocationOutcome:
        """Begin and accept the system proposal in one call."""
        txn = self.begin(request, config, **kwargs)
        return txn.accept()

    @staticmethod
    def _validate_request(request: AllocationRequest) -> AllocationRequest:
        if not isinstance(request.product_id, str) or not request.product_id:
            raise AllocationInputError("product_id", request.product_id, "must be a non-empty string")
        qty = request.qty
        if isinstance(qty, bool) or not isinstance(qty, int):
            raise AllocationInputError("qty", qty, "must be an integer")
        if qty <= 0:
            raise AllocationInputError("qty", qty, "must be greater than zero")
        try:
            unit = Unit(request.unit)
        except ValueError:
            raise AllocationInputError("unit", request.unit, "must be 'strip' or 'tablet'") from None
        if unit is not request.unit:
            request = AllocationRequest(request.product_id, qty, unit)
        return request


def allocate_with_retry(
    coordinator: AllocationCoordinator,
    request: AllocationRequest,
    config: AllocationConfig,
    *,
    attempts: int | None = None,
    backoff_seconds: float | None = None,
    sleep: Callable[[float], None] = time.sleep,
    **kwargs: Any,
) -> AllocationOutcome:
    """
    ``coordinator.allocate`` retried on AllocationBusyError only.

    Waits ``backoff_seconds * 2**n`` before retry n+1.  Any other error
    propagates on the first occurrence.  ``attempts`` and ``backoff_seconds``
    default to the coordinator's retry policy.
    """
    if attempts is None:
        attempts = coordinator.retry_attempts
    if backoff_seconds is None:
        backoff_seconds = coordinator.retry_backoff_seconds
    if attempts < 1:
        raise ValueError(f"attempts must be >= 1, got {attempts}")

    for attempt in range(1, attempts + 1):
        try:
            return coordinator.allocate(request, config, **kwargs)
        except AllocationBusyError:
            if attempt == attempts:
                logger.warning(
                    "allocation_retry_exhausted",
                    extra={"product_id": request.product_id, "attempts": attempts},
                )
                raise
            delay = backoff_seconds * (2 ** (attempt - 1))
            logger.info(
                "allocation_retry_busy",
                extra={
                    "product_id": request.product_id,
                    "attempt": attempt,
                    "delay_seconds": delay,
                },
            )
            sleep(delay)
    raise AssertionError("unreachable")
