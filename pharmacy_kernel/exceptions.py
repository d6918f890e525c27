"""
Typed Exception Hierarchy for the Pharmacy Allocation Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Allocation outcomes must be handled precisely. A point-of-sale caller has to
tell a business outcome ("not enough stock") apart from a transient condition
("another till is selling this product, try again") and from an invariant
breach ("this would drive a batch negative"). Parsing message strings for
that is fragile, so every error:

  1. Has a TYPED exception class (catch by type, not message)
  2. Has a CODE attribute (machine-readable, API-safe)
  3. Carries structured DATA (not just a message string)

Example:
    try:
        txn = coordinator.begin(request, config)
    except InsufficientStockError as e:
        show_operator(f"Only {e.available} tablets available")
    except AllocationBusyError:
        retry_later()

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    PharmacyKernelError (base)
    |
    +-- AllocationInputError
    |   +-- UnknownProductError
    |
    +-- StockError
    |   +-- InsufficientStockError
    |   +-- NegativeStockError
    |
    +-- ConcurrencyError
    |   +-- AllocationBusyError
    |
    +-- AllocationStateError
    |   +-- AllocationValidationError
    |   +-- InvalidAllocationTransitionError
    |
    +-- BatchError
    |   +-- BatchNotFoundError
    |   +-- InvalidBatchStatusTransitionError
    |
    +-- ImmutabilityError
        +-- ImmutabilityViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category     | Code                            | When Raised
-------------|---------------------------------|------------------------------------
Input        | INVALID_ALLOCATION_INPUT        | qty <= 0, bad unit, bad override shape
             | UNKNOWN_PRODUCT                 | product_id not in catalog / inactive
-------------|---------------------------------|------------------------------------
Stock        | INSUFFICIENT_STOCK              | Candidates cannot cover the request
             | NEGATIVE_STOCK                  | A decrement would go below zero
-------------|---------------------------------|------------------------------------
Concurrency  | ALLOCATION_BUSY                 | Product lock not acquired in time
-------------|---------------------------------|------------------------------------
State        | ALLOCATION_VALIDATION_FAILED    | Operator override rejected
             | INVALID_ALLOCATION_TRANSITION   | Operation not legal in current state
-------------|---------------------------------|------------------------------------
Batch        | BATCH_NOT_FOUND                 | batch_id does not exist
             | INVALID_BATCH_STATUS_TRANSITION | e.g. exhausted -> available
-------------|---------------------------------|------------------------------------
Immutability | IMMUTABILITY_VIOLATION          | Audit row updated/deleted, batch deleted

===============================================================================
RETRY SEMANTICS
===============================================================================

``retryable`` is a class attribute. Only AllocationBusyError is retryable:
the caller may back off and resubmit the SAME input. InsufficientStockError
and NegativeStockError are terminal -- the input must change.
AllocationValidationError is recoverable IN PLACE: the transaction stays
open and a corrected override may be submitted.
"""


class PharmacyKernelError(Exception):
    """
    Base exception for all pharmacy kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "PHARMACY_KERNEL_ERROR"
    retryable: bool = False


# Input exceptions


class AllocationInputError(PharmacyKernelError):
    """Request rejected before any lock was taken."""

    code: str = "INVALID_ALLOCATION_INPUT"

    def __init__(self, field: str, value: object, reason: str):
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid {field}={value!r}: {reason}")


class UnknownProductError(AllocationInputError):
    """Product is not in the catalog or is inactive."""

    code: str = "UNKNOWN_PRODUCT"

    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__("product_id", product_id, "unknown or inactive product")


# Stock exceptions


class StockError(PharmacyKernelError):
    """Base exception for stock-level errors."""

    code: str = "STOCK_ERROR"


class InsufficientStockError(StockError):
    """
    Eligible batches cannot cover the requested quantity.

    A business outcome, not a defect. Guarantees no partial allocation was
    made and no batch was mutated.
    """

    code: str = "INSUFFICIENT_STOCK"

    def __init__(self, product_id: str, requested: int, available: int):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for {product_id}: "
            f"requested {requested} tablets, available {available}"
        )


class NegativeStockError(StockError):
    """
    A decrement would leave strip_qty or tablet_qty below zero.

    Indicates either a planning defect or a race that escaped the locking
    discipline. The whole transaction is aborted.
    """

    code: str = "NEGATIVE_STOCK"

    def __init__(
        self,
        batch_id: str,
        strip_qty: int,
        tablet_qty: int,
        resulting_strip_qty: int,
        resulting_tablet_qty: int,
    ):
        self.batch_id = batch_id
        self.strip_qty = strip_qty
        self.tablet_qty = tablet_qty
        self.resulting_strip_qty = resulting_strip_qty
        self.resulting_tablet_qty = resulting_tablet_qty
        super().__init__(
            f"Decrement on batch {batch_id} would leave "
            f"strip_qty={resulting_strip_qty}, tablet_qty={resulting_tablet_qty}"
        )


# Concurrency exceptions


class ConcurrencyError(PharmacyKernelError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class AllocationBusyError(ConcurrencyError):
    """The per-product lock could not be acquired within the timeout."""

    code: str = "ALLOCATION_BUSY"
    retryable: bool = True

    def __init__(self, product_id: str, timeout_seconds: float):
        self.product_id = product_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Product {product_id} is locked by another allocation "
            f"(waited {timeout_seconds}s)"
        )


# Transaction state exceptions


class AllocationStateError(PharmacyKernelError):
    """Base exception for allocation transaction state errors."""

    code: str = "ALLOCATION_STATE_ERROR"


class AllocationValidationError(AllocationStateError):
    """
    Operator override rejected.

    The transaction remains open in OVERRIDDEN state; a corrected override
    may be resubmitted.
    """

    code: str = "ALLOCATION_VALIDATION_FAILED"

    def __init__(self, transaction_id: str, problems: list[dict]):
        self.transaction_id = transaction_id
        self.problems = problems
        super().__init__(
            f"Override for transaction {transaction_id} rejected: "
            f"{len(problems)} problem(s)"
        )


class InvalidAllocationTransitionError(AllocationStateError):
    """Operation is not legal in the transaction's current state."""

    code: str = "INVALID_ALLOCATION_TRANSITION"

    def __init__(self, transaction_id: str, from_state: str, to_state: str):
        self.transaction_id = transaction_id
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Transaction {transaction_id} cannot move {from_state} -> {to_state}"
        )


# Batch exceptions


class BatchError(PharmacyKernelError):
    """Base exception for batch errors."""

    code: str = "BATCH_ERROR"


class BatchNotFoundError(BatchError):
    """Batch with given ID was not found."""

    code: str = "BATCH_NOT_FOUND"

    def __init__(self, batch_id: str):
        self.batch_id = batch_id
        super().__init__(f"Batch not found: {batch_id}")


class InvalidBatchStatusTransitionError(BatchError):
    """Batch status change not allowed."""

    code: str = "INVALID_BATCH_STATUS_TRANSITION"

    def __init__(self, batch_id: str, from_status: str, to_status: str):
        self.batch_id = batch_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Batch {batch_id} cannot move {from_status} -> {to_status}"
        )


# Immutability exceptions


class ImmutabilityError(PharmacyKernelError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """
    Attempted to modify or delete an immutable record.

    Sale-line snapshots and batch allocation rows are immutable from
    creation. Inventory batches may be updated but never deleted.
    """

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )
