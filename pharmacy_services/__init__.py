"""
pharmacy_services -- Package init and public API.

Responsibility:
    Stateful orchestration that composes the pure engines
    (pharmacy_engines/) with database sessions and the per-product lock
    registry.  This is the only layer that opens sessions and commits on
    the allocation path.

Architecture position:
    Services -- stateful orchestration over engines + kernel.

    Dependency direction:
        pharmacy_services/ -> pharmacy_engines/  (allowed)
        pharmacy_services/ -> pharmacy_kernel/   (allowed)
        pharmacy_engines/  -> pharmacy_services/ (FORBIDDEN)
        pharmacy_kernel/   -> pharmacy_services/ (FORBIDDEN)
"""

from pharmacy_services.allocation_coordinator import (
    VALID_TRANSITIONS,
    AllocationCoordinator,
    AllocationState,
    AllocationTransaction,
    allocate_with_retry,
)

__all__ = [
    "AllocationCoordinator",
    "AllocationState",
    "AllocationTransaction",
    "VALID_TRANSITIONS",
    "allocate_with_retry",
]
