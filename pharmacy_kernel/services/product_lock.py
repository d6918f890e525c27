"""
ProductLockRegistry -- in-process, per-product critical sections.

Responsibility:
    Serializes allocation transactions for the same product_id while letting
    transactions for different products run fully in parallel.  Each
    product key maps to a mutex that is reference counted: the entry exists
    only while some thread holds it or waits on it.

Architecture position:
    Kernel > Services -- concurrency infrastructure used by the allocation
    coordinator.  Complements storage-level ``SELECT ... FOR UPDATE``; on
    SQLite (no row locks) it is the only serialization point.

Invariants enforced:
    - At most one holder per product_id at a time.
    - Waiting is bounded: ``acquire`` raises AllocationBusyError once
      ``timeout`` seconds pass.
    - No leaked entries: the registry is empty when nobody holds or waits.

Failure modes:
    - AllocationBusyError (retryable) on timeout.
    - RuntimeError if ``release`` is called for a product that is not held.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager

from pharmacy_kernel.exceptions import AllocationBusyError
from pharmacy_kernel.logging_config import get_logger

logger = get_logger("services.product_lock")


class _Entry:
    __slots__ = ("lock", "refcount")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.refcount = 0


class ProductLockRegistry:
    """
    Mutex keyed by product_id with reference counting.

    Usage:
        registry = ProductLockRegistry()
        with registry.hold("PARA-500", timeout=5.0):
            ...  # single writer for PARA-500
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[str, _Entry] = {}

    def acquire(self, product_id: str, timeout: float) -> None:
        """
        Block until the product lock is held or ``timeout`` elapses.

        Raises:
            AllocationBusyError: If the lock is not acquired in time.
        """
        with self._guard:
            entry = self._entries.get(product_id)
            if entry is None:
                entry = _Entry()
                self._entries[product_id] = entry
            entry.refcount += 1

        acquired = entry.lock.acquire(timeout=timeout) if timeout >= 0 else entry.lock.acquire()
        if not acquired:
            self._unref(product_id, entry)
            logger.warning(
                "product_lock_timeout",
                extra={"product_id": product_id, "timeout_seconds": timeout},
            )
            raise AllocationBusyError(product_id=product_id, timeout_seconds=timeout)

        logger.debug("product_lock_acquired", extra={"product_id": product_id})

    def release(self, product_id: str) -> None:
        """Release a lock previously obtained with ``acquire``."""
        with self._guard:
            entry = self._entries.get(product_id)
        if entry is None or not entry.lock.locked():
            raise RuntimeError(f"Product lock for {product_id} is not held")
        entry.lock.release()
        self._unref(product_id, entry)
        logger.debug("product_lock_released", extra={"product_id": product_id})

    @contextmanager
    def hold(self, product_id: str, timeout: float) -> Iterator[None]:
        self.acquire(product_id, timeout)
        try:
            yield
        finally:
            self.release(product_id)

    def is_locked(self, product_id: str) -> bool:
        with self._guard:
            entry = self._entries.get(product_id)
        return entry is not None and entry.lock.locked()

    def active_keys(self) -> frozenset[str]:
        """Product ids currently held or waited on."""
        with self._guard:
            return frozenset(self._entries)

    def _unref(self, product_id: str, entry: _Entry) -> None:
        with self._guard:
            entry.refcount -= 1
            if entry.refcount == 0 and self._entries.get(product_id) is entry:
                del self._entries[product_id]
