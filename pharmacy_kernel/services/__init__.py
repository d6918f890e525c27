"""Services for the pharmacy kernel (write side)."""

from pharmacy_kernel.services.audit_writer import AuditWriter
from pharmacy_kernel.services.batch_repository import BatchRepository
from pharmacy_kernel.services.product_lock import ProductLockRegistry

__all__ = [
    "AuditWriter",
    "BatchRepository",
    "ProductLockRegistry",
]
