"""Domain models for the pharmacy kernel."""

from pharmacy_kernel.models.inventory_batch import (
    BATCH_STATUS_TRANSITIONS,
    BatchStatus,
    InventoryBatch,
)
from pharmacy_kernel.models.product import Product
from pharmacy_kernel.models.sales_line import (
    AllocatedBy,
    SalesLine,
    SalesLineBatchAllocation,
)

__all__ = [
    "Product",
    "InventoryBatch",
    "BatchStatus",
    "BATCH_STATUS_TRANSITIONS",
    "SalesLine",
    "SalesLineBatchAllocation",
    "AllocatedBy",
]
