"""Selectors for the pharmacy kernel (read side)."""

from pharmacy_kernel.selectors.stock_selector import (
    AllocationRecordView,
    BatchStockView,
    SalesLineView,
    StockSelector,
)

__all__ = [
    "StockSelector",
    "BatchStockView",
    "AllocationRecordView",
    "SalesLineView",
]
