"""
Pharmacy Kernel

Batch-wise inventory for a pharmacy point of sale:
- Batches with expiry dates, stocked as whole strips plus loose tablets
- FIFO-by-expiry allocation with break-pack support
- Per-product serialized allocation transactions
- Append-only audit of which batches fed which sale line
"""

__version__ = "0.1.0"
