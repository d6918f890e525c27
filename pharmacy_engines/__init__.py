"""
Module: pharmacy_engines
Responsibility:
    Package entrypoint that re-exports the public symbols of the pure
    calculation engines.  This is the import surface for pharmacy_services.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import pharmacy_kernel/domain, pharmacy_kernel.exceptions and
    sibling engine modules.  MUST NOT import pharmacy_services.

Invariants enforced:
    - Purity: engines NEVER call ``datetime.now()`` or ``date.today()``.
      Dates are passed in by the caller.
    - Integer tablet arithmetic only.
    - Determinism: identical inputs always produce identical outputs.
"""

from pharmacy_engines.allocation_planner import (
    AllocationPlanner,
    order_candidates,
)
from pharmacy_engines.break_pack import BreakPackResolution, BreakPackResolver
from pharmacy_engines.tracer import compute_input_fingerprint, traced_engine

__all__ = [
    "AllocationPlanner",
    "BreakPackResolution",
    "BreakPackResolver",
    "compute_input_fingerprint",
    "order_candidates",
    "traced_engine",
]
