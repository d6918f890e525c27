"""
Pure domain layer.

This module contains pure data transfer objects and the clock
abstraction, with NO dependencies on:
- ORM (SQLAlchemy)
- Database
- I/O

All domain objects are immutable and deterministic.
"""

from pharmacy_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from pharmacy_kernel.domain.dtos import (
    AllocationConfig,
    AllocationOutcome,
    AllocationProposal,
    AllocationRequest,
    BatchDecrement,
    BatchSnapshot,
    OverrideLine,
    ProposalDisplayLine,
    ProposalLine,
    SalesLineSnapshot,
    Unit,
    to_tablets,
)

__all__ = [
    "AllocationConfig",
    "AllocationOutcome",
    "AllocationProposal",
    "AllocationRequest",
    "BatchDecrement",
    "BatchSnapshot",
    "Clock",
    "DeterministicClock",
    "OverrideLine",
    "ProposalDisplayLine",
    "ProposalLine",
    "SalesLineSnapshot",
    "SystemClock",
    "Unit",
    "to_tablets",
]
