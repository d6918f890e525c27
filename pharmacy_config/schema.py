"""
Pharmacy settings schema.

Human-authored YAML is parsed into these frozen dataclasses by the loader.
The allocation policy reuses the kernel's ``AllocationConfig`` so the
coordinator receives exactly what was configured.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from pharmacy_kernel.domain.dtos import AllocationConfig


@dataclass(frozen=True)
class LockingConfig:
    """Bounded wait and retry policy for the per-product critical section."""

    timeout_seconds: float = 5.0
    retry_attempts: int = 3
    retry_backoff_seconds: float = 0.05


@dataclass(frozen=True)
class DatabaseConfig:
    url: str = "sqlite:///pharmacy.db"
    echo: bool = False


@dataclass(frozen=True)
class Settings:
    """One complete configuration set."""

    config_id: str
    version: int
    allocation: AllocationConfig = field(default_factory=AllocationConfig)
    locking: LockingConfig = field(default_factory=LockingConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    checksum: str = ""
