"""
Configuration Loader (``pharmacy_config.loader``).

Responsibility
--------------
Loads a YAML settings file and parses it into the typed
``pharmacy_config.schema`` dataclasses.

Architecture position
---------------------
**Config layer**.  Sits above ``pharmacy_kernel``; the kernel never imports
from here.  Callers hand the parsed values to the coordinator explicitly.

Invariants enforced
-------------------
* Parse errors raise ``ValueError`` or ``KeyError`` with descriptive
  messages; no silent defaults for required fields.
* Every parsed object is a frozen dataclass.
* ``compute_checksum`` produces a deterministic SHA-256 hash for
  configuration identity and change detection.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing ``config_id`` / ``version``  -> ``KeyError``.
* Wrong types or out-of-range values  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
import logging
from pathlib import Path
from typing import Any

import yaml

from pharmacy_config.schema import DatabaseConfig, LockingConfig, Settings
from pharmacy_kernel.domain.dtos import AllocationConfig

_logger = logging.getLogger("pharmacy_kernel.config")

DEFAULT_SETTINGS_PATH = Path(__file__).parent / "sets" / "default.yaml"


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the top level is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top-level YAML must be a mapping, got {type(data).__name__}")
    return data


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name) or {}
    if not isinstance(value, dict):
        raise ValueError(f"'{name}' must be a mapping, got {value!r}")
    return value


def _int(section: str, key: str, value: Any, minimum: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{section}.{key} must be an integer, got {value!r}")
    if value < minimum:
        raise ValueError(f"{section}.{key} must be >= {minimum}, got {value}")
    return value


def _float(section: str, key: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{section}.{key} must be a number, got {value!r}")
    if value < 0:
        raise ValueError(f"{section}.{key} must be >= 0, got {value}")
    return float(value)


def _bool(section: str, key: str, value: Any) -> bool:
    if not isinstance(value, bool):
        raise ValueError(f"{section}.{key} must be true or false, got {value!r}")
    return value


def parse_allocation(data: dict[str, Any]) -> AllocationConfig:
    """Parse the ``allocation`` section."""
    defaults = AllocationConfig()
    return AllocationConfig(
        near_expiry_days=_int(
            "allocation", "near_expiry_days",
            data.get("near_expiry_days", defaults.near_expiry_days), 0,
        ),
        allow_break_packs=_bool(
            "allocation", "allow_break_packs",
            data.get("allow_break_packs", defaults.allow_break_packs),
        ),
    )


def parse_locking(data: dict[str, Any]) -> LockingConfig:
    """Parse the ``locking`` section."""
    defaults = LockingConfig()
    return LockingConfig(
        timeout_seconds=_float(
            "locking", "timeout_seconds",
            data.get("timeout_seconds", defaults.timeout_seconds),
        ),
        retry_attempts=_int(
            "locking", "retry_attempts",
            data.get("retry_attempts", defaults.retry_attempts), 1,
        ),
        retry_backoff_seconds=_float(
            "locking", "retry_backoff_seconds",
            data.get("retry_backoff_seconds", defaults.retry_backoff_seconds),
        ),
    )


def parse_database(data: dict[str, Any]) -> DatabaseConfig:
    """Parse the ``database`` section."""
    defaults = DatabaseConfig()
    url = data.get("url", defaults.url)
    if not isinstance(url, str) or not url:
        raise ValueError(f"database.url must be a non-empty string, got {url!r}")
    return DatabaseConfig(
        url=url,
        echo=_bool("database", "echo", data.get("echo", defaults.echo)),
    )


def parse_settings(data: dict[str, Any]) -> Settings:
    """
    Parse a full settings mapping.

    Raises:
        KeyError: if ``config_id`` or ``version`` is missing.
        ValueError: on wrong types or values.
    """
    config_id = data["config_id"]
    version = data["version"]
    if not isinstance(config_id, str) or not config_id:
        raise ValueError(f"config_id must be a non-empty string, got {config_id!r}")
    version = _int("settings", "version", version, 1)

    return Settings(
        config_id=config_id,
        version=version,
        allocation=parse_allocation(_section(data, "allocation")),
        locking=parse_locking(_section(data, "locking")),
        database=parse_database(_section(data, "database")),
        checksum=compute_checksum(data),
    )


def load_settings(path: Path | str | None = None) -> Settings:
    """
    Load settings from ``path``, or from the packaged default set.

    Emits a ``CONFIG_TRACE`` log record with config_id, version and checksum.
    """
    path = Path(path) if path is not None else DEFAULT_SETTINGS_PATH
    settings = parse_settings(load_yaml_file(path))
    _logger.info(
        "CONFIG_TRACE",
        extra={
            "trace_type": "CONFIG_TRACE",
            "config_id": settings.config_id,
            "version": settings.version,
            "checksum": settings.checksum,
            "path": str(path),
        },
    )
    return settings


def compute_checksum(data: dict[str, Any]) -> str:
    """
    Compute SHA-256 checksum of canonical JSON serialization.

    Identical ``data`` always produces identical checksums regardless of
    key order.
    """
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
