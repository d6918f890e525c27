"""
pharmacy_config -- YAML configuration for the allocation engine.

Responsibility:
    Turns a reviewed YAML settings file into frozen dataclasses.  Callers
    pass ``settings.allocation`` to every coordinator call and
    ``settings.locking.timeout_seconds`` to the coordinator; nothing reads
    configuration globally.

Architecture position:
    Configuration -- sits above ``pharmacy_kernel`` and beside
    ``pharmacy_services``.  The kernel MUST NEVER import from
    ``pharmacy_config``.
"""

from pharmacy_config.loader import (
    DEFAULT_SETTINGS_PATH,
    compute_checksum,
    load_settings,
    load_yaml_file,
    parse_settings,
)
from pharmacy_config.schema import DatabaseConfig, LockingConfig, Settings

__all__ = [
    "DEFAULT_SETTINGS_PATH",
    "DatabaseConfig",
    "LockingConfig",
    "Settings",
    "compute_checksum",
    "load_settings",
    "load_yaml_file",
    "parse_settings",
]
