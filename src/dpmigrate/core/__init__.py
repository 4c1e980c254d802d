"""Core primitives: errors, logging, and configuration."""

from dpmigrate.core.errors import (
    ConfigError,
    ErrorCategory,
    InternalConsistencyError,
    MigrateError,
    RunInterrupted,
    SpawnError,
)
from dpmigrate.core.logging import LogContext, configure_logging, get_logger

__all__ = [
    "ConfigError",
    "ErrorCategory",
    "InternalConsistencyError",
    "MigrateError",
    "RunInterrupted",
    "SpawnError",
    "LogContext",
    "configure_logging",
    "get_logger",
]
