"""
Structured error types for dpmigrate.

Every error raised by the migration tool extends :class:`MigrateError` and
carries a category, a retry flag, structured context, and an optional chained
cause. The hierarchy mirrors the three ways a run can stop early:

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────┐
        │                      MigrateError                            │
        │  (category, retryable, context, cause)                       │
        ├─────────────────────────────────────────────────────────────┤
        │  ConfigError              InternalConsistencyError           │
        │  (CONFIG, fatal)          (INTERNAL, fatal)                  │
        │     │                         │                              │
        │  MissingConfigError       DuplicateJobError                  │
        │  InvalidConfigError       UnknownJobError                    │
        │                           InvalidTransitionError             │
        │                                                              │
        │  SpawnError               RunInterrupted                     │
        │  (PROCESS, unit-local)    (INTERRUPT, distinct status)       │
        └─────────────────────────────────────────────────────────────┘

    Unit failures (an export or import process exiting non-zero) are not
    exceptions at all. They are outcomes recorded by the pipeline driver.

Examples:
    >>> error = UnknownJobError(4242)
    >>> error.category
    <ErrorCategory.INTERNAL: 'INTERNAL'>
    >>> error.to_dict()["context"]["pid"]
    4242
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    CONFIG = "CONFIG"
    PROCESS = "PROCESS"
    INTERRUPT = "INTERRUPT"
    INTERNAL = "INTERNAL"
    UNKNOWN = "UNKNOWN"


@dataclass
class ErrorContext:
    """Structured metadata attached to an error.

    Typed fields cover the migration vocabulary; anything else lands in
    ``metadata``. ``to_dict()`` emits only the fields that are set.
    """

    session_id: str | None = None
    unit: str | None = None
    stage: str | None = None
    pid: int | None = None
    command: str | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["session_id", "unit", "stage", "pid", "command"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class MigrateError(Exception):
    """Base exception for all dpmigrate errors.

    Subclasses set ``default_category`` and ``default_retryable`` so callers
    rarely need to pass them explicitly.
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> MigrateError:
        """Add context to this error (fluent API).

        Usage:
            raise SpawnError("expdp not found").with_context(unit="hr.par")
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================


class ConfigError(MigrateError):
    """
    Configuration error.

    Surfaced before scheduling begins. Never retryable - configuration must
    be fixed.
    """

    default_category = ErrorCategory.CONFIG
    default_retryable = False


class MissingConfigError(ConfigError):
    """Required configuration is missing."""

    def __init__(self, key: str, message: str | None = None):
        self.key = key
        super().__init__(message or f"Missing required configuration: {key}")


class InvalidConfigError(ConfigError):
    """Configuration value is invalid."""

    def __init__(self, key: str, value: Any, message: str | None = None):
        self.key = key
        self.value = value
        super().__init__(message or f"Invalid configuration for {key}: {value!r}")


# =============================================================================
# INTERNAL CONSISTENCY ERRORS
# =============================================================================


class InternalConsistencyError(MigrateError):
    """Scheduler bookkeeping is corrupt; the run aborts instead of continuing."""

    default_category = ErrorCategory.INTERNAL
    default_retryable = False


class DuplicateJobError(InternalConsistencyError):
    """A process id was registered while already live."""

    def __init__(self, pid: int):
        self.pid = pid
        super().__init__(
            f"Process {pid} is already registered",
            context=ErrorContext(pid=pid),
        )


class UnknownJobError(InternalConsistencyError):
    """A completion arrived for a process id the registry does not track."""

    def __init__(self, pid: int):
        self.pid = pid
        super().__init__(
            f"Completion reported for untracked process {pid}",
            context=ErrorContext(pid=pid),
        )


class InvalidTransitionError(InternalConsistencyError):
    """Raised when an illegal unit stage transition is attempted."""

    def __init__(self, current: str, target: str, enum_name: str = "UnitStage") -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid {enum_name} transition: {current} → {target}")


# =============================================================================
# PROCESS / RUN CONTROL
# =============================================================================


class SpawnError(MigrateError):
    """An export or import process could not be started.

    Treated by the driver as a failure of that unit's stage, not of the run.
    """

    default_category = ErrorCategory.PROCESS
    default_retryable = False


class RunInterrupted(MigrateError):
    """The operator cancelled the run (SIGINT/SIGTERM)."""

    default_category = ErrorCategory.INTERRUPT
    default_retryable = False

    def __init__(self, message: str = "Migration interrupted"):
        super().__init__(message)


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "MigrateError",
    "ConfigError",
    "MissingConfigError",
    "InvalidConfigError",
    "InternalConsistencyError",
    "DuplicateJobError",
    "UnknownJobError",
    "InvalidTransitionError",
    "SpawnError",
    "RunInterrupted",
]
