"""Execution domain models.

Defines the data structures the pipeline driver works with:

- Unit: one parfile travelling through export then import
- Job: one live external process tracked by the registry
- PipelineCounters: immutable aggregate counters, one snapshot per step
- PipelineResult: the outcome handed back to the caller

Unit stage transition graph::

    PENDING          → EXPORTING
    EXPORTING        → READY_FOR_IMPORT | FAILED
    READY_FOR_IMPORT → IMPORTING
    IMPORTING        → COMPLETED | FAILED
    COMPLETED        → (terminal)
    FAILED           → (terminal)
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from dpmigrate.core.errors import InvalidTransitionError


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


@runtime_checkable
class ProcessHandle(Protocol):
    """What the driver needs from a spawned process.

    ``asyncio.subprocess.Process`` satisfies this protocol as-is.
    """

    pid: int

    @property
    def returncode(self) -> int | None: ...

    async def wait(self) -> int: ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...


class UnitStage(str, Enum):
    """Lifecycle stage of a unit."""

    PENDING = "pending"
    EXPORTING = "exporting"
    READY_FOR_IMPORT = "ready_for_import"
    IMPORTING = "importing"
    COMPLETED = "completed"
    FAILED = "failed"


UNIT_VALID_TRANSITIONS: dict[UnitStage, frozenset[UnitStage]] = {
    UnitStage.PENDING: frozenset({UnitStage.EXPORTING}),
    UnitStage.EXPORTING: frozenset({UnitStage.READY_FOR_IMPORT, UnitStage.FAILED}),
    UnitStage.READY_FOR_IMPORT: frozenset({UnitStage.IMPORTING}),
    UnitStage.IMPORTING: frozenset({UnitStage.COMPLETED, UnitStage.FAILED}),
    UnitStage.COMPLETED: frozenset(),  # terminal
    UnitStage.FAILED: frozenset(),  # terminal
}


def validate_unit_transition(current: UnitStage, target: UnitStage) -> None:
    """Raise :class:`InvalidTransitionError` if *current → target* is illegal.

    Example:
        >>> validate_unit_transition(UnitStage.EXPORTING, UnitStage.FAILED)
        >>> validate_unit_transition(UnitStage.FAILED, UnitStage.IMPORTING)
        InvalidTransitionError: Invalid UnitStage transition: failed → importing
    """
    allowed = UNIT_VALID_TRANSITIONS.get(current, frozenset())
    if target not in allowed:
        raise InvalidTransitionError(current.value, target.value, "UnitStage")


class JobStage(str, Enum):
    """Which half of the pipeline a job belongs to."""

    EXPORT = "export"
    IMPORT = "import"


class RunStatus(str, Enum):
    """Overall outcome of a run."""

    SUCCESS = "SUCCESS"
    FAILED = "COMPLETED_WITH_ERRORS"
    INTERRUPTED = "INTERRUPTED"
    DRY_RUN = "DRY_RUN"

    @property
    def exit_code(self) -> int:
        if self is RunStatus.FAILED:
            return 1
        if self is RunStatus.INTERRUPTED:
            return 130
        return 0


@dataclass
class Unit:
    """One migration work item (one parfile)."""

    index: int
    name: str
    path: Path | None = None
    stage: UnitStage = UnitStage.PENDING

    @property
    def base_name(self) -> str:
        """Name without the ``.par`` suffix, used for logs and dumpfiles."""
        return self.name[:-4] if self.name.endswith(".par") else self.name

    @property
    def is_settled(self) -> bool:
        return self.stage in (UnitStage.COMPLETED, UnitStage.FAILED)

    def transition_to(self, target: UnitStage) -> None:
        validate_unit_transition(self.stage, target)
        self.stage = target


@dataclass
class Job:
    """One live external process.

    ``pid`` is the key the job is registered under. It identifies the job
    only while it is live; the OS process id is ``os_pid``.
    """

    pid: int
    stage: JobStage
    unit_index: int
    name: str
    handle: ProcessHandle | None = field(default=None, repr=False, compare=False)
    started_at: datetime = field(default_factory=utcnow)

    @property
    def os_pid(self) -> int | None:
        return self.handle.pid if self.handle is not None else None


@dataclass(frozen=True)
class Completion:
    """An exited process as reported by the completion waiter."""

    pid: int
    returncode: int | None

    @property
    def succeeded(self) -> bool:
        return self.returncode == 0


@dataclass(frozen=True)
class PipelineCounters:
    """Aggregate counters for one run.

    Never mutated in place: the driver replaces its snapshot through
    :meth:`bump` on every step.

    ``imports_completed`` also counts units whose export failed (their import
    is skipped, tallied in ``imports_skipped``), so a run is finished exactly
    when ``imports_completed`` equals the number of units.
    """

    exports_started: int = 0
    exports_completed: int = 0
    exports_succeeded: int = 0
    exports_failed: int = 0
    imports_started: int = 0
    imports_completed: int = 0
    imports_succeeded: int = 0
    imports_failed: int = 0
    imports_skipped: int = 0

    def bump(self, **deltas: int) -> PipelineCounters:
        """Return a new snapshot with each named counter increased."""
        return replace(self, **{name: getattr(self, name) + delta for name, delta in deltas.items()})

    @property
    def has_failures(self) -> bool:
        return self.exports_failed > 0 or self.imports_failed > 0

    def to_dict(self) -> dict[str, int]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass
class PipelineResult:
    """Outcome of :meth:`PipelineDriver.run`."""

    status: RunStatus
    counters: PipelineCounters
    units: list[Unit]
    peak_live: int = 0
    started_at: datetime = field(default_factory=utcnow)
    completed_at: datetime = field(default_factory=utcnow)

    @property
    def total(self) -> int:
        return len(self.units)

    @property
    def succeeded(self) -> bool:
        return self.status is RunStatus.SUCCESS

    @property
    def duration_seconds(self) -> float:
        return (self.completed_at - self.started_at).total_seconds()

    def units_in(self, stage: UnitStage) -> list[Unit]:
        return [u for u in self.units if u.stage is stage]

    def to_dict(self) -> dict[str, Any]:
        """Serialise for logging / JSON output."""
        return {
            "status": self.status.value,
            "total": self.total,
            "peak_live": self.peak_live,
            "duration_seconds": self.duration_seconds,
            "counters": self.counters.to_dict(),
            "units": [
                {"index": u.index, "name": u.name, "stage": u.stage.value}
                for u in self.units
            ],
        }
