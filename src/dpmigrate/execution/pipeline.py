"""Pipeline Driver — bounded export→import scheduling for parfile units.

WHY
───
A Data Pump migration is split into many parfiles. Each one must be
exported and then imported, both as external processes. Running them one by
one wastes hours; running them all at once overwhelms the databases. The
driver keeps at most ``max_concurrent`` processes alive across *both*
stages, starts an import the moment its export succeeds, and refills freed
capacity with the next pending export.

ARCHITECTURE
────────────
::

    PipelineDriver.run()
      ├── seed: start exports in index order while the gate allows
      └── loop until every unit is settled:
            completion = await waiter.wait_any()     ← only suspension point
            job = registry.lookup(key); registry.remove(key)
            ├── EXPORT ok   → start IMPORT for the same unit
            ├── EXPORT fail → unit FAILED, import skipped (counts as settled)
            ├── IMPORT done → unit COMPLETED | FAILED, progress
            └── refill: start pending exports while the gate allows

    Collaborators:
      run_export(unit) / run_import(unit) → ProcessHandle   (spawn only)
      ReportSink.item(...) / ReportSink.metric(...)           (never aborts)

    State (owned by the driver, never shared):
      JobRegistry        job key → Job       (len == live count)
      ConcurrencyGate    reads the registry
      CompletionWaiter   one wait task per live process
      PipelineCounters   immutable snapshot, replaced per step

    Jobs are keyed by a per-run sequence number rather than the OS pid: a
    pid may be handed to a new process once the old one has exited, even
    while that exit is still queued in the waiter.

Failure policy:
    - Unit failures (non-zero exit, spawn failure) are recorded, never raised.
    - Report sink and ready-marker errors are logged, never raised.
    - Internal-consistency errors abort: live children are terminated
      best-effort, metrics flushed, the exception propagates.
    - ``interrupt()`` stops new work and returns ``RunStatus.INTERRUPTED``.

Example::

    driver = PipelineDriver(units, runner.run_export, runner.run_import,
                            max_concurrent=4, report=report)
    result = await driver.run()
    sys.exit(result.status.exit_code)
"""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import Awaitable, Callable, Sequence
from pathlib import Path

from dpmigrate.core.errors import InternalConsistencyError, RunInterrupted, SpawnError
from dpmigrate.core.logging import get_logger
from dpmigrate.execution.concurrency import ConcurrencyGate
from dpmigrate.execution.markers import mark_ready
from dpmigrate.execution.models import (
    Completion,
    Job,
    JobStage,
    PipelineCounters,
    PipelineResult,
    ProcessHandle,
    RunStatus,
    Unit,
    UnitStage,
    utcnow,
)
from dpmigrate.execution.registry import JobRegistry
from dpmigrate.execution.waiter import CompletionWaiter, terminate_handle
from dpmigrate.observability.report import ReportSink

logger = get_logger(__name__)

WorkFunction = Callable[[Unit], Awaitable[ProcessHandle]]


class PipelineDriver:
    """Drives every unit through export then import under one concurrency bound.

    Parameters
    ----------
    units : Sequence[Unit]
        Units in input order; all must be ``PENDING``.
    run_export, run_import : WorkFunction
        Spawn the stage's process for a unit and return its handle without
        waiting for it. Raise :class:`SpawnError` if the process cannot start.
    max_concurrent : int
        Upper bound on live export+import processes (default 4).
    report : ReportSink | None
        Receives per-unit items during the run and counters at the end.
    marker_dir : Path | None
        When set, a ``<base>.READY`` marker is written after each export.
    terminate_on_interrupt : bool
        Terminate live children on interrupt/abort instead of abandoning them.
    kill_timeout_seconds : float
        Grace period between SIGTERM and SIGKILL.
    """

    def __init__(
        self,
        units: Sequence[Unit],
        run_export: WorkFunction,
        run_import: WorkFunction,
        *,
        max_concurrent: int = 4,
        report: ReportSink | None = None,
        marker_dir: str | Path | None = None,
        terminate_on_interrupt: bool = True,
        kill_timeout_seconds: float = 5.0,
    ) -> None:
        self._units = list(units)
        for position, unit in enumerate(self._units):
            if unit.index != position or unit.stage is not UnitStage.PENDING:
                raise InternalConsistencyError(
                    f"Unit {unit.name!r} must be PENDING at index {position}"
                )
        self._run_export = run_export
        self._run_import = run_import
        self._report = report
        self._marker_dir = Path(marker_dir) if marker_dir is not None else None
        self._terminate_on_interrupt = terminate_on_interrupt
        self._kill_timeout = kill_timeout_seconds

        self._registry = JobRegistry()
        self._gate = ConcurrencyGate(max_concurrent, self._registry)
        self._waiter = CompletionWaiter()
        self._interrupt = asyncio.Event()

        self._counters = PipelineCounters()
        self._history: list[PipelineCounters] = [self._counters]
        self._next_pending = 0
        self._job_keys = itertools.count(1)
        self._peak_live = 0
        self._ran = False

    # ── Inspection ───────────────────────────────────────────────────

    @property
    def units(self) -> list[Unit]:
        return self._units

    @property
    def total(self) -> int:
        return len(self._units)

    @property
    def counters(self) -> PipelineCounters:
        return self._counters

    @property
    def history(self) -> list[PipelineCounters]:
        """Every counter snapshot taken during the run, oldest first."""
        return list(self._history)

    @property
    def live_count(self) -> int:
        return len(self._registry)

    @property
    def peak_live(self) -> int:
        return self._peak_live

    @property
    def max_concurrent(self) -> int:
        return self._gate.max_concurrent

    @property
    def interrupted(self) -> bool:
        return self._interrupt.is_set()

    def live_jobs(self) -> list[Job]:
        return self._registry.jobs()

    # ── Control ──────────────────────────────────────────────────────

    def interrupt(self) -> None:
        """Stop scheduling new work; :meth:`run` returns INTERRUPTED."""
        if not self._interrupt.is_set():
            logger.warning("pipeline.interrupt_requested", live=len(self._registry))
        self._interrupt.set()

    async def run(self) -> PipelineResult:
        """Run every unit to a settled state (or until interrupted)."""
        if self._ran:
            raise InternalConsistencyError("PipelineDriver.run() may only be called once")
        self._ran = True

        started_at = utcnow()
        status = RunStatus.FAILED
        logger.info(
            "pipeline.started",
            total=self.total,
            max_concurrent=self._gate.max_concurrent,
        )

        try:
            if self._units:
                await self._fill()
                while self._counters.imports_completed < self.total:
                    if self._interrupt.is_set():
                        raise RunInterrupted()
                    if not self._registry:
                        raise InternalConsistencyError(
                            f"No live jobs while {self.total - self._counters.imports_completed} "
                            "unit(s) are unsettled"
                        )
                    completion = await self._waiter.wait_any(self._interrupt)
                    if completion is None:
                        raise InternalConsistencyError("Completion waiter has nothing to wait for")
                    await self._on_completion(completion)
                    await self._fill()
            status = RunStatus.FAILED if self._counters.has_failures else RunStatus.SUCCESS
        except RunInterrupted:
            status = RunStatus.INTERRUPTED
            logger.warning(
                "pipeline.interrupted",
                live=len(self._registry),
                settled=self._counters.imports_completed,
                total=self.total,
            )
            await self._shutdown_live()
        except Exception as exc:
            logger.error("pipeline.aborted", error=str(exc), live=len(self._registry))
            await self._shutdown_live()
            raise
        finally:
            self._waiter.close()
            self._flush(status)

        result = PipelineResult(
            status=status,
            counters=self._counters,
            units=self._units,
            peak_live=self._peak_live,
            started_at=started_at,
            completed_at=utcnow(),
        )
        logger.info(
            "pipeline.finished",
            status=status.value,
            duration_seconds=result.duration_seconds,
            **self._counters.to_dict(),
        )
        return result

    # ── Scheduling ───────────────────────────────────────────────────

    async def _fill(self) -> None:
        """Start pending exports in index order while the gate allows."""
        while (
            self._next_pending < self.total
            and self._gate.can_start()
            and not self._interrupt.is_set()
        ):
            unit = self._units[self._next_pending]
            self._next_pending += 1
            await self._start(unit, JobStage.EXPORT)

    async def _start(self, unit: Unit, stage: JobStage) -> None:
        if not self._gate.can_start():
            raise InternalConsistencyError(
                f"Concurrency gate closed while starting {stage.value} for {unit.name}"
            )
        if self._registry.has_live(unit.index):
            raise InternalConsistencyError(f"{unit.name} already has a live job")
        if stage is JobStage.EXPORT:
            unit.transition_to(UnitStage.EXPORTING)
            self._bump(exports_started=1)
            work = self._run_export
        else:
            unit.transition_to(UnitStage.IMPORTING)
            self._bump(imports_started=1)
            work = self._run_import

        try:
            handle = await work(unit)
        except SpawnError as exc:
            logger.error(
                "pipeline.spawn_failed",
                stage=stage.value,
                unit=unit.name,
                error=str(exc),
            )
            await self._record(unit, stage, succeeded=False)
            return

        key = next(self._job_keys)
        self._registry.register(key, stage, unit.index, unit.name, handle)
        self._waiter.track(key, handle)
        self._peak_live = max(self._peak_live, len(self._registry))

        c = self._counters
        started = c.exports_started if stage is JobStage.EXPORT else c.imports_started
        logger.info(
            f"pipeline.{stage.value}_started",
            unit=unit.name,
            job=key,
            pid=handle.pid,
            position=f"{started}/{self.total}",
            live=len(self._registry),
        )

    async def _on_completion(self, completion: Completion) -> None:
        job = self._registry.lookup(completion.pid)
        self._registry.remove(completion.pid)
        unit = self._units[job.unit_index]
        logger.debug(
            f"pipeline.{job.stage.value}_exited",
            unit=unit.name,
            pid=job.os_pid,
            returncode=completion.returncode,
        )
        await self._record(unit, job.stage, succeeded=completion.succeeded, returncode=completion.returncode)

    async def _record(
        self,
        unit: Unit,
        stage: JobStage,
        *,
        succeeded: bool,
        returncode: int | None = None,
    ) -> None:
        """Account for one finished stage and advance the unit."""
        if stage is JobStage.EXPORT:
            self._bump(
                exports_completed=1,
                exports_succeeded=int(succeeded),
                exports_failed=int(not succeeded),
            )
            self._item(
                "ok" if succeeded else "fail",
                f"EXPORT: {unit.name}",
                f"[{self._counters.exports_completed}/{self.total}]",
            )
            if self._marker_dir is not None:
                self._mark(unit, returncode)

            if succeeded:
                unit.transition_to(UnitStage.READY_FOR_IMPORT)
                if not self._interrupt.is_set():
                    await self._start(unit, JobStage.IMPORT)
            else:
                unit.transition_to(UnitStage.FAILED)
                self._bump(imports_completed=1, imports_skipped=1)
                self._item("skip", f"IMPORT: {unit.name}", "skipped, export failed")
            return

        self._bump(
            imports_completed=1,
            imports_succeeded=int(succeeded),
            imports_failed=int(not succeeded),
        )
        unit.transition_to(UnitStage.COMPLETED if succeeded else UnitStage.FAILED)
        self._item(
            "ok" if succeeded else "fail",
            f"IMPORT: {unit.name}",
            f"[{self._counters.imports_completed}/{self.total}]",
        )
        done = self._counters.imports_completed
        logger.info(
            "pipeline.progress",
            completed=done,
            total=self.total,
            percent=done * 100 // self.total,
            active=len(self._registry),
        )

    def _bump(self, **deltas: int) -> None:
        self._counters = self._counters.bump(**deltas)
        self._history.append(self._counters)

    # ── Reporting ────────────────────────────────────────────────────

    def _item(self, status: str, label: str, detail: str) -> None:
        if self._report is None:
            return
        try:
            self._report.item(status, label, detail)
        except Exception:
            logger.exception("pipeline.report_item_failed", label=label)

    def _mark(self, unit: Unit, returncode: int | None) -> None:
        try:
            mark_ready(self._marker_dir, unit.base_name, returncode if returncode is not None else 1)
        except OSError as exc:
            logger.error(
                "pipeline.marker_failed",
                unit=unit.name,
                marker_dir=str(self._marker_dir),
                error=str(exc),
            )

    def _flush(self, status: RunStatus) -> None:
        """Push the final counters to the report sink."""
        if self._report is None:
            return
        c = self._counters
        metrics: list[tuple[str, object, str]] = [
            ("total_parfiles", self.total, "set"),
            ("exports_started", c.exports_started, "set"),
            ("exports_success", c.exports_succeeded, "set"),
            ("exports_failed", c.exports_failed, "set"),
            ("imports_started", c.imports_started, "set"),
            ("imports_success", c.imports_succeeded, "add"),
            ("imports_failed", c.imports_failed, "add"),
            ("imports_skipped", c.imports_skipped, "set"),
            ("status", status.value, "set"),
        ]
        for name, value, mode in metrics:
            try:
                self._report.metric(name, value, mode)
            except Exception:
                logger.exception("pipeline.report_metric_failed", metric=name)

    # ── Shutdown ─────────────────────────────────────────────────────

    async def _shutdown_live(self) -> None:
        """Terminate (or abandon) every live child process."""
        jobs = self._registry.jobs()
        if not jobs:
            return
        if self._terminate_on_interrupt:
            await asyncio.gather(*(self._terminate(job) for job in jobs))
        else:
            logger.warning("pipeline.abandoned", pids=[job.os_pid for job in jobs])
        for job in jobs:
            self._waiter.forget(job.pid)
            self._registry.remove(job.pid)

    async def _terminate(self, job: Job) -> None:
        if job.handle is None or job.handle.returncode is not None:
            return
        logger.warning("pipeline.terminating", pid=job.os_pid, stage=job.stage.value, unit=job.name)
        await terminate_handle(job.handle, self._kill_timeout)
