"""Bounded single-stage fan-out over external processes.

Where :class:`~dpmigrate.execution.pipeline.PipelineDriver` chains two
stages per unit, :func:`run_parallel` runs *one* process per item: start up
to ``max_concurrent``, start the next each time one exits, return a tally.
Network-link migrations use it, since they have no export stage.

It reuses the same registry, gate and waiter as the pipeline driver, and
likewise keys jobs by a sequence number rather than the (reusable) OS pid.

Example::

    summary = await run_parallel(units, runner.run_network_import, max_concurrent=4)
    print(summary.succeeded, summary.failed)
"""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from dpmigrate.core.errors import RunInterrupted, SpawnError
from dpmigrate.core.logging import get_logger
from dpmigrate.execution.concurrency import ConcurrencyGate
from dpmigrate.execution.models import JobStage, ProcessHandle
from dpmigrate.execution.registry import JobRegistry
from dpmigrate.execution.waiter import CompletionWaiter, terminate_handle
from dpmigrate.observability.report import ReportSink

logger = get_logger(__name__)


@dataclass
class ParallelSummary:
    """Outcome of :func:`run_parallel`."""

    total: int
    succeeded: int = 0
    failed: int = 0
    interrupted: bool = False
    peak_live: int = 0
    returncodes: dict[str, int | None] = field(default_factory=dict)

    @property
    def finished(self) -> int:
        return self.succeeded + self.failed

    @property
    def all_succeeded(self) -> bool:
        return not self.interrupted and self.failed == 0 and self.finished == self.total

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "interrupted": self.interrupted,
            "peak_live": self.peak_live,
        }


async def run_parallel(
    items: Sequence[Any],
    start: Callable[[Any], Awaitable[ProcessHandle]],
    max_concurrent: int = 4,
    *,
    stage: JobStage = JobStage.IMPORT,
    label: Callable[[Any], str] = lambda item: getattr(item, "name", str(item)),
    report: ReportSink | None = None,
    interrupt: asyncio.Event | None = None,
    terminate_on_interrupt: bool = True,
    kill_timeout_seconds: float = 5.0,
) -> ParallelSummary:
    """Run ``start(item)`` for every item with at most ``max_concurrent`` live.

    Items are started in order. A :class:`SpawnError` from ``start`` counts
    as a failure of that item. When ``interrupt`` is set no further items
    start and the summary comes back with ``interrupted=True``.
    """
    registry = JobRegistry()
    gate = ConcurrencyGate(max_concurrent, registry)
    waiter = CompletionWaiter()
    summary = ParallelSummary(total=len(items))
    next_index = 0
    job_keys = itertools.count(1)

    def _settle(name: str, returncode: int | None) -> None:
        ok = returncode == 0
        if ok:
            summary.succeeded += 1
        else:
            summary.failed += 1
        summary.returncodes[name] = returncode
        if report is not None:
            try:
                report.item(
                    "ok" if ok else "fail",
                    f"{stage.value.upper()}: {name}",
                    f"[{summary.finished}/{summary.total}]",
                )
            except Exception:
                logger.exception("parallel.report_item_failed", item=name)

    async def _launch(index: int) -> None:
        item = items[index]
        name = label(item)
        try:
            handle = await start(item)
        except SpawnError as exc:
            logger.error("parallel.spawn_failed", item=name, error=str(exc))
            _settle(name, None)
            return
        key = next(job_keys)
        registry.register(key, stage, index, name, handle)
        waiter.track(key, handle)
        summary.peak_live = max(summary.peak_live, len(registry))
        logger.info("parallel.started", item=name, pid=handle.pid, live=len(registry))

    async def _shutdown() -> None:
        jobs = registry.jobs()
        if terminate_on_interrupt:
            await asyncio.gather(
                *(terminate_handle(job.handle, kill_timeout_seconds) for job in jobs if job.handle)
            )
        for job in jobs:
            waiter.forget(job.pid)
            registry.remove(job.pid)

    logger.info("parallel.begin", total=summary.total, max_concurrent=gate.max_concurrent)
    try:
        while next_index < len(items) or registry:
            while next_index < len(items) and gate.can_start():
                if interrupt is not None and interrupt.is_set():
                    raise RunInterrupted()
                next_index += 1
                await _launch(next_index - 1)

            completion = await waiter.wait_any(interrupt)
            if completion is None:
                continue
            job = registry.lookup(completion.pid)
            registry.remove(completion.pid)
            _settle(job.name, completion.returncode)
    except RunInterrupted:
        summary.interrupted = True
        logger.warning("parallel.interrupted", live=len(registry), finished=summary.finished)
        await _shutdown()
    except Exception as exc:
        logger.error("parallel.aborted", error=str(exc), live=len(registry))
        await _shutdown()
        raise
    finally:
        waiter.close()

    logger.info("parallel.finished", **summary.to_dict())
    return summary
