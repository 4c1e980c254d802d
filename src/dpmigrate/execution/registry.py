"""Job Registry — the driver's map from job key to live job.

The key is an opaque int chosen by the caller, unique among live jobs only.
The schedulers use a per-run sequence number; the OS pid stays on the
process handle.

The registry is owned by a single :class:`~dpmigrate.execution.pipeline.PipelineDriver`
and passed explicitly to the pieces that need to observe it (the
concurrency gate). Its size *is* the live job count; nothing else keeps a
separate tally that could drift.

Example::

    registry = JobRegistry()
    registry.register(4242, JobStage.EXPORT, 0, "hr.par", handle)
    job = registry.lookup(4242)
    registry.remove(4242)
"""

from __future__ import annotations

from collections.abc import Iterator

from dpmigrate.core.errors import DuplicateJobError, UnknownJobError
from dpmigrate.core.logging import get_logger
from dpmigrate.execution.models import Job, JobStage, ProcessHandle

logger = get_logger(__name__)


class JobRegistry:
    """Keyed store of live jobs (key → :class:`Job`)."""

    def __init__(self) -> None:
        self._jobs: dict[int, Job] = {}

    def register(
        self,
        pid: int,
        stage: JobStage,
        unit_index: int,
        name: str | None = None,
        handle: ProcessHandle | None = None,
    ) -> Job:
        """Track a newly spawned process.

        Raises:
            DuplicateJobError: If ``pid`` is already live.
        """
        if pid in self._jobs:
            raise DuplicateJobError(pid)
        job = Job(
            pid=pid,
            stage=stage,
            unit_index=unit_index,
            name=name or f"job_{unit_index}",
            handle=handle,
        )
        self._jobs[pid] = job
        logger.debug("registry.registered", pid=pid, stage=stage.value, unit=job.name)
        return job

    def lookup(self, pid: int) -> Job:
        """Return the live job for ``pid``.

        Raises:
            UnknownJobError: If the pid is not tracked.
        """
        try:
            return self._jobs[pid]
        except KeyError:
            raise UnknownJobError(pid) from None

    def remove(self, pid: int) -> Job | None:
        """Stop tracking ``pid``. Removing an unknown pid is a no-op."""
        return self._jobs.pop(pid, None)

    def jobs(self) -> list[Job]:
        """Live jobs in start order."""
        return list(self._jobs.values())

    def has_live(self, unit_index: int, stage: JobStage | None = None) -> bool:
        """Whether the unit has a live job (optionally for one stage)."""
        return any(
            job.unit_index == unit_index and (stage is None or job.stage is stage)
            for job in self._jobs.values()
        )

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, pid: object) -> bool:
        return pid in self._jobs

    def __iter__(self) -> Iterator[Job]:
        return iter(list(self._jobs.values()))
