"""Completion Waiter — the driver's single suspension point.

Each tracked process gets one ``asyncio`` task awaiting ``handle.wait()``.
:meth:`CompletionWaiter.wait_any` multiplexes all of them (plus an optional
interrupt event) with one ``asyncio.wait(..., FIRST_COMPLETED)`` call, so no
polling is involved.

When several processes exit together, every finished task is drained into
an arrival queue and handed out one per call, ties ordered by start order.
A handle whose ``wait()`` raises is reported as a failed completion
(``returncode=None``) rather than lost.

Example::

    waiter = CompletionWaiter()
    waiter.track(proc.pid, proc)
    completion = await waiter.wait_any(interrupt=stop_event)
    if completion.succeeded:
        ...
"""

from __future__ import annotations

import asyncio
from collections import deque

from dpmigrate.core.errors import DuplicateJobError, RunInterrupted
from dpmigrate.core.logging import get_logger
from dpmigrate.execution.models import Completion, ProcessHandle

logger = get_logger(__name__)


class CompletionWaiter:
    """Blocks until any tracked process exits."""

    def __init__(self) -> None:
        self._tasks: dict[int, asyncio.Task[int]] = {}
        self._ready: deque[Completion] = deque()

    def track(self, pid: int, handle: ProcessHandle) -> None:
        """Start observing ``handle`` for exit."""
        if pid in self._tasks:
            raise DuplicateJobError(pid)
        self._tasks[pid] = asyncio.ensure_future(handle.wait())

    def forget(self, pid: int) -> None:
        """Stop observing ``pid`` without waiting for it (process keeps running)."""
        task = self._tasks.pop(pid, None)
        if task is not None and not task.done():
            task.cancel()
        self._ready = deque(c for c in self._ready if c.pid != pid)

    @property
    def tracked(self) -> int:
        """Processes not yet handed out by :meth:`wait_any`."""
        return len(self._tasks) + len(self._ready)

    async def wait_any(self, interrupt: asyncio.Event | None = None) -> Completion | None:
        """Return the next exited process.

        Returns ``None`` immediately when nothing is tracked.

        Raises:
            RunInterrupted: If ``interrupt`` is set before any process exits.
        """
        if interrupt is not None and interrupt.is_set():
            raise RunInterrupted()
        if self._ready:
            return self._ready.popleft()
        if not self._tasks:
            return None

        waiters: set[asyncio.Future] = set(self._tasks.values())
        stop: asyncio.Task | None = None
        if interrupt is not None:
            stop = asyncio.ensure_future(interrupt.wait())
            waiters.add(stop)

        try:
            done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if stop is not None and not stop.done():
                stop.cancel()

        self._drain(done)
        if not self._ready:
            raise RunInterrupted()
        return self._ready.popleft()

    def close(self) -> None:
        """Cancel all outstanding wait tasks (abandons, does not kill)."""
        for task in self._tasks.values():
            if not task.done():
                task.cancel()
        self._tasks.clear()
        self._ready.clear()

    def _drain(self, done: set[asyncio.Future]) -> None:
        finished = [pid for pid, task in self._tasks.items() if task in done]
        for pid in finished:
            task = self._tasks.pop(pid)
            self._ready.append(Completion(pid=pid, returncode=self._exit_status(pid, task)))

    @staticmethod
    def _exit_status(pid: int, task: asyncio.Task[int]) -> int | None:
        if task.cancelled():
            return None
        exc = task.exception()
        if exc is not None:
            logger.warning("waiter.wait_failed", pid=pid, error=str(exc))
            return None
        return task.result()


async def terminate_handle(handle: ProcessHandle, kill_timeout: float = 5.0) -> int | None:
    """SIGTERM ``handle``, then SIGKILL if it outlives ``kill_timeout``.

    Returns the exit status, or ``None`` if the process was already gone.
    """
    if handle.returncode is not None:
        return handle.returncode
    try:
        handle.terminate()
        try:
            await asyncio.wait_for(handle.wait(), timeout=kill_timeout)
        except TimeoutError:
            handle.kill()
            await handle.wait()
    except ProcessLookupError:
        pass  # already gone
    return handle.returncode
