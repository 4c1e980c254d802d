"""Concurrency Gate — bounds live export+import processes.

The gate holds no count of its own: it reads the live count straight from
the :class:`~dpmigrate.execution.registry.JobRegistry` it guards, so the two
can never diverge. The driver asks it immediately before every spawn and
again after every job removal.

Example::

    gate = ConcurrencyGate(4, registry)
    while pending and gate.can_start():
        start_next_export()
"""

from __future__ import annotations

from dpmigrate.core.errors import InvalidConfigError
from dpmigrate.execution.registry import JobRegistry


class ConcurrencyGate:
    """Answers "may another job start now?" against a fixed maximum."""

    def __init__(self, max_concurrent: int, registry: JobRegistry) -> None:
        if isinstance(max_concurrent, bool) or not isinstance(max_concurrent, int) or max_concurrent < 1:
            raise InvalidConfigError(
                "max_concurrent", max_concurrent, "max_concurrent must be a positive integer"
            )
        self._max = max_concurrent
        self._registry = registry

    @property
    def max_concurrent(self) -> int:
        return self._max

    @property
    def live_count(self) -> int:
        return len(self._registry)

    def can_start(self) -> bool:
        """True iff fewer than ``max_concurrent`` jobs are live."""
        return len(self._registry) < self._max
