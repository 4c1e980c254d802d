"""Ready markers — small files announcing that a unit's export finished.

A marker ``<dir>/<name>.READY`` holds three ``key=value`` lines::

    timestamp=2026-01-15 10:15:00
    exit_code=0
    status=SUCCESS

External tooling (or a second operator session) can watch the marker
directory to follow export progress without talking to the scheduler.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from pathlib import Path

READY_SUFFIX = ".READY"


def marker_path(marker_dir: str | Path, name: str) -> Path:
    return Path(marker_dir) / f"{name}{READY_SUFFIX}"


def mark_ready(marker_dir: str | Path, name: str, exit_code: int | None = 0) -> Path:
    """Write the ready marker for ``name``; returns its path."""
    path = marker_path(marker_dir, name)
    path.parent.mkdir(parents=True, exist_ok=True)
    status = "SUCCESS" if exit_code == 0 else "FAILED"
    path.write_text(
        f"timestamp={datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n"
        f"exit_code={'' if exit_code is None else exit_code}\n"
        f"status={status}\n",
        encoding="utf-8",
    )
    return path


def is_ready(marker_dir: str | Path, name: str) -> bool:
    """Non-blocking check for the marker."""
    return marker_path(marker_dir, name).is_file()


def read_status(marker_dir: str | Path, name: str) -> str | None:
    """``"SUCCESS"``/``"FAILED"`` from the marker, or ``None`` if absent."""
    path = marker_path(marker_dir, name)
    if not path.is_file():
        return None
    for line in path.read_text(encoding="utf-8").splitlines():
        key, _, value = line.partition("=")
        if key == "status":
            return value.strip()
    return None


async def wait_ready(
    marker_dir: str | Path,
    name: str,
    interval: float = 5.0,
    timeout: float | None = None,
) -> str | None:
    """Wait until the marker exists and return its status.

    Raises:
        TimeoutError: If ``timeout`` elapses first.
    """

    async def _poll() -> str | None:
        while not is_ready(marker_dir, name):
            await asyncio.sleep(interval)
        return read_status(marker_dir, name)

    return await asyncio.wait_for(_poll(), timeout=timeout)
