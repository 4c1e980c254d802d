"""
Environment-file discovery.

Implements the cascading load order::

    .env.base  →  .env.{profile}  →  .env.local  →  .env  →  real env vars

Only discovery lives here; parsing is left to ``pydantic-settings``, which
receives the ordered file list. Later files override earlier ones and real
environment variables always win.
"""

from __future__ import annotations

import os
from pathlib import Path


def find_project_root(start: Path | None = None) -> Path:
    """Walk upward from *start* to find the migration project root.

    Recognised root markers (checked in order):

    * ``pyproject.toml``
    * ``.git`` directory
    * ``parfiles`` directory

    Falls back to *start* (or cwd) when no marker is found.
    """
    current = (start or Path.cwd()).resolve()
    for directory in (current, *current.parents):
        if (directory / "pyproject.toml").exists():
            return directory
        if (directory / ".git").exists():
            return directory
        if (directory / "parfiles").is_dir():
            return directory
    return current


def discover_env_files(
    project_root: Path | None = None,
    profile: str | None = None,
) -> list[Path]:
    """Return an ordered list of ``.env`` files that exist on disk.

    Load order:

    1. ``.env.base``
    2. ``.env.{profile}`` (if *profile* is provided or ``DPM_PROFILE`` is set)
    3. ``.env.local``
    4. ``.env``
    """
    root = (project_root or find_project_root()).resolve()
    profile = profile or os.environ.get("DPM_PROFILE")

    candidates: list[Path] = [root / ".env.base"]
    if profile:
        candidates.append(root / f".env.{profile}")
    candidates.append(root / ".env.local")
    candidates.append(root / ".env")

    return [p for p in candidates if p.is_file()]
