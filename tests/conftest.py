"""
Shared pytest fixtures for dpmigrate tests.

Provides:
- Isolation of settings cache, structlog configuration and DPM_* env vars
- ``cluster`` / ``sink`` fakes (see ``tests/_support/fakes.py``)
- A temporary parfiles directory
"""

from __future__ import annotations

import os
from collections.abc import Iterator
from pathlib import Path

import pytest
import structlog

from dpmigrate.core.config import clear_settings_cache
from tests._support.fakes import FakeCluster, RecordingSink


# =============================================================================
# Isolation
# =============================================================================


@pytest.fixture(autouse=True)
def _isolate(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    for key in list(os.environ):
        if key.startswith("DPM_"):
            monkeypatch.delenv(key, raising=False)
    clear_settings_cache()
    yield
    clear_settings_cache()
    structlog.contextvars.clear_contextvars()
    structlog.reset_defaults()


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def parfiles_dir(tmp_path: Path) -> Path:
    """Three parfiles plus a file that is not one."""
    directory = tmp_path / "parfiles"
    directory.mkdir()
    for name in ("hr", "sales", "finance"):
        (directory / f"{name}.par").write_text(f"schemas={name.upper()}\n", encoding="utf-8")
    (directory / "README.txt").write_text("not a parfile\n", encoding="utf-8")
    return directory
