"""
Centralized settings for dpmigrate.

:class:`MigrateSettings` is the single validated source of truth for a
migration run. Every field can be set through a ``DPM_*`` environment
variable (``DPM_MAX_CONCURRENT=8``) or a ``.env`` file found by
:mod:`~dpmigrate.core.config.loader`; CLI options override both.

Command templates are plain strings split with :func:`shlex.split` after
``str.format`` substitution. Available placeholders:

* ``{parfile}``   — absolute path of the parfile
* ``{name}``      — parfile base name without ``.par``
* ``{dumpfile}``  — dumpfile location built from ``dumpfile_template``
* ``{scn}``       — flashback SCN (empty when unset or ``use_flashback`` is off)
* ``{content}``   — ``METADATA_ONLY`` or ``ALL``
* ``{parallel}``  — per-process parallel degree
* ``{log_file}``  — path the process output is appended to

A template without ``{scn}`` gets ``flashback_scn=<scn>`` appended on the
export and network import; one without ``{content}`` gets
``content=METADATA_ONLY`` appended in metadata-only runs unless the parfile
already sets CONTENT.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class MigrateSettings(BaseSettings):
    """dpmigrate configuration."""

    model_config = SettingsConfigDict(
        env_prefix="DPM_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Scheduling ───────────────────────────────────────────────
    max_concurrent: int = Field(default=4, ge=1, description="Live export+import processes")
    parallel_degree: int = Field(default=5, ge=1, description="Parallel degree per process")

    # ── Inputs / outputs ─────────────────────────────────────────
    parfiles_dir: Path = Field(default=Path("parfiles"))
    log_dir: Path = Field(default=Path("logs"))

    # ── Commands ─────────────────────────────────────────────────
    export_command: str = Field(
        default="expdp parfile={parfile} dumpfile={dumpfile} parallel={parallel}",
    )
    import_command: str = Field(
        default="impdp parfile={parfile} dumpfile={dumpfile} parallel={parallel}",
    )
    network_import_command: str = Field(
        default="impdp parfile={parfile} parallel={parallel}",
    )
    flashback_scn: str = Field(default="")
    use_flashback: bool = Field(default=True, description="Pass flashback_scn when one is set")
    metadata_only: bool = Field(default=False, description="CONTENT=METADATA_ONLY")

    # ── Dumpfile destination ─────────────────────────────────────
    destination_base: str = Field(default="", description="Prefix for migrate_<session> paths")
    dumpfile_template: str = Field(default="{destination}/{name}%L.dmp")

    # ── Run control ──────────────────────────────────────────────
    terminate_on_interrupt: bool = Field(default=True)
    kill_timeout_seconds: float = Field(default=5.0, gt=0)
    write_ready_markers: bool = Field(default=True)

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="auto", description="json | console | auto")

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        value = value.upper()
        if value not in {"DEBUG", "INFO", "WARNING", "ERROR"}:
            raise ValueError(f"unsupported log level: {value}")
        return value

    @field_validator("log_format")
    @classmethod
    def _known_format(cls, value: str) -> str:
        value = value.lower()
        if value not in {"json", "console", "auto"}:
            raise ValueError(f"unsupported log format: {value}")
        return value

    @property
    def json_logs(self) -> bool | None:
        """``None`` lets logging auto-detect from the terminal."""
        if self.log_format == "auto":
            return None
        return self.log_format == "json"


# ── Settings factory with caching ────────────────────────────────────────

_settings_cache: dict[str, MigrateSettings] = {}


def get_settings(
    *,
    profile: str | None = None,
    project_root: Path | None = None,
    _force_reload: bool = False,
) -> MigrateSettings:
    """Load, validate, and cache a :class:`MigrateSettings` instance.

    Parameters
    ----------
    profile:
        Extra ``.env.{profile}`` file to include in the cascade.
    project_root:
        Override the auto-detected project root.
    _force_reload:
        Bypass cache and reload from disk.
    """
    from .loader import discover_env_files, find_project_root

    root = (project_root or find_project_root()).resolve()
    cache_key = f"{root}:{profile or ''}"

    if not _force_reload and cache_key in _settings_cache:
        return _settings_cache[cache_key]

    env_files = discover_env_files(root, profile)
    settings = MigrateSettings(
        _env_file=env_files or None,  # type: ignore[call-arg]
    )

    _settings_cache[cache_key] = settings
    return settings


def clear_settings_cache() -> None:
    """Clear the settings cache (primarily for testing)."""
    _settings_cache.clear()
