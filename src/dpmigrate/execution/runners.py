"""Unit work functions — spawn expdp/impdp for a parfile.

:class:`DataPumpRunner` turns a :class:`~dpmigrate.execution.models.Unit`
into a running OS process and hands the ``asyncio`` process object straight
back to the driver; it never waits for exit. Output (stdout and stderr) is
appended to one log file per unit and stage::

    <log_dir>/exports/<base>_export.log
    <log_dir>/imports/<base>_import.log

Commands come from :class:`~dpmigrate.core.config.MigrateSettings`
templates, formatted with ``str.format`` and split with :func:`shlex.split`.

Example::

    runner = DataPumpRunner(settings, session_id=new_session_id())
    units = build_units(list_parfiles(settings.parfiles_dir))
    proc = await runner.run_export(units[0])
"""

from __future__ import annotations

import asyncio
import shlex
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path

from dpmigrate.core.config import MigrateSettings
from dpmigrate.core.errors import ConfigError, InvalidConfigError, MissingConfigError, SpawnError
from dpmigrate.core.logging import get_logger
from dpmigrate.execution.models import JobStage, Unit

logger = get_logger(__name__)

PARFILE_SUFFIX = ".par"
_PLACEHOLDERS = ("parfile", "name", "dumpfile", "scn", "content", "parallel", "log_file")


def new_session_id() -> str:
    """Timestamp session id, e.g. ``20260115_101500``."""
    return datetime.now().strftime("%Y%m%d_%H%M%S")


def list_parfiles(parfiles_dir: str | Path) -> list[Path]:
    """Sorted ``*.par`` files in ``parfiles_dir``.

    Raises:
        ConfigError: If the directory does not exist.
    """
    directory = Path(parfiles_dir)
    if not directory.is_dir():
        raise ConfigError(f"Parfiles directory not found: {directory}")
    return sorted(p for p in directory.iterdir() if p.is_file() and p.suffix == PARFILE_SUFFIX)


def build_units(paths: Iterable[Path]) -> list[Unit]:
    return [Unit(index=i, name=path.name, path=path) for i, path in enumerate(paths)]


def parfile_sets_content(path: Path | None) -> bool:
    """Whether the parfile already carries a CONTENT= line."""
    if path is None or not path.is_file():
        return False
    for line in path.read_text(encoding="utf-8", errors="replace").splitlines():
        key, sep, _ = line.partition("=")
        if sep and key.strip().upper() == "CONTENT":
            return True
    return False


class DataPumpRunner:
    """Spawns the export and import processes for units."""

    def __init__(self, settings: MigrateSettings, session_id: str) -> None:
        self.settings = settings
        self.session_id = session_id
        base = settings.destination_base.rstrip("/")
        self.destination = f"{base}/migrate_{session_id}" if base else f"migrate_{session_id}"
        self._check_templates()

    # ── Work functions ───────────────────────────────────────────────

    async def run_export(self, unit: Unit) -> asyncio.subprocess.Process:
        return await self._spawn(unit, JobStage.EXPORT, self.settings.export_command)

    async def run_import(self, unit: Unit) -> asyncio.subprocess.Process:
        return await self._spawn(unit, JobStage.IMPORT, self.settings.import_command)

    async def run_network_import(self, unit: Unit) -> asyncio.subprocess.Process:
        """Import over a database link (no dumpfile, no export stage)."""
        return await self._spawn(unit, JobStage.IMPORT, self.settings.network_import_command, flashback=True)

    # ── Paths / commands ─────────────────────────────────────────────

    def dumpfile_for(self, unit: Unit) -> str:
        return self.settings.dumpfile_template.format(
            destination=self.destination,
            name=unit.base_name,
        )

    def log_file_for(self, unit: Unit, stage: JobStage) -> Path:
        folder = "exports" if stage is JobStage.EXPORT else "imports"
        return self.settings.log_dir / folder / f"{unit.base_name}_{stage.value}.log"

    @property
    def scn(self) -> str:
        """The flashback SCN in effect ("" when unset or disabled)."""
        return self.settings.flashback_scn if self.settings.use_flashback else ""

    def command_for(
        self,
        unit: Unit,
        stage: JobStage,
        template: str | None = None,
        *,
        flashback: bool | None = None,
    ) -> list[str]:
        """Argv for ``unit``'s ``stage``.

        ``flashback`` says whether this command reads the source database as
        of the SCN; it defaults to true for exports only. Network imports pass
        it explicitly.
        """
        if template is None:
            settings = self.settings
            template = settings.export_command if stage is JobStage.EXPORT else settings.import_command
        if flashback is None:
            flashback = stage is JobStage.EXPORT
        parfile = unit.path.resolve() if unit.path is not None else Path(unit.name)
        argv = shlex.split(
            template.format(
                parfile=parfile,
                name=unit.base_name,
                dumpfile=self.dumpfile_for(unit),
                scn=self.scn,
                content="METADATA_ONLY" if self.settings.metadata_only else "ALL",
                parallel=self.settings.parallel_degree,
                log_file=self.log_file_for(unit, stage),
            )
        )
        if flashback and self.scn and "{scn}" not in template:
            argv.append(f"flashback_scn={self.scn}")
        if (
            self.settings.metadata_only
            and "{content}" not in template
            and not parfile_sets_content(unit.path)
        ):
            argv.append("content=METADATA_ONLY")
        return argv

    def _check_templates(self) -> None:
        values = {key: "x" for key in _PLACEHOLDERS}
        for key in ("export_command", "import_command", "network_import_command"):
            template = getattr(self.settings, key)
            try:
                argv = shlex.split(template.format(**values))
            except (KeyError, IndexError, ValueError) as exc:
                raise InvalidConfigError(key, template, f"Bad command template {key}: {exc}") from exc
            if not argv:
                raise MissingConfigError(key, f"Command template {key} is empty")
        try:
            self.settings.dumpfile_template.format(destination="x", name="x")
        except (KeyError, IndexError, ValueError) as exc:
            raise InvalidConfigError(
                "dumpfile_template", self.settings.dumpfile_template, f"Bad dumpfile template: {exc}"
            ) from exc

    # ── Spawn ────────────────────────────────────────────────────────

    async def _spawn(
        self, unit: Unit, stage: JobStage, template: str, *, flashback: bool | None = None
    ) -> asyncio.subprocess.Process:
        argv = self.command_for(unit, stage, template, flashback=flashback)
        log_file = self.log_file_for(unit, stage)
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            with log_file.open("ab") as out:
                out.write(
                    f"# {datetime.now():%Y-%m-%d %H:%M:%S} {stage.value} {unit.name}: "
                    f"{shlex.join(argv)}\n".encode()
                )
                out.flush()
                process = await asyncio.create_subprocess_exec(
                    *argv,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=out,
                    stderr=asyncio.subprocess.STDOUT,
                )
        except OSError as exc:
            raise SpawnError(
                f"Cannot start {stage.value} for {unit.name}: {exc}",
                cause=exc,
            ).with_context(unit=unit.name, stage=stage.value, command=shlex.join(argv)) from exc

        logger.debug(
            "runner.spawned",
            stage=stage.value,
            unit=unit.name,
            pid=process.pid,
            log_file=str(log_file),
        )
        return process
