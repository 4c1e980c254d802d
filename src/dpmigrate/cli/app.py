"""
Root Typer application for the dpmigrate CLI.

Commands:
    dpmigrate migrate    run the export→import pipeline over a parfiles dir
    dpmigrate parfiles   list the parfiles a migration would queue

Exit codes: 0 success (or dry run), 1 completed with errors, 2 configuration
error, 130 interrupted.
"""

from __future__ import annotations

import asyncio
import json
import signal
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar

import typer
from pydantic import ValidationError
from rich.table import Table
from typer import Typer

from dpmigrate.cli.utils import CONFIG_ERROR_EXIT, console, err_console, fail, fail_from, print_summary
from dpmigrate.core.config import MigrateSettings, get_settings
from dpmigrate.core.errors import ConfigError, MigrateError
from dpmigrate.core.logging import LogContext, configure_logging, get_logger
from dpmigrate.execution.models import JobStage, RunStatus, UnitStage
from dpmigrate.execution.parallel import run_parallel
from dpmigrate.execution.pipeline import PipelineDriver
from dpmigrate.execution.runners import DataPumpRunner, build_units, list_parfiles, new_session_id
from dpmigrate.observability.report import MigrationReport

logger = get_logger(__name__)

T = TypeVar("T")

MODES = ("dumpfile", "network-link")

app = Typer(
    name="dpmigrate",
    help="dpmigrate — concurrent Oracle Data Pump migrations driven by parfiles.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from importlib.metadata import version as pkg_version

        try:
            v = pkg_version("dpmigrate")
        except Exception:
            from dpmigrate import __version__ as v
        typer.echo(f"dpmigrate {v}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """dpmigrate CLI — export and import parfiles under one concurrency bound."""


# ── Helpers ──────────────────────────────────────────────────────────────


def _load_settings(profile: str | None, **overrides: Any) -> MigrateSettings:
    settings = get_settings(profile=profile, _force_reload=True)
    updates = {key: value for key, value in overrides.items() if value is not None}
    return settings.model_copy(update=updates) if updates else settings


async def _with_signals(work: Callable[[], Awaitable[T]], on_signal: Callable[[], None]) -> T:
    """Run ``work`` with SIGINT/SIGTERM routed to ``on_signal``."""
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, on_signal)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            logger.debug("cli.signal_handler_unavailable", signal=sig.name)
    try:
        return await work()
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


def _print_plan(units: list, runner: DataPumpRunner, mode: str) -> None:
    table = Table(title=f"Dry run — {len(units)} parfile(s), mode {mode}")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Parfile", style="bold", no_wrap=True)
    if mode == "network-link":
        table.add_column("Import", overflow="fold")
        for unit in units:
            argv = runner.command_for(
                unit, JobStage.IMPORT, runner.settings.network_import_command, flashback=True
            )
            table.add_row(str(unit.index + 1), unit.name, " ".join(argv))
    else:
        table.add_column("Export", overflow="fold")
        table.add_column("Import", overflow="fold")
        for unit in units:
            table.add_row(
                str(unit.index + 1),
                unit.name,
                " ".join(runner.command_for(unit, JobStage.EXPORT)),
                " ".join(runner.command_for(unit, JobStage.IMPORT)),
            )
    console.print(table)


async def _run_network_link(
    units: list,
    runner: DataPumpRunner,
    settings: MigrateSettings,
    report: MigrationReport,
) -> RunStatus:
    stop = asyncio.Event()
    summary = await _with_signals(
        lambda: run_parallel(
            units,
            runner.run_network_import,
            settings.max_concurrent,
            report=report,
            interrupt=stop,
            terminate_on_interrupt=settings.terminate_on_interrupt,
            kill_timeout_seconds=settings.kill_timeout_seconds,
        ),
        stop.set,
    )
    if summary.interrupted:
        status = RunStatus.INTERRUPTED
    elif summary.failed:
        status = RunStatus.FAILED
    else:
        status = RunStatus.SUCCESS
    report.metric("total_parfiles", summary.total)
    report.metric("imports_started", summary.finished)
    report.metric("imports_success", summary.succeeded, "add")
    report.metric("imports_failed", summary.failed, "add")
    report.metric("status", status.value)
    return status


# ── Commands ─────────────────────────────────────────────────────────────


@app.command()
def migrate(
    max_concurrent: int | None = typer.Option(
        None, "--max-concurrent", "-c", min=1, help="Live export+import processes."
    ),
    parfiles_dir: Path | None = typer.Option(None, "--parfiles-dir", "-p", help="Directory of *.par files."),
    log_dir: Path | None = typer.Option(None, "--log-dir", "-l", help="Per-unit process logs."),
    mode: str = typer.Option("dumpfile", "--mode", "-m", help="dumpfile | network-link"),
    scn: str | None = typer.Option(None, "--scn", help="Flashback SCN passed to the export."),
    no_scn: bool = typer.Option(False, "--no-scn", help="Disable flashback_scn (use current DB state)."),
    parallel: int | None = typer.Option(
        None, "--parallel", min=1, help="Data Pump parallel degree per process."
    ),
    metadata_only: bool = typer.Option(
        False, "--metadata-only", help="Migrate metadata only (CONTENT=METADATA_ONLY)."
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would run, start nothing."),
    report_file: Path | None = typer.Option(None, "--report", help="Write the JSON report here."),
    profile: str | None = typer.Option(None, "--profile", help="Settings profile (.env.<profile>)."),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Export and import every parfile with bounded concurrency."""
    if mode not in MODES:
        raise fail(f"Unknown mode {mode!r} (expected one of: {', '.join(MODES)})", CONFIG_ERROR_EXIT)

    try:
        settings = _load_settings(
            profile,
            max_concurrent=max_concurrent,
            parfiles_dir=parfiles_dir,
            log_dir=log_dir,
            flashback_scn=scn,
            parallel_degree=parallel,
            use_flashback=False if no_scn else None,
            metadata_only=True if metadata_only else None,
        )
    except ValidationError as exc:
        raise fail(f"Invalid settings: {exc}", CONFIG_ERROR_EXIT) from exc

    configure_logging(level=settings.log_level, json_format=settings.json_logs)
    session_id = new_session_id()

    with LogContext(session_id=session_id, mode=mode):
        try:
            parfiles = list_parfiles(settings.parfiles_dir)
            if not parfiles:
                raise ConfigError(f"No parfiles found in {settings.parfiles_dir}")
            runner = DataPumpRunner(settings, session_id)
        except ConfigError as exc:
            raise fail_from(exc, CONFIG_ERROR_EXIT) from exc

        units = build_units(parfiles)
        report = MigrationReport(session_id=session_id, console=None if json_out else console)
        report.set_meta("mode", mode)
        report.set_meta("parfiles_dir", settings.parfiles_dir)
        report.set_meta("max_concurrent", settings.max_concurrent)
        report.set_meta("parallel", settings.parallel_degree)
        report.set_meta("content", "METADATA_ONLY" if settings.metadata_only else "ALL")
        if runner.scn:
            report.set_meta("flashback_scn", runner.scn)
        logger.info(
            "cli.migrate",
            parfiles=len(units),
            max_concurrent=settings.max_concurrent,
            dry_run=dry_run,
        )

        if dry_run:
            if not json_out:
                _print_plan(units, runner, mode)
            report.metric("total_parfiles", len(units))
            report.metric("status", RunStatus.DRY_RUN.value)
            status = RunStatus.DRY_RUN
        elif mode == "network-link":
            try:
                status = asyncio.run(_run_network_link(units, runner, settings, report))
            except MigrateError as exc:
                print_summary(report, as_json=json_out)
                raise fail_from(exc) from exc
        else:
            driver = PipelineDriver(
                units,
                runner.run_export,
                runner.run_import,
                max_concurrent=settings.max_concurrent,
                report=report,
                marker_dir=settings.log_dir / "markers" if settings.write_ready_markers else None,
                terminate_on_interrupt=settings.terminate_on_interrupt,
                kill_timeout_seconds=settings.kill_timeout_seconds,
            )
            try:
                result = asyncio.run(_with_signals(driver.run, driver.interrupt))
            except MigrateError as exc:
                print_summary(report, as_json=json_out)
                raise fail_from(exc) from exc
            status = result.status
            failed = result.units_in(UnitStage.FAILED)
            if failed and not json_out:
                err_console.print(
                    f"[red]Failed parfiles:[/red] {', '.join(unit.name for unit in failed)}"
                )

        print_summary(report, as_json=json_out)
        if report_file is not None:
            report.write_json(report_file)
        if status is RunStatus.INTERRUPTED:
            err_console.print("[yellow]Interrupted, not all parfiles were migrated.[/yellow]")

    raise typer.Exit(code=status.exit_code)


@app.command("parfiles")
def parfiles_cmd(
    parfiles_dir: Path | None = typer.Option(None, "--parfiles-dir", "-p"),
    profile: str | None = typer.Option(None, "--profile"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List the parfiles a migration would queue, in run order."""
    try:
        settings = _load_settings(profile, parfiles_dir=parfiles_dir)
        paths = list_parfiles(settings.parfiles_dir)
    except ValidationError as exc:
        raise fail(f"Invalid settings: {exc}", CONFIG_ERROR_EXIT) from exc
    except ConfigError as exc:
        raise fail_from(exc, CONFIG_ERROR_EXIT) from exc

    if json_out:
        console.print_json(
            json.dumps([{"index": i, "name": p.name, "size": p.stat().st_size} for i, p in enumerate(paths)])
        )
        return
    if not paths:
        console.print("[dim]No parfiles.[/dim]")
        return

    table = Table(title=f"Parfiles in {settings.parfiles_dir}")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Name", style="bold")
    table.add_column("Size", justify="right")
    for i, path in enumerate(paths, start=1):
        table.add_row(str(i), path.name, f"{path.stat().st_size:,}")
    console.print(table)
