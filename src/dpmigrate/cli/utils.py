"""
CLI utility helpers — consoles and summary rendering.
"""

from __future__ import annotations

import json
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from dpmigrate.core.errors import MigrateError
from dpmigrate.observability.report import MigrationReport

console = Console()
err_console = Console(stderr=True)

CONFIG_ERROR_EXIT = 2

_STATUS_STYLE = {
    "SUCCESS": "bold green",
    "COMPLETED_WITH_ERRORS": "bold red",
    "INTERRUPTED": "bold yellow",
    "DRY_RUN": "bold cyan",
}


def fail(message: str, code: int = 1) -> typer.Exit:
    """Print an error and return the ``typer.Exit`` to raise."""
    err_console.print(f"[bold red]Error:[/bold red] {message}")
    return typer.Exit(code=code)


def fail_from(exc: MigrateError, code: int = 1) -> typer.Exit:
    detail = exc.context.to_dict()
    suffix = f" [dim]{json.dumps(detail, default=str)}[/dim]" if detail else ""
    err_console.print(f"[bold red]Error[/bold red] ({exc.category.value}): {exc.message}{suffix}")
    return typer.Exit(code=code)


def print_summary(report: MigrationReport, *, as_json: bool = False) -> None:
    """Render the end-of-run summary from the report's metrics."""
    metrics: dict[str, Any] = report.metrics
    if as_json:
        console.print_json(json.dumps(report.to_dict(), default=str))
        return

    table = Table(title=f"{report.title} — {report.session_id}" if report.session_id else report.title)
    table.add_column("Stage", style="bold")
    table.add_column("Started", justify="right")
    table.add_column("Succeeded", justify="right", style="green")
    table.add_column("Failed", justify="right", style="red")
    table.add_column("Skipped", justify="right", style="dim")
    table.add_row(
        "Export",
        str(metrics.get("exports_started", 0)),
        str(metrics.get("exports_success", 0)),
        str(metrics.get("exports_failed", 0)),
        "-",
    )
    table.add_row(
        "Import",
        str(metrics.get("imports_started", 0)),
        str(metrics.get("imports_success", 0)),
        str(metrics.get("imports_failed", 0)),
        str(metrics.get("imports_skipped", 0)),
    )
    console.print(table)

    status = str(metrics.get("status", "UNKNOWN"))
    style = _STATUS_STYLE.get(status, "bold")
    console.print(
        f"Parfiles: {metrics.get('total_parfiles', 0)}  Status: [{style}]{status}[/{style}]"
    )
