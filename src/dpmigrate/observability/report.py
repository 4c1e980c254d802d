"""Migration report sink — status lines and named metrics.

The pipeline driver pushes two kinds of records here:

- **items**: one human-facing line per outcome (``ok``/``warn``/``fail``/``skip``)
- **metrics**: named values updated with ``set``, ``add``, ``max`` or ``min``

Example:
    >>> report = MigrationReport()
    >>> report.item("ok", "EXPORT: hr.par", "[1/3]")
    >>> report.metric("imports_success", 2, "add")
    >>> report.metric("imports_success", 1, "add")
    >>> report.metrics["imports_success"]
    3

Rendering the report (markdown, HTML) is left to other tools; this module
only records, totals, and serialises.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal, Protocol, runtime_checkable

from rich.console import Console
from rich.markup import escape

from dpmigrate.core.logging import get_logger

logger = get_logger(__name__)

ItemStatus = Literal["ok", "warn", "fail", "skip"]
MetricMode = Literal["set", "add", "max", "min"]

_ITEM_STYLE: dict[str, tuple[str, str]] = {
    "ok": ("green", "✓"),
    "fail": ("red", "✗"),
    "warn": ("yellow", "⚠"),
    "skip": ("dim", "○"),
}


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


@runtime_checkable
class ReportSink(Protocol):
    """What the driver needs from a reporting collaborator."""

    def item(self, status: str, label: str, detail: str = "") -> None: ...

    def metric(self, name: str, value: Any, mode: str = "set") -> None: ...


@dataclass(frozen=True)
class ReportItem:
    status: str
    label: str
    detail: str = ""
    recorded_at: datetime = field(default_factory=utcnow)


class MigrationReport:
    """In-memory :class:`ReportSink` with optional console echo.

    Parameters
    ----------
    title : str
        Report title, carried into :meth:`to_dict`.
    session_id : str
        Session identifier of the run.
    console : rich.console.Console | None
        When given, every item is echoed as it is recorded.
    """

    def __init__(
        self,
        title: str = "Data Pump Migration",
        session_id: str = "",
        console: Console | None = None,
    ) -> None:
        self.title = title
        self.session_id = session_id
        self.items: list[ReportItem] = []
        self.metrics: dict[str, Any] = {}
        self.meta: dict[str, str] = {}
        self._console = console
        self._started_at = utcnow()

    # ── Sink protocol ────────────────────────────────────────────────

    def item(self, status: str, label: str, detail: str = "") -> None:
        """Record one status line. Never raises."""
        status = status if status in _ITEM_STYLE else "warn"
        self.items.append(ReportItem(status=status, label=label, detail=detail))
        if self._console is None:
            return
        colour, symbol = _ITEM_STYLE[status]
        suffix = f" - {escape(detail)}" if detail else ""
        try:
            self._console.print(f"  [{colour}]{symbol}[/{colour}] {escape(label)}{suffix}")
        except (OSError, ValueError) as exc:
            logger.warning("report.echo_failed", label=label, error=str(exc))

    def metric(self, name: str, value: Any, mode: str = "set") -> None:
        """Record a metric.

        ``add``/``max``/``min`` treat a missing prior value as 0 (``min``
        starts from the new value).
        """
        if mode == "set":
            self.metrics[name] = value
        elif mode == "add":
            self.metrics[name] = self.metrics.get(name, 0) + value
        elif mode == "max":
            self.metrics[name] = max(self.metrics.get(name, value), value)
        elif mode == "min":
            self.metrics[name] = min(self.metrics.get(name, value), value)
        else:
            raise ValueError(f"Unknown metric mode: {mode!r}")

    # ── Metadata / totals ────────────────────────────────────────────

    def set_meta(self, key: str, value: Any) -> None:
        self.meta[key] = str(value)

    def totals(self) -> dict[str, int]:
        """Count recorded items by status."""
        counts = {"total": len(self.items), "ok": 0, "warn": 0, "fail": 0, "skip": 0}
        for entry in self.items:
            counts[entry.status] += 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        """JSON-serialisable summary (secrets in metadata are masked)."""
        meta = {
            key: ("********" if "PASSWORD" in key.upper() or "SECRET" in key.upper() else value)
            for key, value in self.meta.items()
        }
        return {
            "title": self.title,
            "session": self.session_id,
            "timestamp": utcnow().isoformat(),
            "duration_seconds": (utcnow() - self._started_at).total_seconds(),
            "summary": self.totals(),
            "metadata": meta,
            "metrics": dict(self.metrics),
            "items": [
                {"status": i.status, "label": i.label, "detail": i.detail}
                for i in self.items
            ],
        }

    def write_json(self, path: str | Path) -> Path:
        """Persist :meth:`to_dict` to ``path``."""
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(json.dumps(self.to_dict(), indent=2, default=str), encoding="utf-8")
        logger.info("report.written", path=str(target))
        return target
