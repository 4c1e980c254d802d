"""Observability: the report sink the scheduler pushes outcomes to."""

from dpmigrate.observability.report import MigrationReport, ReportItem, ReportSink

__all__ = ["MigrationReport", "ReportItem", "ReportSink"]
