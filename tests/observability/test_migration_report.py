"""Tests for MigrationReport — items, metrics, JSON summary."""

from __future__ import annotations

import io
import json

import pytest
from rich.console import Console

from dpmigrate.observability.report import MigrationReport, ReportSink


class TestItems:
    def test_records_items(self):
        report = MigrationReport()
        report.item("ok", "EXPORT: hr.par", "[1/2]")
        report.item("fail", "IMPORT: hr.par")
        assert [(i.status, i.label, i.detail) for i in report.items] == [
            ("ok", "EXPORT: hr.par", "[1/2]"),
            ("fail", "IMPORT: hr.par", ""),
        ]

    def test_unknown_status_becomes_warn(self):
        report = MigrationReport()
        report.item("weird", "something")
        assert report.items[0].status == "warn"

    def test_totals(self):
        report = MigrationReport()
        for status in ("ok", "ok", "fail", "skip", "warn"):
            report.item(status, "x")
        assert report.totals() == {"total": 5, "ok": 2, "warn": 1, "fail": 1, "skip": 1}

    def test_console_echo(self):
        buffer = io.StringIO()
        report = MigrationReport(console=Console(file=buffer, width=120, color_system=None))
        report.item("ok", "EXPORT: [hr].par", "[1/3]")
        output = buffer.getvalue()
        assert "EXPORT: [hr].par" in output
        assert "[1/3]" in output

    def test_satisfies_sink_protocol(self):
        assert isinstance(MigrationReport(), ReportSink)


class TestMetrics:
    def test_set_overwrites(self):
        report = MigrationReport()
        report.metric("status", "RUNNING")
        report.metric("status", "SUCCESS", "set")
        assert report.metrics["status"] == "SUCCESS"

    def test_add_accumulates(self):
        report = MigrationReport()
        report.metric("imports_success", 2, "add")
        report.metric("imports_success", 3, "add")
        assert report.metrics["imports_success"] == 5

    def test_max_and_min(self):
        report = MigrationReport()
        for value in (3, 9, 1):
            report.metric("peak", value, "max")
            report.metric("low", value, "min")
        assert report.metrics["peak"] == 9
        assert report.metrics["low"] == 1

    def test_unknown_mode(self):
        with pytest.raises(ValueError):
            MigrationReport().metric("x", 1, "avg")


class TestSerialisation:
    def test_to_dict_masks_secrets(self):
        report = MigrationReport(session_id="20260115_101500")
        report.set_meta("mode", "dumpfile")
        report.set_meta("db_password", "hunter2")
        report.set_meta("API_SECRET", "abc")
        data = report.to_dict()

        assert data["session"] == "20260115_101500"
        assert data["metadata"]["mode"] == "dumpfile"
        assert data["metadata"]["db_password"] == "********"
        assert data["metadata"]["API_SECRET"] == "********"

    def test_write_json(self, tmp_path):
        report = MigrationReport()
        report.item("ok", "EXPORT: hr.par")
        report.metric("total_parfiles", 1)
        path = report.write_json(tmp_path / "out" / "report.json")

        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["summary"]["ok"] == 1
        assert data["metrics"]["total_parfiles"] == 1
        assert data["items"][0]["label"] == "EXPORT: hr.par"
