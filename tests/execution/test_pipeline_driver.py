"""Tests for PipelineDriver — bounded export→import scheduling."""

from __future__ import annotations

import asyncio

import pytest
from structlog.testing import capture_logs

from dpmigrate.core.errors import InternalConsistencyError, InvalidConfigError
from dpmigrate.execution.markers import read_status
from dpmigrate.execution.models import PipelineCounters, RunStatus, Unit, UnitStage
from dpmigrate.execution.pipeline import PipelineDriver
from tests._support.fakes import FakeCluster, FakeProcess, RecordingSink, make_units, settle


# ── Helpers ──────────────────────────────────────────────────────────────


def _driver(cluster: FakeCluster, units: list[Unit], max_concurrent: int, **kwargs) -> PipelineDriver:
    return PipelineDriver(
        units,
        cluster.run_export,
        cluster.run_import,
        max_concurrent=max_concurrent,
        **kwargs,
    )


async def _drive_manually(cluster: FakeCluster, task: asyncio.Task) -> None:
    """Finish live processes one at a time until the run returns."""
    while not task.done():
        live = sorted(cluster.live)
        if live:
            cluster.finish(*live[0])
        await settle()


def _assert_accounting(counters: PipelineCounters) -> None:
    assert counters.exports_started == counters.exports_completed
    assert counters.exports_completed == counters.exports_succeeded + counters.exports_failed
    assert counters.imports_started == counters.imports_succeeded + counters.imports_failed
    assert counters.imports_completed == counters.imports_started + counters.imports_skipped
    assert counters.imports_skipped == counters.exports_failed


# ── Scenarios ────────────────────────────────────────────────────────────


class TestScenarios:
    @pytest.mark.asyncio
    async def test_all_succeed_unbounded(self, cluster, sink):
        driver = _driver(cluster, make_units(3), 4, report=sink)
        result = await driver.run()

        assert result.status is RunStatus.SUCCESS
        assert result.counters.exports_succeeded == 3
        assert result.counters.imports_succeeded == 3
        assert all(u.stage is UnitStage.COMPLETED for u in result.units)
        _assert_accounting(result.counters)

    @pytest.mark.asyncio
    async def test_serial_with_failed_export(self, sink):
        cluster = FakeCluster(exit_codes={("export", "unit2.par"): 1})
        driver = _driver(cluster, make_units(3), 1, report=sink)
        result = await driver.run()

        c = result.counters
        assert c.exports_failed == 1
        assert c.exports_succeeded == 2
        assert c.imports_started == 2
        assert c.imports_succeeded == 2
        assert c.imports_skipped == 1
        assert c.imports_failed == 0
        assert result.status is RunStatus.FAILED
        assert "unit2.par" not in cluster.started("import")
        assert result.units[1].stage is UnitStage.FAILED
        _assert_accounting(c)

    @pytest.mark.asyncio
    async def test_bounded_refill(self):
        cluster = FakeCluster(manual=True)
        driver = _driver(cluster, make_units(5), 2)
        task = asyncio.create_task(driver.run())
        await settle()

        assert cluster.started("export") == ["unit1.par", "unit2.par"]
        assert cluster.started("import") == []

        # export 1 done → its import takes the freed slot, no new export
        cluster.finish("export", "unit1.par")
        await settle()
        assert cluster.started("import") == ["unit1.par"]
        assert cluster.started("export") == ["unit1.par", "unit2.par"]

        # import 1 done → next pending export
        cluster.finish("import", "unit1.par")
        await settle()
        assert cluster.started("export") == ["unit1.par", "unit2.par", "unit3.par"]

        await _drive_manually(cluster, task)
        result = task.result()
        assert result.status is RunStatus.SUCCESS
        assert result.peak_live <= 2
        assert cluster.peak <= 2

    @pytest.mark.asyncio
    async def test_zero_units(self, cluster, sink):
        driver = _driver(cluster, [], 4, report=sink)
        result = await driver.run()

        assert result.status is RunStatus.SUCCESS
        assert cluster.events == []
        assert sink.items == []
        assert sink.metrics["total_parfiles"] == 0
        assert sink.metrics["exports_started"] == 0
        assert sink.metrics["imports_success"] == 0
        assert sink.metrics["status"] == "SUCCESS"


# ── Scheduling properties ────────────────────────────────────────────────


class TestSchedulingProperties:
    @pytest.mark.asyncio
    async def test_unbounded_starts_every_export_first(self):
        cluster = FakeCluster(manual=True)
        driver = _driver(cluster, make_units(4), 4)
        task = asyncio.create_task(driver.run())
        await settle()

        assert len(cluster.started("export")) == 4
        assert driver.live_count == 4
        await _drive_manually(cluster, task)
        assert task.result().succeeded

    @pytest.mark.asyncio
    async def test_single_slot_is_fully_serial(self):
        cluster = FakeCluster(delays={("export", "unit1.par"): 0.02, ("import", "unit2.par"): 0.015})
        result = await _driver(cluster, make_units(3), 1).run()

        assert result.succeeded
        assert cluster.peak == 1
        expected: list[tuple[str, str, str]] = []
        for name in ("unit1.par", "unit2.par", "unit3.par"):
            for stage in ("export", "import"):
                expected += [("start", stage, name), ("end", stage, name)]
        assert cluster.events == expected

    @pytest.mark.asyncio
    @pytest.mark.parametrize("count, limit", [(1, 1), (4, 2), (6, 3), (7, 2), (5, 8)])
    async def test_live_never_exceeds_limit(self, count, limit):
        delays = {}
        for i in range(count):
            delays[("export", f"unit{i + 1}.par")] = 0.001 * ((i * 7) % 5 + 1)
            delays[("import", f"unit{i + 1}.par")] = 0.001 * ((i * 3) % 4 + 1)
        cluster = FakeCluster(delays=delays, exit_codes={("export", "unit2.par"): 1})
        driver = _driver(cluster, make_units(count), limit)
        result = await driver.run()

        assert cluster.peak <= limit
        assert result.peak_live <= limit
        assert cluster.overlap_violations == []
        assert result.counters.imports_completed == count
        assert all(u.is_settled for u in result.units)
        _assert_accounting(result.counters)

    @pytest.mark.asyncio
    async def test_exports_start_in_input_order(self):
        cluster = FakeCluster(delays={("export", "unit1.par"): 0.03})
        await _driver(cluster, make_units(5), 2).run()
        assert cluster.started("export") == [f"unit{i}.par" for i in range(1, 6)]

    @pytest.mark.asyncio
    async def test_history_is_monotonic(self, cluster):
        driver = _driver(cluster, make_units(3), 2)
        result = await driver.run()
        history = driver.history

        assert history[0] == PipelineCounters()
        assert history[-1] == result.counters
        for before, after in zip(history, history[1:]):
            for name, value in after.to_dict().items():
                assert value >= before.to_dict()[name]


# ── Unit failures ────────────────────────────────────────────────────────


class TestUnitFailures:
    @pytest.mark.asyncio
    async def test_import_failure(self, sink):
        cluster = FakeCluster(exit_codes={("import", "unit1.par"): 5})
        result = await _driver(cluster, make_units(2), 2, report=sink).run()

        assert result.status is RunStatus.FAILED
        assert result.counters.imports_failed == 1
        assert result.counters.imports_succeeded == 1
        assert result.units[0].stage is UnitStage.FAILED
        assert result.units[1].stage is UnitStage.COMPLETED
        assert any(
            status == "fail" and label == "IMPORT: unit1.par" for status, label, _ in sink.items
        )

    @pytest.mark.asyncio
    async def test_export_spawn_failure(self, sink):
        cluster = FakeCluster(spawn_errors={("export", "unit1.par")})
        result = await _driver(cluster, make_units(3), 2, report=sink).run()

        c = result.counters
        assert c.exports_started == 3
        assert c.exports_failed == 1
        assert c.imports_skipped == 1
        assert c.imports_succeeded == 2
        assert result.units[0].stage is UnitStage.FAILED
        assert result.status is RunStatus.FAILED
        _assert_accounting(c)

    @pytest.mark.asyncio
    async def test_import_spawn_failure(self):
        cluster = FakeCluster(spawn_errors={("import", "unit2.par")})
        result = await _driver(cluster, make_units(3), 3).run()

        c = result.counters
        assert c.imports_started == 3
        assert c.imports_failed == 1
        assert result.units[1].stage is UnitStage.FAILED
        _assert_accounting(c)

    @pytest.mark.asyncio
    async def test_every_spawn_fails_still_terminates(self):
        spawn_errors = {("export", f"unit{i}.par") for i in range(1, 5)}
        cluster = FakeCluster(spawn_errors=spawn_errors)
        result = await asyncio.wait_for(_driver(cluster, make_units(4), 2).run(), timeout=2)

        assert result.status is RunStatus.FAILED
        assert result.counters.exports_failed == 4
        assert result.counters.imports_completed == 4
        assert cluster.events == []


# ── Reporting ────────────────────────────────────────────────────────────


class TestReporting:
    @pytest.mark.asyncio
    async def test_items_per_stage(self, sink):
        cluster = FakeCluster(exit_codes={("export", "unit3.par"): 1})
        await _driver(cluster, make_units(3), 3, report=sink).run()

        labels = [label for _, label, _ in sink.items]
        assert sum(label.startswith("EXPORT: ") for label in labels) == 3
        assert sum(label.startswith("IMPORT: ") for label in labels) == 3
        assert ("skip", "IMPORT: unit3.par", "skipped, export failed") in sink.items

    @pytest.mark.asyncio
    async def test_metrics_flushed(self, cluster, sink):
        await _driver(cluster, make_units(2), 2, report=sink).run()

        assert sink.metrics == {
            "total_parfiles": 2,
            "exports_started": 2,
            "exports_success": 2,
            "exports_failed": 0,
            "imports_started": 2,
            "imports_success": 2,
            "imports_failed": 0,
            "imports_skipped": 0,
            "status": "SUCCESS",
        }
        modes = {name: mode for name, _, mode in sink.metric_calls}
        assert modes["imports_success"] == "add"
        assert modes["imports_failed"] == "add"
        assert modes["exports_started"] == "set"

    @pytest.mark.asyncio
    async def test_raising_sink_does_not_abort(self, cluster):
        class ExplodingSink(RecordingSink):
            def item(self, status, label, detail=""):
                raise RuntimeError("sink down")

            def metric(self, name, value, mode="set"):
                raise RuntimeError("sink down")

        result = await _driver(cluster, make_units(2), 2, report=ExplodingSink()).run()
        assert result.status is RunStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_progress_events(self, cluster):
        with capture_logs() as logs:
            await _driver(cluster, make_units(2), 2).run()

        progress = [entry for entry in logs if entry["event"] == "pipeline.progress"]
        assert len(progress) == 2
        assert progress[-1]["completed"] == 2
        assert progress[-1]["total"] == 2
        assert progress[-1]["percent"] == 100
        assert "active" in progress[-1]

    @pytest.mark.asyncio
    async def test_ready_markers(self, tmp_path):
        cluster = FakeCluster(exit_codes={("export", "unit2.par"): 1})
        await _driver(cluster, make_units(2), 2, marker_dir=tmp_path).run()

        assert read_status(tmp_path, "unit1") == "SUCCESS"
        assert read_status(tmp_path, "unit2") == "FAILED"

    @pytest.mark.asyncio
    async def test_unwritable_marker_dir_does_not_abort(self, tmp_path, sink):
        blocker = tmp_path / "markers"
        blocker.write_text("not a directory", encoding="utf-8")
        cluster = FakeCluster()
        with capture_logs() as logs:
            result = await _driver(cluster, make_units(2), 2, report=sink, marker_dir=blocker).run()

        assert result.status is RunStatus.SUCCESS
        assert result.counters.imports_succeeded == 2
        assert sink.metrics["status"] == "SUCCESS"
        failures = [e for e in logs if e["event"] == "pipeline.marker_failed"]
        assert len(failures) == 2
        assert not any(e["event"] == "pipeline.aborted" for e in logs)


# ── Interrupt ────────────────────────────────────────────────────────────


class TestInterrupt:
    @pytest.mark.asyncio
    async def test_interrupt_terminates_live_jobs(self, sink):
        cluster = FakeCluster(manual=True)
        driver = _driver(cluster, make_units(4), 2, report=sink)
        task = asyncio.create_task(driver.run())
        await settle()

        driver.interrupt()
        result = await asyncio.wait_for(task, timeout=2)

        assert result.status is RunStatus.INTERRUPTED
        assert result.status.exit_code == 130
        assert result.counters.exports_started == 2
        assert cluster.processes[("export", "unit1.par")].terminated
        assert cluster.processes[("export", "unit2.par")].terminated
        assert driver.live_count == 0
        assert sink.metrics["status"] == "INTERRUPTED"
        assert sink.metrics["exports_started"] == 2

    @pytest.mark.asyncio
    async def test_no_new_work_after_interrupt(self):
        cluster = FakeCluster(manual=True)
        driver = _driver(cluster, make_units(3), 1, terminate_on_interrupt=False)
        task = asyncio.create_task(driver.run())
        await settle()
        driver.interrupt()
        cluster.finish("export", "unit1.par")
        result = await asyncio.wait_for(task, timeout=2)

        assert result.status is RunStatus.INTERRUPTED
        assert cluster.started("import") == []
        assert cluster.started("export") == ["unit1.par"]

    @pytest.mark.asyncio
    async def test_abandon_without_terminate(self):
        cluster = FakeCluster(manual=True)
        driver = _driver(cluster, make_units(2), 2, terminate_on_interrupt=False)
        task = asyncio.create_task(driver.run())
        await settle()
        driver.interrupt()
        await asyncio.wait_for(task, timeout=2)

        assert not cluster.processes[("export", "unit1.par")].terminated

    @pytest.mark.asyncio
    async def test_kill_after_timeout(self):
        cluster = FakeCluster(manual=True)
        driver = _driver(cluster, make_units(1), 1, kill_timeout_seconds=0.01)
        task = asyncio.create_task(driver.run())
        await settle()
        proc = cluster.processes[("export", "unit1.par")]
        proc.ignore_terminate = True

        driver.interrupt()
        await asyncio.wait_for(task, timeout=2)
        assert proc.terminated
        assert proc.killed

    @pytest.mark.asyncio
    async def test_interrupt_before_run(self, cluster):
        driver = _driver(cluster, make_units(2), 2)
        driver.interrupt()
        result = await driver.run()

        assert result.status is RunStatus.INTERRUPTED
        assert cluster.events == []


# ── Internal consistency ─────────────────────────────────────────────────


class TestInternalConsistency:
    def test_invalid_limit(self, cluster):
        with pytest.raises(InvalidConfigError):
            _driver(cluster, make_units(1), 0)

    def test_units_must_be_pending(self, cluster):
        units = make_units(2)
        units[1].stage = UnitStage.COMPLETED
        with pytest.raises(InternalConsistencyError):
            _driver(cluster, units, 2)

    @pytest.mark.asyncio
    async def test_run_only_once(self, cluster):
        driver = _driver(cluster, make_units(1), 1)
        await driver.run()
        with pytest.raises(InternalConsistencyError):
            await driver.run()

    @pytest.mark.asyncio
    async def test_work_function_error_aborts(self, sink):
        cluster = FakeCluster(manual=True)
        calls = 0

        async def run_export(unit):
            nonlocal calls
            calls += 1
            if calls == 2:
                raise RuntimeError("bookkeeping lost")
            return await cluster.run_export(unit)

        driver = PipelineDriver(make_units(2), run_export, cluster.run_import, max_concurrent=2, report=sink)
        with pytest.raises(RuntimeError):
            await driver.run()

        assert cluster.processes[("export", "unit1.par")].terminated
        assert driver.live_count == 0
        assert sink.metrics["status"] == "COMPLETED_WITH_ERRORS"
        assert sink.metrics["exports_started"] == 2


# ── Process ids ──────────────────────────────────────────────────────────


class TestReusedPids:
    @pytest.mark.asyncio
    async def test_pid_reused_while_exit_is_queued(self, sink):
        cluster = FakeCluster(manual=True, pids=[1000, 1001, 1001, 1000])
        driver = _driver(cluster, make_units(2), 2, report=sink)
        task = asyncio.create_task(driver.run())
        await settle()

        cluster.finish("export", "unit1.par")
        cluster.finish("export", "unit2.par")
        await settle()
        await _drive_manually(cluster, task)
        result = task.result()

        assert result.status is RunStatus.SUCCESS
        assert result.counters.imports_succeeded == 2
        assert {cluster.processes[("import", name)].pid for name in ("unit1.par", "unit2.par")} == {1000, 1001}

    @pytest.mark.asyncio
    async def test_same_pid_for_two_live_jobs(self):
        cluster = FakeCluster(pids=[4242, 4242])
        result = await _driver(cluster, make_units(2), 2).run()

        assert result.status is RunStatus.SUCCESS
        assert result.counters.imports_succeeded == 2
