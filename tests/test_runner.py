"""Tests for the on-demand parallel runner."""

import asyncio
import time

from script_exporter import ExecutionResult, Script, ScriptRunner


def _run_async(coro):
    """Run a coroutine in a new event loop (for sync tests)."""
    return asyncio.run(coro)


class RaisingExecutor:
    """Executor that fails hard for one script."""

    async def execute(self, script):
        if script.name == "boom":
            raise RuntimeError("executor exploded")
        return ExecutionResult(script=script, succeeded=True)


class TestRunScripts:
    """Tests for ScriptRunner.run_scripts()."""

    def test_one_result_per_script(self, executor, dispatcher, logger, scripts) -> None:
        runner = ScriptRunner(executor, dispatcher, logger)
        results = _run_async(runner.run_scripts(scripts))

        assert len(results) == len(scripts)
        by_name = {r.script.name: r for r in results}
        assert set(by_name) == {s.name for s in scripts}
        assert by_name["success"].succeeded is True
        assert by_name["failure"].succeeded is False
        assert by_name["timeout"].succeeded is False
        assert by_name["labels"].succeeded is True

    def test_scripts_run_in_parallel(self, executor, dispatcher, logger) -> None:
        scripts = [Script(f"sleep_{i}", "sleep 1", timeout=5) for i in range(5)]
        runner = ScriptRunner(executor, dispatcher, logger)

        start = time.monotonic()
        results = _run_async(runner.run_scripts(scripts))
        elapsed = time.monotonic() - start

        assert len(results) == 5
        assert all(r.succeeded for r in results)
        assert elapsed < 4

    def test_empty_script_list(self, executor, dispatcher, logger) -> None:
        runner = ScriptRunner(executor, dispatcher, logger)
        assert _run_async(runner.run_scripts([])) == []

    def test_executor_exception_becomes_failed_result(self, dispatcher, logger) -> None:
        runner = ScriptRunner(RaisingExecutor(), dispatcher, logger)
        scripts = [Script("ok", "exit 0"), Script("boom", "exit 0")]
        results = _run_async(runner.run_scripts(scripts))

        assert len(results) == 2
        by_name = {r.script.name: r for r in results}
        assert by_name["ok"].succeeded is True
        assert by_name["boom"].succeeded is False
        assert by_name["boom"].error_message == "executor exploded"


class TestProbe:
    """Tests for ScriptRunner.probe()."""

    def test_probe_dispatches_records(
        self, executor, dispatcher, logger, collector_registry
    ) -> None:
        runner = ScriptRunner(executor, dispatcher, logger)
        script = Script("labels", "echo NAME:MYMETRIC:LABEL_VALUES:398493840:RESULT:1\n", timeout=1)

        _run_async(runner.probe([script]))

        assert collector_registry.get_sample_value(
            "test_my_metric_total", {"id": "398493840"}
        ) == 1.0

    def test_probe_accumulates_across_calls(
        self, executor, dispatcher, logger, collector_registry
    ) -> None:
        runner = ScriptRunner(executor, dispatcher, logger)
        script = Script("labels", "echo NAME:MYMETRIC:LABEL_VALUES:a:RESULT:2", timeout=1)

        _run_async(runner.probe([script]))
        _run_async(runner.probe([script]))

        assert collector_registry.get_sample_value(
            "test_my_metric_total", {"id": "a"}
        ) == 4.0

    def test_probe_dispatches_partial_output_of_failed_script(
        self, executor, dispatcher, logger, collector_registry
    ) -> None:
        runner = ScriptRunner(executor, dispatcher, logger)
        script = Script("partial", "echo NAME:temperature:LABEL_VALUES:s1:RESULT:21.5\nexit 1", timeout=1)

        results = _run_async(runner.probe([script]))

        assert results[0].succeeded is False
        assert collector_registry.get_sample_value(
            "test_temperature", {"sensor": "s1"}
        ) == 21.5
