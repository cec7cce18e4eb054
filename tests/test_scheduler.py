"""Tests for the background per-script scheduler."""

import asyncio

from script_exporter import ExecutionResult, MeasurementRecord, Script, ScriptScheduler


def _run_async(coro):
    """Run a coroutine in a new event loop (for sync tests)."""
    return asyncio.run(coro)


class ControlledExecutor:
    """Executor whose scripts block until released, unless listed as fast."""

    def __init__(self, fast=()):
        self.fast = set(fast)
        self.calls = {}
        self.release = None

    async def execute(self, script):
        if self.release is None:
            self.release = asyncio.Event()
        self.calls[script.name] = self.calls.get(script.name, 0) + 1
        if script.name not in self.fast:
            await self.release.wait()
        return ExecutionResult(
            script=script,
            succeeded=True,
            records=[MeasurementRecord("temperature", (script.name,), str(self.calls[script.name]))],
        )


class FailingExecutor:
    """Executor that always raises."""

    def __init__(self):
        self.calls = 0

    async def execute(self, script):
        self.calls += 1
        raise RuntimeError("broken executor")


class TestScriptScheduler:
    """Tests for ScriptScheduler."""

    def test_only_interval_scripts_are_scheduled(self, dispatcher, logger) -> None:
        scheduler = ScriptScheduler(
            [Script("once", "exit 0"), Script("repeat", "exit 0", interval=10)],
            ControlledExecutor(),
            dispatcher,
            logger,
        )
        assert [s.name for s in scheduler.scripts] == ["repeat"]

    def test_overlapping_ticks_are_skipped(self, dispatcher, logger, internal_metrics, collector_registry) -> None:
        """A script never has more than one execution in flight."""
        executor = ControlledExecutor()
        scheduler = ScriptScheduler(
            [Script("slow", "sleep 10", timeout=10, interval=0.05)],
            executor,
            dispatcher,
            logger,
            metrics=internal_metrics,
        )

        async def scenario():
            scheduler.start()
            await asyncio.sleep(0.28)
            calls = executor.calls.get("slow", 0)
            skipped = scheduler.skipped_ticks["slow"]
            await scheduler.stop()
            return calls, skipped

        calls, skipped = _run_async(scenario())
        assert calls == 1
        assert skipped >= 3
        assert collector_registry.get_sample_value(
            "script_exporter_skipped_ticks_total", {"script": "slow"}
        ) == skipped

    def test_slow_script_does_not_delay_other_timers(self, dispatcher, logger) -> None:
        executor = ControlledExecutor(fast={"fast"})
        scheduler = ScriptScheduler(
            [
                Script("slow", "sleep 10", timeout=10, interval=0.05),
                Script("fast", "exit 0", timeout=1, interval=0.05),
            ],
            executor,
            dispatcher,
            logger,
        )

        async def scenario():
            scheduler.start()
            await asyncio.sleep(0.28)
            calls = dict(executor.calls)
            await scheduler.stop()
            return calls

        calls = _run_async(scenario())
        assert calls["slow"] == 1
        assert calls["fast"] >= 4

    def test_next_tick_runs_after_previous_completes(self, dispatcher, logger) -> None:
        executor = ControlledExecutor()
        scheduler = ScriptScheduler(
            [Script("slow", "sleep 10", timeout=10, interval=0.05)],
            executor,
            dispatcher,
            logger,
        )

        async def scenario():
            scheduler.start()
            await asyncio.sleep(0.12)
            executor.release.set()
            await asyncio.sleep(0.12)
            calls = executor.calls["slow"]
            await scheduler.stop()
            return calls

        assert _run_async(scenario()) >= 2

    def test_results_are_dispatched_as_gauges(self, dispatcher, logger, collector_registry) -> None:
        executor = ControlledExecutor(fast={"s1"})
        scheduler = ScriptScheduler(
            [Script("s1", "exit 0", interval=0.05)],
            executor,
            dispatcher,
            logger,
        )

        async def scenario():
            scheduler.start()
            await asyncio.sleep(0.18)
            await scheduler.stop()
            return executor.calls["s1"]

        calls = _run_async(scenario())
        # Each run replaces the value with its call number
        assert collector_registry.get_sample_value(
            "test_temperature", {"sensor": "s1"}
        ) == float(calls)

    def test_execution_errors_do_not_stop_the_timer(self, dispatcher, logger) -> None:
        executor = FailingExecutor()
        scheduler = ScriptScheduler(
            [Script("broken", "exit 0", interval=0.05)],
            executor,
            dispatcher,
            logger,
        )

        async def scenario():
            scheduler.start()
            await asyncio.sleep(0.28)
            running = scheduler.running
            await scheduler.stop()
            return running

        assert _run_async(scenario()) is True
        assert executor.calls >= 4

    def test_real_script_feeds_registry(self, executor, dispatcher, logger, collector_registry) -> None:
        scheduler = ScriptScheduler(
            [Script("probe", "echo NAME:temperature:LABEL_VALUES:room:RESULT:42", timeout=1, interval=0.1)],
            executor,
            dispatcher,
            logger,
        )

        async def scenario():
            scheduler.start()
            await asyncio.sleep(0.5)
            await scheduler.stop()

        _run_async(scenario())
        assert collector_registry.get_sample_value(
            "test_temperature", {"sensor": "room"}
        ) == 42.0

    def test_stop_clears_timers(self, dispatcher, logger) -> None:
        scheduler = ScriptScheduler(
            [Script("slow", "sleep 10", timeout=10, interval=0.05)],
            ControlledExecutor(),
            dispatcher,
            logger,
        )

        async def scenario():
            scheduler.start()
            await asyncio.sleep(0.01)
            await scheduler.stop()
            return scheduler.running

        assert _run_async(scenario()) is False
