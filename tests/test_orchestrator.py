import asyncio

import pytest

from binsync.errors import UnknownPipelineError
from binsync.monitoring.metrics import MetricsAggregator
from binsync.pipeline.orchestrator import Destination, Pipeline, PipelineOrchestrator, Stage


def _orchestrator(clock, **kwargs) -> PipelineOrchestrator:
    return PipelineOrchestrator(MetricsAggregator(clock=clock), **kwargs)


def _pipeline(name: str, stages, destinations, source=lambda: [], interval: float = 60.0) -> Pipeline:
    return Pipeline(
        name=name,
        source=source,
        stages=[Stage(func.__name__, func) for func in stages],
        destinations=[Destination(func.__name__, func) for func in destinations],
        interval_seconds=interval,
    )


@pytest.mark.asyncio
async def test_stages_run_in_order_and_feed_destinations(clock) -> None:
    delivered: list[list[str]] = []

    def first(data):
        return data + ["first"]

    async def second(data):
        await asyncio.sleep(0)
        return data + ["second"]

    def sink(data):
        delivered.append(data)

    orchestrator = _orchestrator(clock)
    orchestrator.register(_pipeline("bins", [first, second], [sink]))

    result = await orchestrator.run_tick("bins")

    assert result.ok
    assert delivered == [["first", "second"]]
    assert result.delivered == ["sink"]
    stats = orchestrator.metrics.snapshot()
    assert stats.pipelines["bins"].runs == 1
    assert stats.analytics.processed == 1


@pytest.mark.asyncio
async def test_stage_failure_aborts_tick(clock) -> None:
    calls: list[str] = []

    def broken(data):
        raise ValueError("bad reading")

    def never(data):
        calls.append("stage")
        return data

    def sink(data):
        calls.append("sink")

    orchestrator = _orchestrator(clock)
    orchestrator.register(_pipeline("sensors", [broken, never], [sink]))

    result = await orchestrator.run_tick("sensors")

    assert not result.ok
    assert result.error == "ValueError: bad reading"
    assert calls == []
    stats = orchestrator.metrics.snapshot()
    assert stats.pipelines["sensors"].failures == 1
    assert stats.pipelines["sensors"].runs == 0
    assert stats.analytics.processed == 0
    assert not orchestrator.is_running("sensors")


@pytest.mark.asyncio
async def test_failing_destination_does_not_block_others(clock) -> None:
    received: list[str] = []

    def broken_sink(data):
        raise ConnectionError("socket closed")

    def good_sink(data):
        received.append("good")

    orchestrator = _orchestrator(clock)
    orchestrator.register(_pipeline("routes", [], [broken_sink, good_sink]))

    result = await orchestrator.run_tick("routes")

    assert result.ok
    assert received == ["good"]
    assert result.failed_destinations == ["broken_sink"]
    assert result.delivered == ["good_sink"]
    assert orchestrator.metrics.snapshot().pipelines["routes"].destination_failures == 1


@pytest.mark.asyncio
async def test_overlapping_tick_is_skipped(clock) -> None:
    gate = asyncio.Event()

    async def slow(data):
        await gate.wait()
        return data

    orchestrator = _orchestrator(clock)
    orchestrator.register(_pipeline("collections", [slow], []))

    first = orchestrator.trigger("collections")
    await asyncio.sleep(0)
    assert orchestrator.is_running("collections")

    second = await orchestrator.run_tick("collections")
    gate.set()
    first_result = await first

    assert second.skipped
    assert first_result.ok
    assert orchestrator.metrics.snapshot().pipelines["collections"].skipped == 1


@pytest.mark.asyncio
async def test_unknown_pipeline_raises(clock) -> None:
    orchestrator = _orchestrator(clock)

    with pytest.raises(UnknownPipelineError):
        await orchestrator.run_tick("nope")
    with pytest.raises(UnknownPipelineError):
        orchestrator.trigger("nope")


@pytest.mark.asyncio
async def test_start_runs_enabled_pipelines_until_stopped(clock) -> None:
    ticks: list[str] = []

    def enabled_sink(data):
        ticks.append("enabled")

    def disabled_sink(data):
        ticks.append("disabled")

    orchestrator = _orchestrator(clock)
    orchestrator.register(_pipeline("bins", [], [enabled_sink], interval=0.01))
    disabled = _pipeline("routes", [], [disabled_sink], interval=0.01)
    disabled.enabled = False
    orchestrator.register(disabled)

    orchestrator.start()
    assert orchestrator.started
    await asyncio.sleep(0.05)
    await orchestrator.stop()

    count = len(ticks)
    await asyncio.sleep(0.03)

    assert not orchestrator.started
    assert count >= 2
    assert "disabled" not in ticks
    assert len(ticks) == count


@pytest.mark.asyncio
async def test_stop_cancels_ticks_past_the_timeout(clock) -> None:
    async def hang(data):
        await asyncio.sleep(10)
        return data

    orchestrator = _orchestrator(clock, stop_timeout_seconds=0.01)
    orchestrator.register(_pipeline("performance", [hang], []))

    task = orchestrator.trigger("performance")
    await asyncio.sleep(0)
    await orchestrator.stop()

    assert task.cancelled()
    assert not orchestrator.is_running("performance")


@pytest.mark.asyncio
async def test_timer_keeps_ticking_after_a_failed_stage(clock) -> None:
    calls: list[int] = []
    delivered: list[list[str]] = []

    def flaky(data):
        calls.append(len(calls))
        if len(calls) == 1:
            raise RuntimeError("store unavailable")
        return data + ["ok"]

    def sink(data):
        delivered.append(data)

    orchestrator = _orchestrator(clock)
    orchestrator.register(_pipeline("collections", [flaky], [sink], interval=0.01))

    orchestrator.start()
    await asyncio.sleep(0.06)
    await orchestrator.stop()

    assert len(calls) >= 2
    assert delivered
    assert all(data == ["ok"] for data in delivered)
    stats = orchestrator.metrics.snapshot().pipelines["collections"]
    assert stats.failures == 1
    assert stats.runs == len(delivered)
    assert stats.last_error is None
