from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from binsync.errors import UnknownPipelineError
from binsync.monitoring.metrics import MetricsAggregator

LOGGER = logging.getLogger(__name__)

Source = Callable[[], Any]
StageFn = Callable[[Any], Any]
DestinationFn = Callable[[Any], Any]


@dataclass(slots=True, frozen=True)
class Stage:
    name: str
    func: StageFn


@dataclass(slots=True, frozen=True)
class Destination:
    name: str
    func: DestinationFn


@dataclass(slots=True)
class Pipeline:
    name: str
    source: Source
    stages: list[Stage]
    destinations: list[Destination]
    interval_seconds: float
    enabled: bool = True


@dataclass(slots=True)
class TickResult:
    pipeline: str
    ok: bool = False
    skipped: bool = False
    latency_ms: float | None = None
    error: str | None = None
    delivered: list[str] = field(default_factory=list)
    failed_destinations: list[str] = field(default_factory=list)


async def _call(func: Callable[..., Any], *args: Any) -> Any:
    result = func(*args)
    if asyncio.iscoroutine(result):
        result = await result
    return result


class PipelineOrchestrator:
    def __init__(self, metrics: MetricsAggregator, *, stop_timeout_seconds: float = 5.0) -> None:
        self.metrics = metrics
        self.stop_timeout_seconds = stop_timeout_seconds
        self._pipelines: dict[str, Pipeline] = {}
        self._running: set[str] = set()
        self._timers: dict[str, asyncio.Task[None]] = {}
        self._ticks: set[asyncio.Task[TickResult]] = set()

    def register(self, pipeline: Pipeline) -> None:
        self._pipelines[pipeline.name] = pipeline

    def get(self, name: str) -> Pipeline:
        try:
            return self._pipelines[name]
        except KeyError:
            raise UnknownPipelineError(name) from None

    def names(self) -> list[str]:
        return list(self._pipelines)

    def is_running(self, name: str) -> bool:
        return name in self._running

    async def run_tick(self, name: str) -> TickResult:
        """Run one tick: snapshot, enrich in order, deliver to each destination."""
        pipeline = self.get(name)
        if name in self._running:
            LOGGER.debug("Pipeline %s still running; skipping tick", name)
            self.metrics.record_skip(name)
            return TickResult(pipeline=name, skipped=True)

        self._running.add(name)
        result = TickResult(pipeline=name)
        started = time.perf_counter()
        try:
            try:
                data = await _call(pipeline.source)
                for stage in pipeline.stages:
                    data = await _call(stage.func, data)
            except Exception as exc:
                LOGGER.exception("Pipeline %s failed", name)
                self.metrics.record_failure(name, exc)
                result.error = f"{type(exc).__name__}: {exc}"
                return result

            for destination in pipeline.destinations:
                try:
                    await _call(destination.func, data)
                except Exception:
                    LOGGER.warning("Delivery to %s failed in pipeline %s", destination.name, name, exc_info=True)
                    self.metrics.record_destination_failure(name)
                    result.failed_destinations.append(destination.name)
                else:
                    result.delivered.append(destination.name)

            result.latency_ms = (time.perf_counter() - started) * 1000.0
            self.metrics.record_run(name, result.latency_ms)
            result.ok = True
            return result
        finally:
            self._running.discard(name)

    def trigger(self, name: str) -> asyncio.Task[TickResult]:
        """Schedule one tick of `name` now without waiting for it."""
        self.get(name)
        task = asyncio.create_task(self.run_tick(name), name=f"pipeline-{name}-tick")
        self._ticks.add(task)
        task.add_done_callback(self._ticks.discard)
        return task

    def trigger_all(self) -> list[asyncio.Task[TickResult]]:
        return [self.trigger(name) for name, pipeline in self._pipelines.items() if pipeline.enabled]

    async def _timer(self, pipeline: Pipeline) -> None:
        while True:
            self.trigger(pipeline.name)
            await asyncio.sleep(pipeline.interval_seconds)

    def start(self) -> None:
        for name, pipeline in self._pipelines.items():
            if not pipeline.enabled or name in self._timers:
                continue
            self._timers[name] = asyncio.create_task(self._timer(pipeline), name=f"pipeline-{name}")
            LOGGER.info("Pipeline %s started (every %.1fs)", name, pipeline.interval_seconds)

    @property
    def started(self) -> bool:
        return bool(self._timers)

    async def stop(self) -> None:
        timers = list(self._timers.values())
        self._timers.clear()
        for task in timers:
            task.cancel()
        await asyncio.gather(*timers, return_exceptions=True)

        in_flight = list(self._ticks)
        if not in_flight:
            return
        _, pending = await asyncio.wait(in_flight, timeout=self.stop_timeout_seconds)
        for task in pending:
            task.cancel()
        if pending:
            LOGGER.warning("Cancelled %d pipeline ticks that did not finish in time", len(pending))
            await asyncio.gather(*pending, return_exceptions=True)
