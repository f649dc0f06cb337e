from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from contextlib import suppress
from datetime import datetime
from typing import Any

from binsync.analytics.predictions import (
    DemandForecaster,
    FillPredictor,
    HistoryFillPredictor,
    MovingAverageDemandForecaster,
    RouteOptimizer,
    UrgencyRouteOptimizer,
)
from binsync.broadcast import InsightBroadcaster
from binsync.config import AppConfig
from binsync.domain.repository import DomainRepository, utcnow
from binsync.models.schemas import Alert, Bin, Collection, CollectionInput, EngineMetrics, Report
from binsync.models.store import StateStore, build_store
from binsync.monitoring.metrics import MetricsAggregator
from binsync.pipeline.builder import build_pipelines
from binsync.pipeline.destinations import DataSink
from binsync.pipeline.orchestrator import PipelineOrchestrator, TickResult
from binsync.pipeline.stages import StageContext
from binsync.reporting import generate_report
from binsync.sensors.telemetry import SensorTelemetry, TelemetryPoller

LOGGER = logging.getLogger(__name__)

# Domain events after which the bins pipeline is refreshed immediately.
BIN_REFRESH_EVENTS = frozenset({"bin.updated", "collection.recorded", "sensor.reading"})


class SyncEngine:
    """
    Wires the repository, orchestrator, broadcaster and metrics together.

    Construction does no I/O beyond opening the store; `start()` launches the
    pipeline timers, the metrics refresh loop and the telemetry poller, and
    `stop()` tears them down again.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        store: StateStore,
        clock: Callable[[], datetime] = utcnow,
        predictor: FillPredictor | None = None,
        route_optimizer: RouteOptimizer | None = None,
        demand_forecaster: DemandForecaster | None = None,
        telemetry: SensorTelemetry | None = None,
        sinks: Mapping[str, DataSink] | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.clock = clock
        self.repository = DomainRepository(store, config, clock=clock)
        self.broadcaster = InsightBroadcaster(clock=clock)
        self.metrics = MetricsAggregator(clock=clock, accurate_within_points=config.metrics.accurate_within_points)
        self.orchestrator = PipelineOrchestrator(self.metrics)

        context = StageContext(
            repository=self.repository,
            broadcaster=self.broadcaster,
            metrics=self.metrics,
            config=config,
            clock=clock,
            predictor=predictor,
            route_optimizer=route_optimizer,
            demand_forecaster=demand_forecaster,
        )
        for pipeline in build_pipelines(context, sinks=sinks):
            self.orchestrator.register(pipeline)

        self.poller = (
            TelemetryPoller(telemetry, self.repository, interval_seconds=config.telemetry.poll_interval_seconds)
            if telemetry is not None
            else None
        )

        self.repository.add_listener(self.broadcaster.handle_domain_event)
        self.repository.add_listener(self._on_domain_event)

        self._metrics_task: asyncio.Task[None] | None = None
        self._poller_task: asyncio.Task[None] | None = None
        self._bins_refresh: asyncio.Task[TickResult] | None = None

    @classmethod
    def from_config(cls, config: AppConfig, **overrides: Any) -> SyncEngine:
        """Engine with the persistent store and built-in analytics collaborators."""
        overrides.setdefault("store", build_store(config.store))
        overrides.setdefault("predictor", HistoryFillPredictor())
        overrides.setdefault("route_optimizer", UrgencyRouteOptimizer())
        overrides.setdefault("demand_forecaster", MovingAverageDemandForecaster())
        return cls(config, **overrides)

    # --------------------------------------------------------------- lifecycle

    async def start(self) -> None:
        if self.config.auto_start_pipelines:
            self.orchestrator.start()
        if self._metrics_task is None:
            self._metrics_task = asyncio.create_task(self._refresh_metrics_forever(), name="metrics-refresh")
        if self.poller is not None and self.config.telemetry.auto_start_poller and self._poller_task is None:
            self._poller_task = asyncio.create_task(self.poller.run_forever(), name="telemetry-poller")
        LOGGER.info("Sync engine started with pipelines: %s", ", ".join(self.orchestrator.names()))

    async def stop(self) -> None:
        if self.poller is not None:
            self.poller.stop()
        for task in (self._poller_task, self._metrics_task):
            if task is None:
                continue
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        self._poller_task = None
        self._metrics_task = None

        await self.orchestrator.stop()
        self.store.close()
        LOGGER.info("Sync engine stopped")

    async def _refresh_metrics_forever(self) -> None:
        while True:
            await asyncio.sleep(self.config.metrics.refresh_seconds)
            snapshot = self.metrics.refresh()
            self.broadcaster.publish("metrics", snapshot.model_dump(mode="json"))

    def _on_domain_event(self, event: str, payload: dict[str, Any]) -> None:
        if event == "sensor.reading":
            self.metrics.check_prediction(payload["bin_id"], payload["fill_level"])
        elif event == "bin.deleted":
            self.metrics.forget(payload["bin_id"])

        if event not in BIN_REFRESH_EVENTS or not self.orchestrator.started:
            return
        if self._bins_refresh is not None and not self._bins_refresh.done():
            return
        if self.orchestrator.get("bins").enabled:
            self._bins_refresh = self.orchestrator.trigger("bins")

    # ------------------------------------------------------------ write side

    def add_bin(self, data: dict[str, Any]) -> Bin:
        return self.repository.add_bin(data)

    def update_bin(self, bin_id: str, updates: dict[str, Any]) -> Bin | None:
        return self.repository.update_bin(bin_id, updates)

    def delete_bin(self, bin_id: str, deleted_by: str | None = None) -> Bin | None:
        return self.repository.delete_bin(bin_id, deleted_by)

    def add_collection(self, data: CollectionInput) -> Collection:
        return self.repository.add_collection(data)

    def apply_sensor_reading(self, bin_id: str, **reading: float | None) -> Bin | None:
        return self.repository.apply_sensor_reading(bin_id, **reading)

    def dismiss_alert(self, alert_id: str) -> Alert | None:
        return self.repository.dismiss_alert(alert_id)

    async def trigger(self, name: str) -> TickResult:
        return await self.orchestrator.run_tick(name)

    async def resync(self) -> list[TickResult]:
        """Re-run every enabled pipeline now, e.g. after the store was refreshed externally."""
        return list(await asyncio.gather(*self.orchestrator.trigger_all()))

    # ------------------------------------------------------------- read side

    def bins(self) -> list[Bin]:
        return self.repository.bins()

    def active_alerts(self) -> list[Alert]:
        return self.repository.active_alerts()

    def insights(self) -> dict[str, dict[str, Any]]:
        return self.broadcaster.insights()

    def recommendations(self) -> dict[str, list[dict[str, Any]]]:
        return self.broadcaster.recommendations()

    def forecasts(self) -> dict[str, dict[str, Any]]:
        return self.broadcaster.forecasts()

    def get_metrics(self) -> EngineMetrics:
        return self.metrics.snapshot()

    def generate_report(self, report_type: str, options: dict[str, Any] | None = None) -> Report:
        return generate_report(
            report_type,
            options,
            broadcaster=self.broadcaster,
            metrics=self.metrics,
            clock=self.clock,
        )
