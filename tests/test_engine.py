import asyncio
from dataclasses import replace

import pytest

from binsync.config import StoreConfig
from binsync.engine import SyncEngine
from binsync.models.store import MemoryStateStore
from binsync.sensors.telemetry import TelemetryResult


class StaticTelemetry:
    def __init__(self, fill: float) -> None:
        self.fill = fill

    def lookup_device(self, sensor_id):
        return TelemetryResult(success=True)

    def live(self, sensor_id):
        return TelemetryResult(success=True, data={"fillLevel": self.fill})

    def gps(self, sensor_id):
        return TelemetryResult(success=False)

    def history(self, sensor_id, hours):
        return TelemetryResult(success=False)


def test_from_config_supplies_default_collaborators(config) -> None:
    config.store = StoreConfig(backend="memory")

    engine = SyncEngine.from_config(config)

    assert engine.orchestrator.names() == ["bins", "routes", "sensors", "collections", "performance"]
    assert engine.poller is None
    stages = [stage.name for stage in engine.orchestrator.get("bins").stages]
    assert stages == ["process_fill_levels", "predict_overflow", "optimize_collection_schedule", "generate_bin_insights"]


def test_pipeline_settings_flow_into_registration(config, clock) -> None:
    config.pipelines["collections"] = replace(config.pipelines["collections"], interval_seconds=42, enabled=False)

    engine = SyncEngine(config, store=MemoryStateStore(), clock=clock)

    pipeline = engine.orchestrator.get("collections")
    assert pipeline.interval_seconds == 42
    assert pipeline.enabled is False


@pytest.mark.asyncio
async def test_start_without_auto_start_leaves_pipelines_idle(config, clock) -> None:
    config.auto_start_pipelines = False
    engine = SyncEngine(config, store=MemoryStateStore(), clock=clock)

    await engine.start()
    assert not engine.orchestrator.started
    await engine.stop()


@pytest.mark.asyncio
async def test_poller_feeds_readings_until_stopped(config, clock) -> None:
    config.auto_start_pipelines = False
    config.telemetry.poll_interval_seconds = 0.01
    engine = SyncEngine(config, store=MemoryStateStore(), clock=clock, telemetry=StaticTelemetry(fill=33))
    engine.add_bin({"id": "BIN-1", "fill_level": 5, "sensor_id": "S-1"})

    await engine.start()
    await asyncio.sleep(0.05)
    await engine.stop()

    assert engine.bins()[0].fill_level == 33.0


def test_write_side_passthroughs(config, clock) -> None:
    engine = SyncEngine(config, store=MemoryStateStore(), clock=clock)
    events: list[str] = []
    engine.repository.add_listener(lambda name, payload: events.append(name))

    engine.add_bin({"id": "BIN-1", "fill_level": 10})
    engine.update_bin("BIN-1", {"fill_level": 20})
    engine.delete_bin("BIN-1")

    assert events == ["bin.added", "bin.updated", "bin.deleted"]
    assert engine.bins() == []


def test_deleted_bin_prediction_is_not_scored(config, clock) -> None:
    engine = SyncEngine(config, store=MemoryStateStore(), clock=clock)
    engine.add_bin({"id": "BIN-1", "fill_level": 40})
    engine.metrics.record_prediction("BIN-1", fill_level=40.0, rate_per_hour=2.0)

    engine.delete_bin("BIN-1")
    engine.add_bin({"id": "BIN-1", "fill_level": 5})
    engine.apply_sensor_reading("BIN-1", fill_level=45)

    assert engine.get_metrics().predictions.total == 0
