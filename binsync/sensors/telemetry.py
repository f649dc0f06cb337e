from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from binsync.domain.repository import DomainRepository
from binsync.errors import SensorReadError
from binsync.models.schemas import Bin

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class TelemetryResult:
    success: bool
    data: dict[str, Any] = field(default_factory=dict)
    error: str | None = None


class SensorTelemetry(Protocol):
    """Device telemetry provider. Calls block and may fail or be slow."""

    def lookup_device(self, sensor_id: str) -> TelemetryResult: ...

    def live(self, sensor_id: str) -> TelemetryResult: ...

    def gps(self, sensor_id: str) -> TelemetryResult: ...

    def history(self, sensor_id: str, hours: float) -> TelemetryResult: ...


@dataclass(slots=True)
class TelemetryReading:
    fill_level: float | None = None
    distance_cm: float | None = None
    temperature: float | None = None
    battery_level: float | None = None

    @property
    def empty(self) -> bool:
        values = (self.fill_level, self.distance_cm, self.temperature, self.battery_level)
        return all(value is None for value in values)


def _number(value: Any) -> float | None:
    if value is None or value == "null":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _first_number(sources: list[dict[str, Any]], keys: tuple[str, ...]) -> float | None:
    for source in sources:
        for key in keys:
            value = _number(source.get(key))
            if value is not None:
                return value
    return None


def extract_reading(data: dict[str, Any]) -> TelemetryReading:
    """Pull fill, distance, temperature and battery out of a provider payload.

    Providers nest values inconsistently: top level first, then `deviceInfo`
    (a dict or a list of dicts), then `measurement`.
    """
    sources: list[dict[str, Any]] = [data]
    device_info = data.get("deviceInfo")
    if isinstance(device_info, list):
        sources.extend(item for item in device_info if isinstance(item, dict))
    elif isinstance(device_info, dict):
        sources.append(device_info)
    measurement = data.get("measurement")
    if isinstance(measurement, dict):
        sources.append(measurement)

    return TelemetryReading(
        fill_level=_first_number(sources, ("fill_level", "fillLevel", "fill")),
        distance_cm=_first_number(sources, ("distance_cm", "distanceCm", "distance")),
        temperature=_first_number(sources, ("temperature", "temp")),
        battery_level=_first_number(sources, ("battery", "bat", "batteryLevel", "battery_level")),
    )


class TelemetryPoller:
    def __init__(
        self,
        provider: SensorTelemetry,
        repository: DomainRepository,
        *,
        interval_seconds: float = 60.0,
    ) -> None:
        self.provider = provider
        self.repository = repository
        self.interval_seconds = interval_seconds
        self._running = False

    async def _read_sensor(self, sensor_id: str) -> TelemetryReading | None:
        try:
            result = await asyncio.to_thread(self.provider.live, sensor_id)
        except SensorReadError as exc:
            LOGGER.warning("Sensor read failed for %s: %s", sensor_id, exc)
            return None
        except Exception as exc:  # pragma: no cover
            LOGGER.exception("Unexpected telemetry failure for %s: %s", sensor_id, exc)
            return None

        if not result.success:
            LOGGER.warning("Telemetry unavailable for %s: %s", sensor_id, result.error or "no data")
            return None
        reading = extract_reading(result.data)
        if reading.empty:
            LOGGER.warning("Telemetry for %s carried no usable values", sensor_id)
            return None
        return reading

    async def poll_once(self) -> list[Bin]:
        updated: list[Bin] = []
        for bin_record in self.repository.bins():
            if not bin_record.sensor_id:
                continue
            reading = await self._read_sensor(bin_record.sensor_id)
            if reading is None:
                continue

            result = self.repository.apply_sensor_reading(
                bin_record.id,
                fill_level=reading.fill_level,
                distance_cm=reading.distance_cm,
                temperature=reading.temperature,
                battery_level=reading.battery_level,
            )
            if result is not None:
                updated.append(result)
        return updated

    async def run_forever(self) -> None:
        self._running = True
        LOGGER.info("Telemetry poller started (every %.0fs)", self.interval_seconds)

        while self._running:
            await self.poll_once()
            await asyncio.sleep(self.interval_seconds)

    def stop(self) -> None:
        self._running = False
