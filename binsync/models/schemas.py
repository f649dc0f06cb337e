from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any, Literal

from pydantic import AfterValidator, BaseModel, Field, computed_field

BinStatusLiteral = Literal["normal", "warning", "critical", "fire-risk"]
VerificationLiteral = Literal[
    "no_sensor",
    "pending_sensor",
    "sensor_verified",
    "sensor_rejected",
    "sensor_timeout",
]
AlertStatusLiteral = Literal["active", "dismissed"]
PriorityLiteral = Literal["low", "medium", "high", "critical"]
HistoryActionLiteral = Literal["collection", "sensor_update", "manual_update"]
RouteStatusLiteral = Literal["pending", "active", "completed", "cancelled"]
ReportTypeLiteral = Literal["performance", "predictions", "optimizations"]

TERMINAL_VERIFICATIONS: frozenset[str] = frozenset(
    {"no_sensor", "sensor_verified", "sensor_rejected", "sensor_timeout"}
)


def _as_utc(value: datetime) -> datetime:
    # Naive timestamps are taken as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]


class Calibration(BaseModel):
    empty_distance_cm: float = 200.0
    full_distance_cm: float = 0.0


class Bin(BaseModel):
    id: str
    location: str = "unknown"
    lat: float | None = None
    lng: float | None = None
    fill_level: float = Field(default=0.0, ge=0.0, le=100.0)
    status: BinStatusLiteral = "normal"
    sensor_id: str | None = None
    last_collection: UtcDatetime | None = None
    collected_by: str | None = None
    temperature: float = 25.0
    battery_level: float = 100.0
    calibration: Calibration = Field(default_factory=Calibration)
    created_at: UtcDatetime
    last_updated: UtcDatetime | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def fill(self) -> float:
        return self.fill_level


class Sensor(BaseModel):
    id: str
    bin_id: str | None = None
    status: str = "active"
    battery: float = 100.0
    signal_quality: float = 100.0
    last_update: UtcDatetime | None = None
    uptime: float = 0.95
    error_rate: float = 0.05
    accuracy: float = 0.95
    previous_failures: int = 0
    latest_readings: list[float] = Field(default_factory=list)
    created_at: UtcDatetime | None = None


class Route(BaseModel):
    id: str
    driver_id: str
    status: RouteStatusLiteral = "pending"
    bin_ids: list[str] = Field(default_factory=list)
    distance_km: float | None = None
    duration_min: float | None = None
    completed_stops: int = 0
    total_stops: int = 0
    fuel_efficiency: float | None = None
    on_time_performance: float | None = None
    created_at: UtcDatetime | None = None


class CollectionInput(BaseModel):
    bin_id: str
    driver_id: str
    fill_before: float | None = None
    route_id: str | None = None
    vehicle_id: str | None = None
    weight_kg: float | None = None


class Collection(BaseModel):
    id: str
    bin_id: str
    driver_id: str
    timestamp: UtcDatetime
    fill_before: float
    fill_after: float | None = None
    collected_percent: float | None = None
    verification: VerificationLiteral
    verified_by_sensor: bool | None = None
    ad_hoc: bool = False
    route_id: str | None = None
    vehicle_id: str | None = None
    weight_kg: float | None = None
    resolved_at: UtcDatetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.verification in TERMINAL_VERIFICATIONS


class Alert(BaseModel):
    id: str
    type: str
    related_id: str | None = None
    priority: PriorityLiteral = "medium"
    message: str
    status: AlertStatusLiteral = "active"
    timestamp: UtcDatetime


class BinHistoryEntry(BaseModel):
    id: str
    bin_id: str
    timestamp: UtcDatetime
    action: HistoryActionLiteral
    previous_fill: float | None = None
    new_fill: float
    collected_by: str | None = None
    battery_level: float | None = None
    temperature: float | None = None


class DriverHistoryEntry(BaseModel):
    id: str
    driver_id: str
    timestamp: UtcDatetime
    action: str = "collection"
    bin_id: str
    collection_id: str
    fill_before: float
    fill_after: float | None = None
    collected_percent: float | None = None
    route_id: str | None = None
    ad_hoc: bool = False


class SystemLogEntry(BaseModel):
    id: str
    message: str
    level: Literal["info", "success", "warning", "error"] = "info"
    timestamp: UtcDatetime


class BinUpdateRequest(BaseModel):
    fill_level: float | None = None
    temperature: float | None = None
    battery_level: float | None = None
    location: str | None = None
    lat: float | None = None
    lng: float | None = None
    calibration: Calibration | None = None


class SensorReadingRequest(BaseModel):
    fill_level: float | None = None
    distance_cm: float | None = None
    temperature: float | None = None
    battery_level: float | None = None


class PredictionMetrics(BaseModel):
    total: int = 0
    accurate: int = 0
    accuracy: float = 0.0


class OptimizationMetrics(BaseModel):
    total: int = 0
    successful: int = 0
    efficiency: float = 0.0


class AnalyticsMetrics(BaseModel):
    processed: int = 0
    insights: int = 0


class LatencyMetrics(BaseModel):
    avg: float = 0.0
    max: float = 0.0
    min: float | None = None


class PipelineStats(BaseModel):
    runs: int = 0
    failures: int = 0
    destination_failures: int = 0
    skipped: int = 0
    last_run_at: UtcDatetime | None = None
    last_latency_ms: float | None = None
    last_error: str | None = None


class EngineMetrics(BaseModel):
    predictions: PredictionMetrics = Field(default_factory=PredictionMetrics)
    optimizations: OptimizationMetrics = Field(default_factory=OptimizationMetrics)
    analytics: AnalyticsMetrics = Field(default_factory=AnalyticsMetrics)
    latency: LatencyMetrics = Field(default_factory=LatencyMetrics)
    pipelines: dict[str, PipelineStats] = Field(default_factory=dict)
    refreshed_at: UtcDatetime | None = None


class Report(BaseModel):
    type: str
    generated_at: UtcDatetime
    options: dict[str, Any] = Field(default_factory=dict)
    data: dict[str, Any] = Field(default_factory=dict)
