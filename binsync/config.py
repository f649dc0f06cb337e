from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

import yaml

from binsync.errors import ConfigError

StoreBackend = Literal["memory", "sqlite"]

PIPELINE_NAMES = ("bins", "routes", "sensors", "collections", "performance")

_DEFAULT_INTERVALS = {
    "bins": 5.0,
    "routes": 10.0,
    "sensors": 3.0,
    "collections": 15.0,
    "performance": 5.0,
}


@dataclass(slots=True)
class StoreConfig:
    backend: StoreBackend = "sqlite"
    path: Path = Path("./data/binsync.db")


@dataclass(slots=True)
class ThresholdConfig:
    warning_fill: float = 70.0
    critical_fill: float = 85.0
    fire_temperature_c: float = 60.0


@dataclass(slots=True)
class VerificationConfig:
    empty_threshold: float = 15.0
    lookback_hours: float = 2.0
    pending_timeout_hours: float = 24.0


@dataclass(slots=True)
class AlertConfig:
    dedup_minutes: float = 5.0
    overflow_risk_threshold: float = 0.7
    sensor_failure_threshold: float = 0.6


@dataclass(slots=True)
class HistoryConfig:
    bin_history_limit: int = 50
    driver_history_limit: int = 100
    system_log_limit: int = 1000


@dataclass(slots=True)
class MetricsConfig:
    refresh_seconds: float = 30.0
    accurate_within_points: float = 10.0


@dataclass(slots=True)
class TelemetryConfig:
    poll_interval_seconds: float = 60.0
    auto_start_poller: bool = True


@dataclass(slots=True)
class PipelineSettings:
    name: str
    interval_seconds: float
    enabled: bool = True


@dataclass(slots=True)
class AppConfig:
    store: StoreConfig = field(default_factory=StoreConfig)
    thresholds: ThresholdConfig = field(default_factory=ThresholdConfig)
    verification: VerificationConfig = field(default_factory=VerificationConfig)
    alerts: AlertConfig = field(default_factory=AlertConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    telemetry: TelemetryConfig = field(default_factory=TelemetryConfig)
    pipelines: dict[str, PipelineSettings] = field(default_factory=dict)
    auto_start_pipelines: bool = True

    def __post_init__(self) -> None:
        for name in PIPELINE_NAMES:
            self.pipelines.setdefault(name, PipelineSettings(name=name, interval_seconds=_DEFAULT_INTERVALS[name]))


def _read_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as handle:
        try:
            data = yaml.safe_load(handle) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Expected mapping in {path}")
    return data


def _section(raw: dict[str, Any], key: str) -> dict[str, Any]:
    value = raw.get(key, {})
    if not isinstance(value, dict):
        raise ConfigError(f"`{key}` must be a dictionary")
    return value


def _resolve_config_dir() -> Path:
    env_dir = os.getenv("BINSYNC_CONFIG_DIR")
    if env_dir:
        return Path(env_dir).expanduser().resolve()
    return (Path(__file__).resolve().parents[1] / "config").resolve()


def _parse_pipelines(raw: dict[str, Any]) -> dict[str, PipelineSettings]:
    pipelines: dict[str, PipelineSettings] = {}
    for name, item in raw.items():
        if name not in PIPELINE_NAMES:
            raise ConfigError(f"Unknown pipeline `{name}` in pipelines.yaml")
        item = item or {}
        if not isinstance(item, dict):
            raise ConfigError(f"pipelines.{name} must be a dictionary")
        interval = float(item.get("interval_seconds", _DEFAULT_INTERVALS[name]))
        if interval <= 0:
            raise ConfigError(f"pipelines.{name}.interval_seconds must be positive")
        pipelines[name] = PipelineSettings(
            name=name,
            interval_seconds=interval,
            enabled=bool(item.get("enabled", True)),
        )
    return pipelines


def load_config(config_dir: Path | None = None) -> AppConfig:
    directory = config_dir or _resolve_config_dir()
    if not directory.exists():
        raise ConfigError(f"Config directory not found: {directory}")

    engine_cfg = _read_yaml(directory / "engine.yaml")
    pipelines_cfg = _read_yaml(directory / "pipelines.yaml")

    store_raw = _section(engine_cfg, "store")
    backend = str(store_raw.get("backend", "sqlite")).strip().lower()
    if backend not in {"memory", "sqlite"}:
        raise ConfigError(f"Invalid store.backend `{backend}`. Use memory|sqlite.")
    store_path = Path(store_raw.get("path", "./data/binsync.db"))
    if not store_path.is_absolute():
        store_path = (Path(__file__).resolve().parents[1] / store_path).resolve()

    thresholds_raw = _section(engine_cfg, "thresholds")
    thresholds = ThresholdConfig(
        warning_fill=float(thresholds_raw.get("warning_fill", 70)),
        critical_fill=float(thresholds_raw.get("critical_fill", 85)),
        fire_temperature_c=float(thresholds_raw.get("fire_temperature_c", 60)),
    )
    if thresholds.warning_fill > thresholds.critical_fill:
        raise ConfigError("thresholds.warning_fill must not exceed thresholds.critical_fill")

    verification_raw = _section(engine_cfg, "verification")
    verification = VerificationConfig(
        empty_threshold=float(verification_raw.get("empty_threshold", 15)),
        lookback_hours=float(verification_raw.get("lookback_hours", 2)),
        pending_timeout_hours=float(verification_raw.get("pending_timeout_hours", 24)),
    )

    alerts_raw = _section(engine_cfg, "alerts")
    alerts = AlertConfig(
        dedup_minutes=float(alerts_raw.get("dedup_minutes", 5)),
        overflow_risk_threshold=float(alerts_raw.get("overflow_risk_threshold", 0.7)),
        sensor_failure_threshold=float(alerts_raw.get("sensor_failure_threshold", 0.6)),
    )

    history_raw = _section(engine_cfg, "history")
    history = HistoryConfig(
        bin_history_limit=int(history_raw.get("bin_history_limit", 50)),
        driver_history_limit=int(history_raw.get("driver_history_limit", 100)),
        system_log_limit=int(history_raw.get("system_log_limit", 1000)),
    )

    metrics_raw = _section(engine_cfg, "metrics")
    metrics = MetricsConfig(
        refresh_seconds=float(metrics_raw.get("refresh_seconds", 30)),
        accurate_within_points=float(metrics_raw.get("accurate_within_points", 10)),
    )

    telemetry_raw = _section(engine_cfg, "telemetry")
    telemetry = TelemetryConfig(
        poll_interval_seconds=float(telemetry_raw.get("poll_interval_seconds", 60)),
        auto_start_poller=bool(telemetry_raw.get("auto_start_poller", True)),
    )

    return AppConfig(
        store=StoreConfig(backend=backend, path=store_path),  # type: ignore[arg-type]
        thresholds=thresholds,
        verification=verification,
        alerts=alerts,
        history=history,
        metrics=metrics,
        telemetry=telemetry,
        pipelines=_parse_pipelines(_section(pipelines_cfg, "pipelines")),
        auto_start_pipelines=bool(pipelines_cfg.get("auto_start", True)),
    )
