from __future__ import annotations

import math
from typing import Any

from binsync.config import ThresholdConfig
from binsync.models.schemas import Calibration

DEFAULT_EMPTY_DISTANCE_CM = 200.0
DEFAULT_FULL_DISTANCE_CM = 0.0
_MAX_CALIBRATION_CM = 1000.0

FILL_KEYS = ("fill_level", "fillLevel", "fill")


def clamp_fill(value: float) -> float:
    number = float(value)
    if math.isnan(number):
        raise ValueError("fill level must be a number")
    return round(max(0.0, min(100.0, number)), 1)


def resolve_status(fill_level: float, temperature: float | None, thresholds: ThresholdConfig) -> str:
    if temperature is not None and temperature > thresholds.fire_temperature_c:
        return "fire-risk"
    if fill_level >= thresholds.critical_fill:
        return "critical"
    if fill_level >= thresholds.warning_fill:
        return "warning"
    return "normal"


def distance_to_fill_percent(distance_cm: float, calibration: Calibration) -> float:
    empty = calibration.empty_distance_cm
    full = calibration.full_distance_cm
    if empty == full:
        return 50.0
    fill = 100.0 * (empty - float(distance_cm)) / (empty - full)
    return clamp_fill(fill)


def _calibration_value(raw: Any, default: float) -> float:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return default
    if math.isnan(value) or value < 0 or value > _MAX_CALIBRATION_CM:
        return default
    return value


def normalize_calibration(raw: dict[str, Any] | Calibration | None) -> Calibration:
    if isinstance(raw, Calibration):
        raw = raw.model_dump()
    raw = raw or {}
    return Calibration(
        empty_distance_cm=_calibration_value(
            raw.get("empty_distance_cm", raw.get("emptyDistanceCm")), DEFAULT_EMPTY_DISTANCE_CM
        ),
        full_distance_cm=_calibration_value(
            raw.get("full_distance_cm", raw.get("fullDistanceCm")), DEFAULT_FULL_DISTANCE_CM
        ),
    )


def extract_fill(updates: dict[str, Any]) -> float | None:
    """Return the fill carried by an update under any of its accepted names."""
    for key in FILL_KEYS:
        if updates.get(key) is not None:
            return clamp_fill(updates[key])
    return None


def normalize_bin(raw: dict[str, Any]) -> dict[str, Any]:
    bin_data = {key: value for key, value in raw.items() if key not in FILL_KEYS}
    fill = extract_fill(raw)
    if fill is not None:
        bin_data["fill_level"] = fill
    if bin_data.get("id") is not None:
        bin_data["id"] = str(bin_data["id"])
    for coord in ("lat", "lng"):
        if bin_data.get(coord) is not None:
            bin_data[coord] = float(bin_data[coord])
    if "calibration" in bin_data:
        bin_data["calibration"] = normalize_calibration(bin_data["calibration"]).model_dump()
    return bin_data
