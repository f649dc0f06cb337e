from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol

import numpy as np

from binsync.models.schemas import Bin, BinHistoryEntry

_MAX_RATE_PER_HOUR = 35.0


def detect_anomalies(values: list[float]) -> list[str]:
    anomalies: list[str] = []
    if not values:
        return anomalies

    if any(v < 0 or v > 100 for v in values):
        anomalies.append("impossible_readings")

    if len(values) >= 6 and max(values[-6:]) - min(values[-6:]) < 0.2:
        anomalies.append("stuck_sensor")

    if len(values) >= 2 and values[-1] < values[-2] - 40:
        anomalies.append("sudden_drop_possible_empty")

    return anomalies


def calculate_fill_rate(
    points: Iterable[tuple[datetime, float]],
    *,
    now: datetime,
    window_hours: float = 24.0,
) -> tuple[float | None, float | None]:
    """Recency-weighted fill rate in percent per hour, with its weighted variance.

    Needs at least three readings inside the window. Falling readings are
    empties or noise and never count as negative fill.
    """
    filtered = sorted(
        (ts, fill) for ts, fill in points if timedelta(0) <= now - ts <= timedelta(hours=window_hours)
    )
    if len(filtered) < 3:
        return None, None

    rates: list[float] = []
    weights: list[float] = []
    for (prev_ts, prev_fill), (curr_ts, curr_fill) in zip(filtered, filtered[1:], strict=False):
        dt_hours = (curr_ts - prev_ts).total_seconds() / 3600.0
        if dt_hours <= 0:
            continue

        delta = curr_fill - prev_fill
        if delta <= 0:
            continue

        age_hours = (now - curr_ts).total_seconds() / 3600.0
        rates.append(min(delta / dt_hours, _MAX_RATE_PER_HOUR))
        weights.append(math.exp(-age_hours / 10.0))

    if not rates:
        return None, None

    values = np.asarray(rates)
    w = np.asarray(weights)
    slope = float(np.average(values, weights=w))
    variance = float(np.average((values - slope) ** 2, weights=w))
    return slope, variance


def overflow_risk(fill_level: float, hours_to_full: float | None) -> float:
    """0..1 risk that the bin overflows before a normal collection round."""
    urgency = 0.0
    if hours_to_full is not None:
        urgency = 1.0 if hours_to_full <= 6 else max(0.0, 1.0 - hours_to_full / 48.0)
    risk = 0.6 * (fill_level / 100.0) + 0.4 * urgency
    if fill_level >= 95:
        risk = max(risk, 0.9)
    return round(min(max(risk, 0.0), 1.0), 3)


def alert_level(risk: float) -> str:
    if risk > 0.8:
        return "critical"
    if risk > 0.6:
        return "high"
    if risk > 0.4:
        return "medium"
    return "low"


def collection_priority(fill_level: float, fill_rate: float | None, hours_to_full: float | None) -> int:
    if fill_level > 90:
        priority = 40
    elif fill_level > 75:
        priority = 30
    elif fill_level > 60:
        priority = 20
    else:
        priority = 10

    if hours_to_full is not None:
        if hours_to_full < 6:
            priority += 30
        elif hours_to_full < 12:
            priority += 20
        elif hours_to_full < 24:
            priority += 10

    if fill_rate is not None:
        if fill_rate > 10:
            priority += 20
        elif fill_rate > 5:
            priority += 10

    return min(priority, 100)


def bin_recommendation(bin_id: str, hours_to_full: float | None) -> dict[str, str]:
    if hours_to_full is not None and hours_to_full < 6:
        return {
            "action": "immediate_collection",
            "urgency": "critical",
            "message": f"Bin {bin_id} needs immediate collection ({hours_to_full:.1f}h until full)",
        }
    if hours_to_full is not None and hours_to_full < 12:
        return {
            "action": "schedule_collection",
            "urgency": "high",
            "message": f"Schedule collection for bin {bin_id} within {hours_to_full:.1f} hours",
        }
    if hours_to_full is not None and hours_to_full < 24:
        return {
            "action": "plan_collection",
            "urgency": "medium",
            "message": f"Plan collection for bin {bin_id} ({hours_to_full:.1f}h until full)",
        }
    return {"action": "monitor", "urgency": "low", "message": f"Continue monitoring bin {bin_id}"}


@dataclass(slots=True)
class FillForecast:
    bin_id: str
    current_fill: float
    fill_rate_per_hour: float | None
    hours_to_full: float | None
    overflow_risk: float
    confidence: float
    anomalies: list[str] = field(default_factory=list)

    def expected_fill(self, hours_ahead: float) -> float:
        rate = self.fill_rate_per_hour or 0.0
        return round(min(100.0, self.current_fill + rate * hours_ahead), 1)

    def to_dict(self) -> dict[str, Any]:
        return {
            "fill_rate": self.fill_rate_per_hour,
            "time_to_full": self.hours_to_full,
            "overflow_risk": self.overflow_risk,
            "confidence": self.confidence,
            "anomalies": list(self.anomalies),
        }


class FillPredictor(Protocol):
    def predict(self, bin_record: Bin, history: list[BinHistoryEntry], *, now: datetime) -> FillForecast: ...


class HistoryFillPredictor:
    """Fill forecast from the bin's own recorded history."""

    def __init__(self, *, window_hours: float = 24.0, target_fill: float = 100.0) -> None:
        self.window_hours = window_hours
        self.target_fill = target_fill

    def predict(self, bin_record: Bin, history: list[BinHistoryEntry], *, now: datetime) -> FillForecast:
        points = [(entry.timestamp, entry.new_fill) for entry in history]
        points.append((bin_record.last_updated or now, bin_record.fill_level))
        ordered = sorted(points)

        anomalies = detect_anomalies([fill for _, fill in ordered])
        rate, variance = calculate_fill_rate(ordered, now=now, window_hours=self.window_hours)

        hours: float | None = None
        confidence = 0.0
        if rate is None or rate <= 0:
            anomalies.append("not_filling")
        else:
            remaining = max(self.target_fill - bin_record.fill_level, 0.0)
            hours = round(remaining / rate, 2)
            sigma = float(np.sqrt(max(variance or 0.0, 0.0)))
            confidence = round(float(max(0.1, min(1.0, 1 / (1 + sigma)))), 3)

        return FillForecast(
            bin_id=bin_record.id,
            current_fill=bin_record.fill_level,
            fill_rate_per_hour=round(rate, 3) if rate is not None else None,
            hours_to_full=hours,
            overflow_risk=overflow_risk(bin_record.fill_level, hours),
            confidence=confidence,
            anomalies=anomalies,
        )


class RouteOptimizer(Protocol):
    def optimize_route(self, stops: list[dict[str, Any]]) -> dict[str, Any]: ...


def _haversine_km(a: tuple[float, float], b: tuple[float, float]) -> float:
    lat1, lng1 = map(math.radians, a)
    lat2, lng2 = map(math.radians, b)
    h = math.sin((lat2 - lat1) / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin((lng2 - lng1) / 2) ** 2
    return 2 * 6371.0 * math.asin(math.sqrt(h))


class UrgencyRouteOptimizer:
    """Orders stops by urgency, then estimates distance and arrival minutes."""

    def __init__(self, *, speed_kmh: float = 30.0, minutes_per_stop: float = 5.0) -> None:
        self.speed_kmh = speed_kmh
        self.minutes_per_stop = minutes_per_stop

    def optimize_route(self, stops: list[dict[str, Any]]) -> dict[str, Any]:
        def urgency(stop: dict[str, Any]) -> tuple[float, float]:
            hours = stop.get("time_to_full")
            return (hours if hours is not None else math.inf, -float(stop.get("fill_level") or 0.0))

        ordered = sorted(stops, key=urgency)
        route: list[dict[str, Any]] = []
        distance = 0.0
        minutes = 0.0
        previous: tuple[float, float] | None = None
        for order, stop in enumerate(ordered, start=1):
            coords = (stop.get("lat"), stop.get("lng"))
            if previous is not None and None not in coords:
                leg = _haversine_km(previous, coords)  # type: ignore[arg-type]
                distance += leg
                minutes += leg / self.speed_kmh * 60.0
            if None not in coords:
                previous = coords  # type: ignore[assignment]
            minutes += self.minutes_per_stop
            route.append({"bin_id": stop["bin_id"], "order": order, "estimated_time": round(minutes, 1)})

        return {"route": route, "distance_km": round(distance, 2), "duration_min": round(minutes, 1)}


class DemandForecaster(Protocol):
    def forecast(self, collections: list[dict[str, Any]], *, horizon_days: int, now: datetime) -> dict[str, Any]: ...


class MovingAverageDemandForecaster:
    """Projects daily collection counts forward from a trailing window."""

    def __init__(self, *, window_days: int = 14) -> None:
        self.window_days = window_days

    def forecast(self, collections: list[dict[str, Any]], *, horizon_days: int, now: datetime) -> dict[str, Any]:
        today = now.date()
        counts = np.zeros(self.window_days)
        for item in collections:
            timestamp = item["timestamp"]
            day = (datetime.fromisoformat(timestamp) if isinstance(timestamp, str) else timestamp).date()
            offset = (today - day).days
            if 0 <= offset < self.window_days:
                counts[self.window_days - 1 - offset] += 1

        mean = float(counts.mean())
        std = float(counts.std())
        days = [
            {
                "date": (today + timedelta(days=step)).isoformat(),
                "expected_collections": round(mean, 2),
                "low": round(max(mean - 1.96 * std, 0.0), 2),
                "high": round(mean + 1.96 * std, 2),
            }
            for step in range(1, horizon_days + 1)
        ]
        return {"horizon_days": horizon_days, "daily_average": round(mean, 2), "days": days}
