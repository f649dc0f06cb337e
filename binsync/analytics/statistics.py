from __future__ import annotations

from collections import Counter
from datetime import UTC, datetime
from typing import Any

import numpy as np

WEEKDAY_LABELS = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]


def _parse_ts(value: str | datetime) -> datetime:
    if isinstance(value, datetime):
        return value.astimezone(UTC)
    return datetime.fromisoformat(value.replace("Z", "+00:00")).astimezone(UTC)


def collection_patterns(collections: list[dict[str, Any]]) -> dict[str, Any]:
    hourly = [0] * 24
    weekly = [0] * 7
    for item in collections:
        ts = _parse_ts(item["timestamp"])
        hourly[ts.hour] += 1
        weekly[ts.weekday()] += 1

    peak_hour = hourly.index(max(hourly)) if collections else None
    peak_day = WEEKDAY_LABELS[weekly.index(max(weekly))] if collections else None
    return {"hourly": hourly, "weekly": weekly, "peak_hour": peak_hour, "peak_day": peak_day}


def verification_breakdown(collections: list[dict[str, Any]]) -> dict[str, int]:
    counts = Counter(str(item.get("verification")) for item in collections)
    return dict(sorted(counts.items()))


def collection_efficiency(collections: list[dict[str, Any]]) -> float:
    """Mean share of the bin actually emptied, over collections with a known outcome."""
    values = [float(item["collected_percent"]) for item in collections if item.get("collected_percent") is not None]
    if not values:
        return 0.0
    return round(float(np.mean(values)), 2)


def collection_trends(collections: list[dict[str, Any]]) -> dict[str, Any]:
    ordered = sorted(collections, key=lambda item: _parse_ts(item["timestamp"]))
    recent = [float(item.get("weight_kg") or 0.0) for item in ordered[-30:]]
    older = [float(item.get("weight_kg") or 0.0) for item in ordered[-60:-30]]

    recent_avg = float(np.mean(recent)) if recent else 0.0
    older_avg = float(np.mean(older)) if older else 0.0
    change = ((recent_avg - older_avg) / older_avg) * 100 if older_avg > 0 else 0.0

    if change > 5:
        direction = "increasing"
    elif change < -5:
        direction = "decreasing"
    else:
        direction = "stable"
    return {"direction": direction, "percentage": round(abs(change), 2), "volume": round(recent_avg, 2)}


def collection_recommendations(patterns: dict[str, Any], efficiency: float) -> list[dict[str, str]]:
    recommendations: list[dict[str, str]] = []
    if efficiency < 70:
        recommendations.append(
            {
                "type": "efficiency_improvement",
                "priority": "high",
                "message": "Collection efficiency is below target - optimize routes and schedules",
            }
        )
    if patterns.get("peak_hour") is not None:
        recommendations.append(
            {
                "type": "schedule_optimization",
                "priority": "medium",
                "message": f"Peak collection hour is {patterns['peak_hour']}:00 - adjust staffing accordingly",
            }
        )
    return recommendations


def resource_utilization(collections: list[dict[str, Any]]) -> dict[str, Any]:
    if not collections:
        return {"overall": 0.0, "drivers": 0, "vehicles": 0, "avg_load_per_collection": 0.0}

    loads = np.asarray([float(item.get("fill_before") or 0.0) for item in collections])
    return {
        "overall": round(float(loads.sum() / (len(collections) * 100.0) * 100.0), 2),
        "drivers": len({item.get("driver_id") for item in collections}),
        "vehicles": len({item["vehicle_id"] for item in collections if item.get("vehicle_id")}),
        "avg_load_per_collection": round(float(loads.mean()), 2),
    }


def resource_recommendations(utilization: dict[str, Any]) -> list[dict[str, str]]:
    recommendations: list[dict[str, str]] = []
    if utilization["overall"] < 60:
        recommendations.append(
            {
                "type": "consolidate_routes",
                "priority": "high",
                "savings": f"{100 - utilization['overall']:.0f}%",
                "message": "Low resource utilization - consolidate routes to reduce costs",
            }
        )
    if utilization["avg_load_per_collection"] < 70:
        recommendations.append(
            {
                "type": "increase_stops",
                "priority": "medium",
                "message": "Add more stops per route to improve load efficiency",
            }
        )
    return recommendations
