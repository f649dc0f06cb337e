"""Sensor and route scoring used by the sensors and routes pipelines."""
from __future__ import annotations

from datetime import datetime
from typing import Any

from binsync.models.schemas import Route, Sensor


def sensor_health(sensor: Sensor, *, now: datetime) -> float:
    health = 100.0
    if sensor.battery < 20:
        health -= 30
    elif sensor.battery < 40:
        health -= 15

    if sensor.signal_quality < 50:
        health -= 20
    elif sensor.signal_quality < 70:
        health -= 10

    if sensor.last_update is not None:
        hours_since = (now - sensor.last_update).total_seconds() / 3600.0
        if hours_since > 24:
            health -= 25
        elif hours_since > 12:
            health -= 10
    return max(0.0, health)


def sensor_reliability(sensor: Sensor) -> float:
    return round((sensor.uptime * 0.4 + (1 - sensor.error_rate) * 0.3 + sensor.accuracy * 0.3) * 100, 2)


def failure_risk(sensor: Sensor, health: float) -> float:
    risk = 0.0
    if health < 40:
        risk += 0.6
    elif health < 60:
        risk += 0.3
    elif health < 80:
        risk += 0.1
    if sensor.previous_failures > 2:
        risk += 0.2
    return round(min(risk, 1.0), 2)


def hours_to_failure(health: float, failure_probability: float) -> float | None:
    # Degradation is assumed linear at (100 - health) / 30 points per day.
    if failure_probability < 0.3 or health >= 100:
        return None
    per_day = (100 - health) / 30
    return round(health / per_day * 24, 1)


def sensor_recommendation(sensor_id: str, health: float) -> dict[str, str]:
    if health < 40:
        return {
            "action": "immediate_maintenance",
            "urgency": "critical",
            "message": f"Sensor {sensor_id} requires immediate attention",
        }
    if health < 60:
        return {
            "action": "schedule_maintenance",
            "urgency": "high",
            "message": f"Schedule maintenance for sensor {sensor_id}",
        }
    if health < 80:
        return {"action": "monitor_closely", "urgency": "medium", "message": f"Monitor sensor {sensor_id} closely"}
    return {"action": "routine_check", "urgency": "low", "message": f"Sensor {sensor_id} is healthy"}


def route_efficiency(route: Route) -> float:
    if not route.distance_km or not route.duration_min:
        return 0.0
    avg_speed = route.distance_km / (route.duration_min / 60)
    stops_per_hour = len(route.bin_ids) / route.duration_min * 60
    return round(min(((avg_speed / 50) * 0.6 + (stops_per_hour / 2) * 0.4) * 100, 100.0), 2)


def potential_improvement(efficiency: float, *, ceiling: float = 95.0) -> float:
    return round(max(0.0, ceiling - efficiency), 2)


def route_score(route: Route, efficiency: float) -> float:
    score = efficiency * 0.5
    if (route.fuel_efficiency or 0) > 80:
        score += 10
    if (route.on_time_performance or 0) > 90:
        score += 15
    if route.total_stops and route.completed_stops == route.total_stops:
        score += 10
    return round(min(score, 100.0), 2)


def route_recommendation(route_id: str, improvement: float) -> dict[str, str]:
    if improvement > 30:
        return {
            "action": "immediate_optimization",
            "urgency": "high",
            "message": f"Route {route_id} can save {improvement:.1f}% - optimize now",
        }
    if improvement > 15:
        return {
            "action": "schedule_optimization",
            "urgency": "medium",
            "message": f"Consider optimizing route {route_id} ({improvement:.1f}% savings)",
        }
    return {"action": "maintain", "urgency": "low", "message": f"Route {route_id} is efficient"}


def route_savings(route: Route, optimized: dict[str, Any]) -> dict[str, float]:
    def saving(before: float | None, after: float | None) -> float:
        if not before or after is None:
            return 0.0
        return round((before - after) / before * 100, 2)

    distance = saving(route.distance_km, optimized.get("distance_km"))
    time = saving(route.duration_min, optimized.get("duration_min"))
    return {"distance": distance, "time": time, "cost": round(distance * 0.55 + time * 0.45, 2)}
