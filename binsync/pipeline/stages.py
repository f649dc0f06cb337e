"""
Enrichment stages for the five scheduled pipelines.

Every stage takes the previous stage's output and returns a new value. Records
are never mutated in place; enrichment goes into a copied record under `ai`.
A failing optional collaborator (predictor, route optimizer, demand forecaster)
degrades its own stage to a pass-through instead of aborting the tick.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from binsync.analytics import health, performance, statistics
from binsync.analytics.predictions import (
    DemandForecaster,
    FillPredictor,
    RouteOptimizer,
    alert_level,
    bin_recommendation,
    collection_priority,
    detect_anomalies,
    overflow_risk,
)
from binsync.broadcast import InsightBroadcaster
from binsync.config import AppConfig
from binsync.domain.repository import DomainRepository
from binsync.models.schemas import Bin, Route, Sensor
from binsync.monitoring.metrics import MetricsAggregator

LOGGER = logging.getLogger(__name__)

Records = list[dict[str, Any]]

# Anomalies that mean the sensor itself is suspect, as opposed to a bin being emptied.
SENSOR_FAULTS = frozenset({"impossible_readings", "stuck_sensor"})


@dataclass(slots=True)
class StageContext:
    repository: DomainRepository
    broadcaster: InsightBroadcaster
    metrics: MetricsAggregator
    config: AppConfig
    clock: Callable[[], datetime]
    predictor: FillPredictor | None = None
    route_optimizer: RouteOptimizer | None = None
    demand_forecaster: DemandForecaster | None = None


def _with_ai(record: dict[str, Any], **values: Any) -> dict[str, Any]:
    return {**record, "ai": {**record.get("ai", {}), **values}}


class BinStages:
    def __init__(self, ctx: StageContext) -> None:
        self.ctx = ctx

    def source(self) -> Records:
        return [item.model_dump(mode="json") for item in self.ctx.repository.bins()]

    def process_fill_levels(self, bins: Records) -> Records:
        predictor = self.ctx.predictor
        if predictor is None or not bins:
            return bins

        now = self.ctx.clock()
        enriched: Records = []
        try:
            for record in bins:
                bin_record = Bin.model_validate(record)
                forecast = predictor.predict(bin_record, self.ctx.repository.bin_history(bin_record.id), now=now)
                self.ctx.metrics.record_prediction(
                    bin_record.id,
                    fill_level=bin_record.fill_level,
                    rate_per_hour=forecast.fill_rate_per_hour,
                )
                enriched.append(
                    _with_ai(
                        record,
                        **forecast.to_dict(),
                        priority=collection_priority(
                            bin_record.fill_level, forecast.fill_rate_per_hour, forecast.hours_to_full
                        ),
                        recommendation=bin_recommendation(bin_record.id, forecast.hours_to_full),
                    )
                )
        except Exception:
            LOGGER.warning("Fill predictor failed; passing bins through", exc_info=True)
            return bins
        return enriched

    def predict_overflow(self, bins: Records) -> Records:
        threshold = self.ctx.config.alerts.overflow_risk_threshold
        output: Records = []
        for record in bins:
            if "ai" not in record:
                output.append(record)
                continue
            risk = record["ai"].get("overflow_risk")
            if risk is None:
                risk = overflow_risk(float(record["fill_level"]), record["ai"].get("time_to_full"))
            level = alert_level(risk)
            if risk > threshold:
                self.ctx.repository.add_alert(
                    "overflow_risk",
                    f"Bin {record['id']} has {risk * 100:.0f}% overflow risk",
                    level,
                    related_id=record["id"],
                )
            output.append(_with_ai(record, overflow_risk=risk, alert_level=level))
        return output

    def optimize_collection_schedule(self, bins: Records) -> Records:
        optimizer = self.ctx.route_optimizer
        if optimizer is None:
            return bins

        needing = [
            record
            for record in bins
            if float(record["fill_level"]) > 70 or record.get("ai", {}).get("overflow_risk", 0.0) > 0.5
        ]
        if not needing:
            return bins

        stops = [
            {
                "bin_id": record["id"],
                "lat": record.get("lat"),
                "lng": record.get("lng"),
                "fill_level": record["fill_level"],
                "time_to_full": record.get("ai", {}).get("time_to_full"),
            }
            for record in needing
        ]
        try:
            plan = optimizer.optimize_route(stops)
            by_bin = {stop["bin_id"]: stop for stop in plan.get("route", [])}
            output: Records = []
            for record in bins:
                stop = by_bin.get(record["id"])
                if stop is None:
                    output.append(record)
                else:
                    output.append(
                        _with_ai(
                            record,
                            collection_order=stop["order"],
                            estimated_collection_time=stop.get("estimated_time"),
                        )
                    )
        except Exception:
            LOGGER.warning("Route optimizer failed for collection schedule", exc_info=True)
            self.ctx.metrics.record_optimization(successful=False)
            return bins

        self.ctx.metrics.record_optimization(successful=True)
        return output

    def generate_bin_insights(self, bins: Records) -> Records:
        levels = [record.get("ai", {}).get("alert_level") for record in bins]
        hours = [record.get("ai", {}).get("time_to_full") for record in bins]
        ranked = sorted(
            (record for record in bins if record.get("ai", {}).get("recommendation")),
            key=lambda record: record["ai"].get("priority", 0),
            reverse=True,
        )
        top = [record["ai"]["recommendation"] for record in ranked[:5]]
        insights = {
            "total": len(bins),
            "critical": levels.count("critical"),
            "high": levels.count("high"),
            "medium": levels.count("medium"),
            "low": levels.count("low"),
            "average_fill_level": round(sum(float(r["fill_level"]) for r in bins) / len(bins), 1) if bins else 0.0,
            "predicted_overflows_24h": sum(1 for value in hours if value is not None and value < 24),
            "needing_collection": sum(1 for record in bins if "collection_order" in record.get("ai", {})),
            "recommendations": top,
        }
        self.ctx.broadcaster.broadcast_insights("bins", insights)
        self.ctx.broadcaster.broadcast_recommendations("bins", top)
        self.ctx.metrics.record_insight()
        return bins


class RouteStages:
    def __init__(self, ctx: StageContext) -> None:
        self.ctx = ctx

    def source(self) -> Records:
        return [item.model_dump(mode="json") for item in self.ctx.repository.routes()]

    def analyze_route_efficiency(self, routes: Records) -> Records:
        output: Records = []
        for record in routes:
            route = Route.model_validate(record)
            efficiency = health.route_efficiency(route)
            improvement = health.potential_improvement(efficiency)
            output.append(
                _with_ai(
                    record,
                    efficiency=efficiency,
                    improvement=improvement,
                    score=health.route_score(route, efficiency),
                    recommendation=health.route_recommendation(route.id, improvement),
                )
            )
        return output

    def predict_optimal_routes(self, routes: Records) -> Records:
        optimizer = self.ctx.route_optimizer
        if optimizer is None:
            return routes

        bins = {item.id: item for item in self.ctx.repository.bins()}
        output: Records = []
        for record in routes:
            route = Route.model_validate(record)
            if route.status != "active" or not route.bin_ids:
                output.append(record)
                continue

            stops = [
                {
                    "bin_id": bin_id,
                    "lat": bins[bin_id].lat,
                    "lng": bins[bin_id].lng,
                    "fill_level": bins[bin_id].fill_level,
                }
                for bin_id in route.bin_ids
                if bin_id in bins
            ]
            try:
                optimized = optimizer.optimize_route(stops)
                enriched = _with_ai(
                    record,
                    optimized_route=optimized,
                    potential_savings=health.route_savings(route, optimized),
                )
            except Exception:
                LOGGER.warning("Route optimizer failed for route %s", route.id, exc_info=True)
                self.ctx.metrics.record_optimization(successful=False)
                output.append(record)
                continue

            self.ctx.metrics.record_optimization(successful=True)
            output.append(enriched)
        return output

    def generate_route_recommendations(self, routes: Records) -> Records:
        recommendations = [
            {
                "route_id": record["id"],
                "driver_id": record["driver_id"],
                "type": "route_optimization",
                "priority": "high" if record["ai"]["improvement"] > 30 else "medium",
                "message": f"Route can be optimized to save {record['ai']['improvement']:.1f}%",
                "action": "optimize_route",
                "savings": record["ai"].get("potential_savings"),
            }
            for record in routes
            if record.get("ai", {}).get("improvement", 0) > 10
        ]
        if recommendations:
            self.ctx.broadcaster.broadcast_recommendations("routes", recommendations)

        efficiencies = [record["ai"]["efficiency"] for record in routes if "ai" in record]
        self.ctx.broadcaster.broadcast_insights(
            "routes",
            {
                "total": len(routes),
                "active": sum(1 for record in routes if record.get("status") == "active"),
                "average_efficiency": round(sum(efficiencies) / len(efficiencies), 2) if efficiencies else 0.0,
                "optimizable": len(recommendations),
            },
        )
        self.ctx.metrics.record_insight()
        return routes


class SensorStages:
    def __init__(self, ctx: StageContext) -> None:
        self.ctx = ctx

    def source(self) -> Records:
        return [item.model_dump(mode="json") for item in self.ctx.repository.sensors()]

    def process_sensor_readings(self, sensors: Records) -> Records:
        now = self.ctx.clock()
        output: Records = []
        for record in sensors:
            sensor = Sensor.model_validate(record)
            score = health.sensor_health(sensor, now=now)
            output.append(
                _with_ai(
                    record,
                    health=score,
                    reliability=health.sensor_reliability(sensor),
                    predicted_failure_risk=health.failure_risk(sensor, score),
                    recommendation=health.sensor_recommendation(sensor.id, score),
                )
            )
        return output

    def detect_anomalies(self, sensors: Records) -> Records:
        output: Records = []
        for record in sensors:
            found = detect_anomalies([float(value) for value in record.get("latest_readings", [])])
            faults = sorted(SENSOR_FAULTS.intersection(found))
            if faults:
                self.ctx.repository.add_alert(
                    "sensor_anomaly",
                    f"Anomaly detected in sensor {record['id']}: {', '.join(faults)}",
                    "high",
                    related_id=record["id"],
                )
            output.append(_with_ai(record, anomaly_detected=bool(faults), anomaly_types=found))
        return output

    def predict_sensor_failures(self, sensors: Records) -> Records:
        threshold = self.ctx.config.alerts.sensor_failure_threshold
        output: Records = []
        for record in sensors:
            ai = record.get("ai", {})
            probability = float(ai.get("predicted_failure_risk", 0.0))
            eta = health.hours_to_failure(float(ai.get("health", 100.0)), probability)
            if probability > threshold:
                self.ctx.repository.add_alert(
                    "sensor_maintenance",
                    f"Sensor {record['id']} requires maintenance ({probability * 100:.0f}% failure risk)",
                    "critical" if probability > 0.8 else "high",
                    related_id=record["id"],
                )
            output.append(
                _with_ai(
                    record,
                    failure_probability=probability,
                    estimated_hours_to_failure=eta,
                    maintenance_recommended=probability > 0.5,
                )
            )
        return output

    def generate_sensor_insights(self, sensors: Records) -> Records:
        scores = [record.get("ai", {}).get("health", 0.0) for record in sensors]
        reliability = [record.get("ai", {}).get("reliability", 0.0) for record in sensors]
        self.ctx.broadcaster.broadcast_insights(
            "sensors",
            {
                "total": len(sensors),
                "healthy": sum(1 for score in scores if score > 80),
                "degraded": sum(1 for score in scores if 50 < score <= 80),
                "critical": sum(1 for score in scores if score <= 50),
                "anomalies_detected": sum(1 for r in sensors if r.get("ai", {}).get("anomaly_detected")),
                "maintenance_required": sum(1 for r in sensors if r.get("ai", {}).get("maintenance_recommended")),
                "average_reliability": round(sum(reliability) / len(reliability), 2) if reliability else 0.0,
            },
        )
        recommendations = [
            record["ai"]["recommendation"]
            for record in sensors
            if record.get("ai", {}).get("recommendation", {}).get("urgency") in {"critical", "high"}
        ]
        self.ctx.broadcaster.broadcast_recommendations("sensors", recommendations)
        self.ctx.metrics.record_insight()
        return sensors


class CollectionStages:
    def __init__(self, ctx: StageContext) -> None:
        self.ctx = ctx

    def source(self) -> Records:
        return [item.model_dump(mode="json") for item in self.ctx.repository.collections()]

    def expire_pending(self, collections: Records) -> Records:
        if not self.ctx.repository.expire_pending_collections():
            return collections
        return self.source()

    def analyze_collection_patterns(self, collections: Records) -> Records:
        patterns = statistics.collection_patterns(collections)
        efficiency = statistics.collection_efficiency(collections)
        recommendations = statistics.collection_recommendations(patterns, efficiency) if collections else []
        self.ctx.broadcaster.broadcast_insights(
            "collections",
            {
                "total_collections": len(collections),
                "efficiency": efficiency,
                "patterns": patterns,
                "verification": statistics.verification_breakdown(collections),
                "trends": statistics.collection_trends(collections),
                "recommendations": recommendations,
            },
        )
        self.ctx.broadcaster.broadcast_recommendations("collections", recommendations)
        self.ctx.metrics.record_insight()
        return collections

    def predict_demand(self, collections: Records) -> Records:
        forecaster = self.ctx.demand_forecaster
        if forecaster is None:
            return collections
        try:
            forecast = forecaster.forecast(collections, horizon_days=7, now=self.ctx.clock())
            self.ctx.broadcaster.broadcast_forecast("demand", forecast)
        except Exception:
            LOGGER.warning("Demand forecaster failed", exc_info=True)
        return collections

    def optimize_resource_allocation(self, collections: Records) -> Records:
        if not collections:
            return collections
        utilization = statistics.resource_utilization(collections)
        recommendations = statistics.resource_recommendations(utilization)
        if recommendations:
            self.ctx.broadcaster.broadcast_recommendations("resources", recommendations)
        return collections


class PerformanceStages:
    def __init__(self, ctx: StageContext) -> None:
        self.ctx = ctx

    def source(self) -> Any:
        return self.ctx.metrics.snapshot()

    def analyze_performance(self, metrics: Any) -> dict[str, Any]:
        report = performance.analyze_performance(metrics)
        report["timestamp"] = self.ctx.clock().isoformat()
        return report

    def generate_performance_insights(self, report: dict[str, Any]) -> dict[str, Any]:
        scores = report["scores"]
        self.ctx.broadcaster.broadcast_insights(
            "performance",
            {
                **scores,
                "critical_issues": sum(1 for item in report["bottlenecks"] if item["severity"] == "critical"),
                "recommendations": report["recommendations"][:5],
            },
        )
        self.ctx.broadcaster.broadcast_recommendations("performance", report["recommendations"])
        self.ctx.metrics.record_insight()
        return report
