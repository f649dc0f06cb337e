from __future__ import annotations

from collections.abc import Mapping

from binsync.pipeline.destinations import DataSink, resolve_destinations
from binsync.pipeline.orchestrator import Pipeline, Stage
from binsync.pipeline.stages import (
    BinStages,
    CollectionStages,
    PerformanceStages,
    RouteStages,
    SensorStages,
    StageContext,
)

DESTINATIONS: dict[str, list[str]] = {
    "bins": ["predictive_analytics", "analytics_integration", "dashboard"],
    "routes": ["route_optimizer", "dashboard", "drivers"],
    "sensors": ["predictive_analytics", "alerts", "maintenance"],
    "collections": ["predictive_analytics", "analytics", "planning"],
    "performance": ["monitoring", "dashboard", "reporting"],
}


def _stages(*funcs) -> list[Stage]:
    return [Stage(name=func.__name__, func=func) for func in funcs]


def build_pipelines(ctx: StageContext, *, sinks: Mapping[str, DataSink] | None = None) -> list[Pipeline]:
    bins = BinStages(ctx)
    routes = RouteStages(ctx)
    sensors = SensorStages(ctx)
    collections = CollectionStages(ctx)
    perf = PerformanceStages(ctx)

    stages = {
        "bins": (
            bins.source,
            _stages(
                bins.process_fill_levels,
                bins.predict_overflow,
                bins.optimize_collection_schedule,
                bins.generate_bin_insights,
            ),
        ),
        "routes": (
            routes.source,
            _stages(
                routes.analyze_route_efficiency,
                routes.predict_optimal_routes,
                routes.generate_route_recommendations,
            ),
        ),
        "sensors": (
            sensors.source,
            _stages(
                sensors.process_sensor_readings,
                sensors.detect_anomalies,
                sensors.predict_sensor_failures,
                sensors.generate_sensor_insights,
            ),
        ),
        "collections": (
            collections.source,
            _stages(
                collections.expire_pending,
                collections.analyze_collection_patterns,
                collections.predict_demand,
                collections.optimize_resource_allocation,
            ),
        ),
        "performance": (
            perf.source,
            _stages(perf.analyze_performance, perf.generate_performance_insights),
        ),
    }

    pipelines: list[Pipeline] = []
    for name, (source, pipeline_stages) in stages.items():
        settings = ctx.config.pipelines[name]
        pipelines.append(
            Pipeline(
                name=name,
                source=source,
                stages=pipeline_stages,
                destinations=resolve_destinations(
                    name,
                    DESTINATIONS[name],
                    broadcaster=ctx.broadcaster,
                    sinks=sinks or {},
                ),
                interval_seconds=settings.interval_seconds,
                enabled=settings.enabled,
            )
        )
    return pipelines
