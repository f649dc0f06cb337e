from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Any

from binsync.broadcast import InsightBroadcaster
from binsync.models.schemas import Report
from binsync.monitoring.metrics import MetricsAggregator

REPORT_TYPES = ("performance", "predictions", "optimizations")


def generate_report(
    report_type: str,
    options: dict[str, Any] | None,
    *,
    broadcaster: InsightBroadcaster,
    metrics: MetricsAggregator,
    clock: Callable[[], datetime],
) -> Report:
    snapshot = metrics.snapshot()

    if report_type == "performance":
        data: dict[str, Any] = {
            "metrics": snapshot.model_dump(mode="json"),
            "insights": broadcaster.insights(),
            "recommendations": broadcaster.recommendations(),
        }
    elif report_type == "predictions":
        data = {
            "forecasts": broadcaster.forecasts(),
            "accuracy": snapshot.predictions.accuracy,
            "total": snapshot.predictions.total,
        }
    elif report_type == "optimizations":
        data = {
            "total": snapshot.optimizations.total,
            "successful": snapshot.optimizations.successful,
            "efficiency": snapshot.optimizations.efficiency,
            "recommendations": broadcaster.recommendations().get("routes", []),
        }
    else:
        data = {"message": "Unknown report type"}

    return Report(type=report_type, generated_at=clock(), options=dict(options or {}), data=data)
