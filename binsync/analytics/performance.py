from __future__ import annotations

from typing import Any

from binsync.models.schemas import EngineMetrics


def system_health(metrics: EngineMetrics) -> float:
    health = 100.0
    if metrics.latency.avg > 1000:
        health -= 20
    elif metrics.latency.avg > 500:
        health -= 10

    failing = [name for name, stats in metrics.pipelines.items() if stats.last_error]
    health -= 5 * len(failing)
    return max(0.0, health)


def overall_performance(metrics: EngineMetrics) -> float:
    scores = [metrics.predictions.accuracy, metrics.optimizations.efficiency, system_health(metrics)]
    return round(sum(scores) / len(scores), 2)


def identify_bottlenecks(metrics: EngineMetrics, *, min_throughput: int = 100) -> list[dict[str, Any]]:
    bottlenecks: list[dict[str, Any]] = []
    avg = metrics.latency.avg
    if avg > 500:
        bottlenecks.append(
            {
                "type": "high_latency",
                "severity": "critical" if avg > 1000 else "high",
                "value": round(avg, 2),
                "message": f"Average latency is {avg:.0f}ms",
            }
        )

    for name, stats in sorted(metrics.pipelines.items()):
        ticks = stats.runs + stats.failures
        if ticks and stats.failures / ticks > 0.5:
            bottlenecks.append(
                {
                    "type": "failing_pipeline",
                    "severity": "critical",
                    "value": stats.failures,
                    "message": f"Pipeline {name} fails on most ticks: {stats.last_error}",
                }
            )

    if metrics.analytics.processed < min_throughput:
        bottlenecks.append(
            {
                "type": "low_throughput",
                "severity": "medium",
                "value": metrics.analytics.processed,
                "message": "Low pipeline throughput detected",
            }
        )
    return bottlenecks


def performance_recommendations(scores: dict[str, float], bottlenecks: list[dict[str, Any]]) -> list[dict[str, str]]:
    recommendations: list[dict[str, str]] = []
    if scores["overall"] < 70:
        recommendations.append(
            {"priority": "high", "message": "Overall performance is below target - review system configuration"}
        )

    messages = {
        "high_latency": "Reduce latency by optimizing pipeline stages",
        "failing_pipeline": "Inspect the failing pipeline's last error and its source data",
        "low_throughput": "Increase throughput by shortening pipeline intervals",
    }
    for item in bottlenecks:
        priority = "medium" if item["type"] == "low_throughput" else item["severity"]
        recommendations.append({"priority": priority, "message": messages[item["type"]]})
    return recommendations


def analyze_performance(metrics: EngineMetrics) -> dict[str, Any]:
    scores = {
        "overall": overall_performance(metrics),
        "ai_accuracy": round(metrics.predictions.accuracy, 2),
        "optimization_efficiency": round(metrics.optimizations.efficiency, 2),
        "system_health": system_health(metrics),
    }
    bottlenecks = identify_bottlenecks(metrics)
    return {
        "scores": scores,
        "bottlenecks": bottlenecks,
        "recommendations": performance_recommendations(scores, bottlenecks),
    }
