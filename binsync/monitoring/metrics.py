from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from binsync.models.schemas import EngineMetrics, PipelineStats

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class _PendingPrediction:
    fill_level: float
    rate_per_hour: float
    made_at: datetime

    def expected_at(self, when: datetime) -> float:
        hours = max((when - self.made_at).total_seconds() / 3600.0, 0.0)
        return min(100.0, self.fill_level + self.rate_per_hour * hours)


class MetricsAggregator:
    """
    Engine counters. Writers bump raw counts; `refresh()` recomputes the derived
    ratios (prediction accuracy, optimization efficiency) on its own schedule.
    """

    def __init__(self, *, clock: Callable[[], datetime], accurate_within_points: float = 10.0) -> None:
        self.clock = clock
        self.accurate_within_points = accurate_within_points
        self._metrics = EngineMetrics()
        self._pending: dict[str, _PendingPrediction] = {}

    def record_prediction(self, bin_id: str, *, fill_level: float, rate_per_hour: float | None) -> None:
        self._pending[bin_id] = _PendingPrediction(fill_level, rate_per_hour or 0.0, self.clock())

    def check_prediction(self, bin_id: str, actual_fill: float) -> bool | None:
        """Score the outstanding prediction for a bin against a fresh reading."""
        pending = self._pending.pop(bin_id, None)
        if pending is None:
            return None
        accurate = abs(pending.expected_at(self.clock()) - actual_fill) <= self.accurate_within_points
        self._metrics.predictions.total += 1
        if accurate:
            self._metrics.predictions.accurate += 1
        return accurate

    def forget(self, bin_id: str) -> None:
        self._pending.pop(bin_id, None)

    def record_optimization(self, *, successful: bool) -> None:
        self._metrics.optimizations.total += 1
        if successful:
            self._metrics.optimizations.successful += 1

    def record_insight(self) -> None:
        self._metrics.analytics.insights += 1

    def _stats(self, pipeline: str) -> PipelineStats:
        return self._metrics.pipelines.setdefault(pipeline, PipelineStats())

    def record_run(self, pipeline: str, latency_ms: float) -> None:
        latency = self._metrics.latency
        latency.avg = latency.avg * 0.9 + latency_ms * 0.1
        latency.max = max(latency.max, latency_ms)
        latency.min = latency_ms if latency.min is None else min(latency.min, latency_ms)
        self._metrics.analytics.processed += 1

        stats = self._stats(pipeline)
        stats.runs += 1
        stats.last_run_at = self.clock()
        stats.last_latency_ms = round(latency_ms, 3)
        stats.last_error = None

    def record_failure(self, pipeline: str, error: BaseException) -> None:
        stats = self._stats(pipeline)
        stats.failures += 1
        stats.last_run_at = self.clock()
        stats.last_error = f"{type(error).__name__}: {error}"

    def record_destination_failure(self, pipeline: str) -> None:
        self._stats(pipeline).destination_failures += 1

    def record_skip(self, pipeline: str) -> None:
        self._stats(pipeline).skipped += 1

    def refresh(self) -> EngineMetrics:
        predictions = self._metrics.predictions
        if predictions.total > 0:
            predictions.accuracy = round(predictions.accurate / predictions.total * 100, 2)

        optimizations = self._metrics.optimizations
        if optimizations.total > 0:
            optimizations.efficiency = round(optimizations.successful / optimizations.total * 100, 2)

        self._metrics.refreshed_at = self.clock()
        LOGGER.debug(
            "Metrics refreshed: accuracy=%.1f efficiency=%.1f avg_latency=%.1fms",
            predictions.accuracy,
            optimizations.efficiency,
            self._metrics.latency.avg,
        )
        return self.snapshot()

    def snapshot(self) -> EngineMetrics:
        return self._metrics.model_copy(deep=True)
