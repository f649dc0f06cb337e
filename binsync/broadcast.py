from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

LOGGER = logging.getLogger(__name__)

ALL_TOPICS = "*"


class InsightBroadcaster:
    """
    Last-known insight, recommendation and forecast snapshots per category,
    plus a publish/subscribe channel for external consumers.

    Snapshots are overwritten on every broadcast; no history is kept.
    Publishing never blocks: a subscriber whose queue is full misses the event.
    """

    def __init__(self, *, clock: Callable[[], datetime]) -> None:
        self.clock = clock
        self._subscribers: dict[str, set[asyncio.Queue[dict[str, Any]]]] = {}
        self._latest: dict[str, dict[str, Any]] = {}
        self._insights: dict[str, dict[str, Any]] = {}
        self._recommendations: dict[str, list[dict[str, Any]]] = {}
        self._forecasts: dict[str, dict[str, Any]] = {}

    def subscribe(self, topic: str = ALL_TOPICS, queue_size: int = 100) -> asyncio.Queue[dict[str, Any]]:
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=queue_size)
        self._subscribers.setdefault(topic, set()).add(queue)

        # Latest known event goes out immediately
        if topic in self._latest:
            queue.put_nowait(self._latest[topic])
        return queue

    def unsubscribe(self, topic: str, queue: asyncio.Queue[dict[str, Any]]) -> None:
        subscribers = self._subscribers.get(topic)
        if subscribers is None:
            return
        subscribers.discard(queue)
        if not subscribers:
            del self._subscribers[topic]

    def subscriber_count(self, topic: str | None = None) -> int:
        if topic is not None:
            return len(self._subscribers.get(topic, ()))
        return sum(len(queues) for queues in self._subscribers.values())

    def publish(self, topic: str, payload: dict[str, Any]) -> int:
        """Deliver to subscribers of `topic` and of `*`. Returns how many received it."""
        event = {"topic": topic, "timestamp": self.clock().isoformat(), "data": payload}
        self._latest[topic] = event

        targets = set(self._subscribers.get(topic, ())) | set(self._subscribers.get(ALL_TOPICS, ()))
        delivered = 0
        for queue in targets:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                LOGGER.warning("Skipping slow subscriber for %s", topic)
                continue
            delivered += 1
        return delivered

    def handle_domain_event(self, event: str, payload: dict[str, Any]) -> None:
        self.publish(event, payload)

    def broadcast_insights(self, category: str, insights: dict[str, Any]) -> None:
        snapshot = {**insights, "timestamp": self.clock().isoformat()}
        self._insights[category] = snapshot
        self.publish("insights", {"category": category, "insights": snapshot})

    def broadcast_recommendations(self, category: str, recommendations: list[dict[str, Any]]) -> None:
        self._recommendations[category] = list(recommendations)
        self.publish("recommendations", {"category": category, "recommendations": list(recommendations)})

    def broadcast_forecast(self, kind: str, forecast: dict[str, Any]) -> None:
        self._forecasts[kind] = {**forecast, "timestamp": self.clock().isoformat()}
        self.publish("forecasts", {"kind": kind, "forecast": self._forecasts[kind]})

    def insights(self) -> dict[str, dict[str, Any]]:
        return copy.deepcopy(self._insights)

    def recommendations(self) -> dict[str, list[dict[str, Any]]]:
        return copy.deepcopy(self._recommendations)

    def forecasts(self) -> dict[str, dict[str, Any]]:
        return copy.deepcopy(self._forecasts)
