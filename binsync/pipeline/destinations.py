from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol

from binsync.broadcast import InsightBroadcaster
from binsync.pipeline.orchestrator import Destination


class DataSink(Protocol):
    """A downstream consumer that takes pipeline output directly."""

    def ingest(self, pipeline: str, data: Any) -> Any: ...


def broadcast_destination(broadcaster: InsightBroadcaster, pipeline: str, name: str) -> Destination:
    topic = f"destination.{name}"

    def deliver(data: Any) -> None:
        broadcaster.publish(topic, {"pipeline": pipeline, "data": data})

    return Destination(name=name, func=deliver)


def sink_destination(sink: DataSink, pipeline: str, name: str) -> Destination:
    def deliver(data: Any) -> Any:
        return sink.ingest(pipeline, data)

    return Destination(name=name, func=deliver)


def resolve_destinations(
    pipeline: str,
    names: list[str],
    *,
    broadcaster: InsightBroadcaster,
    sinks: Mapping[str, DataSink],
) -> list[Destination]:
    """A destination with a registered sink delivers to it; any other is published as `destination.<name>`."""
    destinations: list[Destination] = []
    for name in names:
        if name in sinks:
            destinations.append(sink_destination(sinks[name], pipeline, name))
        else:
            destinations.append(broadcast_destination(broadcaster, pipeline, name))
    return destinations
