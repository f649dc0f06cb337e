"""
Collection verification protocol.

A driver's pickup claim only resets a bin to empty when the bin has no sensor.
Sensor-linked bins keep their fill and the collection waits in `pending_sensor`
until the next reading inside the lookback window decides it:

    no_sensor        terminal, driver trusted
    pending_sensor   -> sensor_verified  (reading <= empty threshold)
                     -> sensor_rejected  (reading above it, kept for audit)
                     -> sensor_timeout   (no reading before the pending timeout)

Everything here is pure; the repository owns persistence and side effects.
"""
from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta

from binsync.config import VerificationConfig
from binsync.models.schemas import Collection


@dataclass(slots=True, frozen=True)
class VerificationPolicy:
    empty_threshold: float = 15.0
    lookback: timedelta = timedelta(hours=2)
    pending_timeout: timedelta | None = timedelta(hours=24)

    @classmethod
    def from_config(cls, config: VerificationConfig) -> VerificationPolicy:
        timeout = timedelta(hours=config.pending_timeout_hours) if config.pending_timeout_hours > 0 else None
        return cls(
            empty_threshold=config.empty_threshold,
            lookback=timedelta(hours=config.lookback_hours),
            pending_timeout=timeout,
        )


@dataclass(slots=True, frozen=True)
class OpeningState:
    verification: str
    fill_after: float | None
    collected_percent: float | None
    verified_by_sensor: bool | None
    reset_bin: bool


def collected_percent(fill_before: float, fill_after: float) -> float:
    return max(0.0, min(100.0, round(fill_before - fill_after, 1)))


def open_collection(fill_before: float, *, has_sensor: bool) -> OpeningState:
    if has_sensor:
        return OpeningState(
            verification="pending_sensor",
            fill_after=None,
            collected_percent=None,
            verified_by_sensor=False,
            reset_bin=False,
        )
    return OpeningState(
        verification="no_sensor",
        fill_after=0.0,
        collected_percent=collected_percent(fill_before, 0.0),
        verified_by_sensor=None,
        reset_bin=True,
    )


def latest_within_lookback(
    collections: Iterable[Collection],
    bin_id: str,
    *,
    now: datetime,
    lookback: timedelta,
) -> Collection | None:
    candidates = [
        item
        for item in collections
        if item.bin_id == bin_id and timedelta(0) <= now - item.timestamp <= lookback
    ]
    if not candidates:
        return None
    return max(candidates, key=lambda item: item.timestamp)


def resolve_with_reading(
    collection: Collection,
    reading: float,
    *,
    policy: VerificationPolicy,
    now: datetime,
) -> Collection:
    if collection.verification != "pending_sensor":
        return collection

    verified = reading <= policy.empty_threshold
    return collection.model_copy(
        update={
            "fill_after": reading,
            "collected_percent": collected_percent(collection.fill_before, reading),
            "verification": "sensor_verified" if verified else "sensor_rejected",
            "verified_by_sensor": verified,
            "resolved_at": now,
        }
    )


def expire_if_stale(
    collection: Collection,
    *,
    policy: VerificationPolicy,
    now: datetime,
) -> Collection | None:
    if collection.verification != "pending_sensor" or policy.pending_timeout is None:
        return None
    if now - collection.timestamp < policy.pending_timeout:
        return None
    return collection.model_copy(
        update={"verification": "sensor_timeout", "verified_by_sensor": False, "resolved_at": now}
    )
