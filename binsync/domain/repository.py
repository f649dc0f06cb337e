from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import ValidationError

from binsync.config import AppConfig
from binsync.domain.status import (
    clamp_fill,
    distance_to_fill_percent,
    extract_fill,
    normalize_bin,
    resolve_status,
)
from binsync.domain.verification import (
    VerificationPolicy,
    expire_if_stale,
    latest_within_lookback,
    open_collection,
    resolve_with_reading,
)
from binsync.errors import BinNotFoundError
from binsync.models.schemas import (
    Alert,
    Bin,
    BinHistoryEntry,
    Collection,
    CollectionInput,
    DriverHistoryEntry,
    Route,
    Sensor,
    SystemLogEntry,
)
from binsync.models.store import StateStore

LOGGER = logging.getLogger(__name__)

Clock = Callable[[], datetime]
EventListener = Callable[[str, dict[str, Any]], None]

BINS_KEY = "bins"
SENSORS_KEY = "sensors"
ROUTES_KEY = "routes"
COLLECTIONS_KEY = "collections"
ALERTS_KEY = "alerts"
BIN_HISTORY_KEY = "bin_history"
DRIVER_HISTORY_KEY = "driver_history"
SYSTEM_LOGS_KEY = "system_logs"
ANALYTICS_KEY = "analytics"

_SENSOR_READINGS_KEPT = 12


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


def generate_id(prefix: str, now: datetime | None = None) -> str:
    stamp = int((now or utcnow()).timestamp() * 1000)
    return f"{prefix}-{stamp}-{uuid.uuid4().hex[:6]}"


class DomainRepository:
    """Sole writer of bins, sensors, routes, collections, alerts and history.

    Every public method runs to completion without awaiting, so under the event
    loop a single call is never interleaved with another repository call. Two
    callers updating the same bin one after the other still resolve as last
    write wins.
    """

    def __init__(
        self,
        store: StateStore,
        config: AppConfig,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.config = config
        self.clock = clock
        self.policy = VerificationPolicy.from_config(config.verification)
        self._listeners: list[EventListener] = []

    # ------------------------------------------------------------------ events

    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, event: str, payload: dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, payload)
            except Exception:
                LOGGER.exception("Listener failed for event %s", event)

    # ----------------------------------------------------------------- storage

    def _load_list(self, key: str) -> list[dict[str, Any]]:
        value = self.store.get(key)
        return value if isinstance(value, list) else []

    def _load_map(self, key: str) -> dict[str, Any]:
        value = self.store.get(key)
        return value if isinstance(value, dict) else {}

    def _save(self, key: str, value: Any) -> bool:
        ok = self.store.set(key, value)
        if not ok:
            LOGGER.error("Failed to persist `%s`", key)
        return ok

    # -------------------------------------------------------------------- bins

    def bins(self) -> list[Bin]:
        items: list[Bin] = []
        for raw in self._load_list(BINS_KEY):
            try:
                items.append(Bin.model_validate(raw))
            except ValidationError as exc:
                LOGGER.warning("Skipping malformed bin record %s: %s", raw.get("id"), exc)
        return items

    def get_bin(self, bin_id: str) -> Bin | None:
        return next((item for item in self.bins() if item.id == bin_id), None)

    def add_bin(self, data: dict[str, Any]) -> Bin:
        now = self.clock()
        raw = normalize_bin(data)
        raw.setdefault("id", generate_id("BIN", now))
        raw.setdefault("fill_level", 0.0)
        raw["created_at"] = now
        raw["last_updated"] = now
        draft = Bin.model_validate(raw)
        bin_record = draft.model_copy(
            update={"status": resolve_status(draft.fill_level, draft.temperature, self.config.thresholds)}
        )

        rows = [row for row in self._load_list(BINS_KEY) if row.get("id") != bin_record.id]
        rows.append(bin_record.model_dump(mode="json"))
        self._save(BINS_KEY, rows)
        if bin_record.lat is None or bin_record.lng is None:
            LOGGER.warning("Bin %s added without coordinates", bin_record.id)
        self.add_system_log(f"New bin added: {bin_record.id} at {bin_record.location}")
        self._emit("bin.added", {"bin_id": bin_record.id, "bin": bin_record.model_dump(mode="json")})
        return bin_record

    def update_bin(self, bin_id: str, updates: dict[str, Any]) -> Bin | None:
        return self._update_bin(bin_id, updates, action="manual_update")

    def _update_bin(
        self,
        bin_id: str,
        updates: dict[str, Any],
        *,
        action: str,
        collected_by: str | None = None,
    ) -> Bin | None:
        rows = self._load_list(BINS_KEY)
        index = next((idx for idx, row in enumerate(rows) if row.get("id") == bin_id), None)
        if index is None:
            LOGGER.warning("update_bin: bin %s not found", bin_id)
            return None

        now = self.clock()
        previous = Bin.model_validate(rows[index])
        changes = normalize_bin({key: value for key, value in updates.items() if key not in {"id", "status"}})
        merged = {**rows[index], **changes, "last_updated": now}
        merged["fill_level"] = clamp_fill(merged.get("fill_level", 0.0))
        draft = Bin.model_validate(merged)
        status = resolve_status(draft.fill_level, draft.temperature, self.config.thresholds)
        updated = draft.model_copy(update={"status": status})

        rows[index] = updated.model_dump(mode="json")
        self._save(BINS_KEY, rows)

        fill_changed = extract_fill(updates) is not None
        if fill_changed or "last_collection" in updates:
            self._add_bin_history(
                BinHistoryEntry(
                    id=generate_id("BH", now),
                    bin_id=bin_id,
                    timestamp=now,
                    action=action,  # type: ignore[arg-type]
                    previous_fill=previous.fill_level,
                    new_fill=updated.fill_level,
                    collected_by=collected_by,
                    battery_level=updated.battery_level,
                    temperature=updated.temperature,
                )
            )

        if status == "critical":
            self.add_alert(
                "bin_overflow",
                f"Bin {bin_id} is {updated.fill_level}% full",
                "high",
                related_id=bin_id,
            )
        elif status == "fire-risk":
            self.add_alert(
                "fire_risk",
                f"High temperature detected at bin {bin_id}: {updated.temperature}C",
                "critical",
                related_id=bin_id,
            )

        if fill_changed and action != "collection":
            self._settle_pending_collection(bin_id, updated.fill_level)

        self._emit(
            "bin.updated",
            {
                "bin_id": bin_id,
                "fill_level": updated.fill_level,
                "status": updated.status,
                "previous_status": previous.status,
            },
        )
        return updated

    def apply_sensor_reading(
        self,
        bin_id: str,
        *,
        fill_level: float | None = None,
        distance_cm: float | None = None,
        temperature: float | None = None,
        battery_level: float | None = None,
    ) -> Bin | None:
        """Record a telemetry reading and settle any collection waiting on it."""
        current = self.get_bin(bin_id)
        if current is None:
            LOGGER.warning("Sensor reading for unknown bin %s ignored", bin_id)
            return None

        if fill_level is None and distance_cm is not None:
            fill_level = distance_to_fill_percent(distance_cm, current.calibration)

        updates: dict[str, Any] = {}
        if fill_level is not None:
            updates["fill_level"] = clamp_fill(fill_level)
        if temperature is not None:
            updates["temperature"] = float(temperature)
        if battery_level is not None:
            updates["battery_level"] = float(battery_level)
        if not updates:
            return current

        updated = self._update_bin(bin_id, updates, action="sensor_update")
        if updated is None:
            return None

        if current.sensor_id:
            self._touch_sensor(current.sensor_id, updated, fill_level is not None)

        if fill_level is not None:
            self._emit("sensor.reading", {"bin_id": bin_id, "fill_level": updated.fill_level})
        return updated

    def delete_bin(self, bin_id: str, deleted_by: str | None = None) -> Bin | None:
        rows = self._load_list(BINS_KEY)
        target = next((row for row in rows if row.get("id") == bin_id), None)
        if target is None:
            return None

        self._save(BINS_KEY, [row for row in rows if row.get("id") != bin_id])
        self._save(
            COLLECTIONS_KEY,
            [row for row in self._load_list(COLLECTIONS_KEY) if row.get("bin_id") != bin_id],
        )
        history = self._load_map(BIN_HISTORY_KEY)
        history.pop(bin_id, None)
        self._save(BIN_HISTORY_KEY, history)

        sensors = self._load_list(SENSORS_KEY)
        for row in sensors:
            if row.get("bin_id") == bin_id:
                row["bin_id"] = None
        self._save(SENSORS_KEY, sensors)

        suffix = f" by admin: {deleted_by}" if deleted_by else ""
        self.add_system_log(f"Bin {bin_id} removed{suffix}", "warning")
        self._emit("bin.deleted", {"bin_id": bin_id})
        return Bin.model_validate(target)

    def has_sensor(self, bin_id: str) -> bool:
        bin_record = self.get_bin(bin_id)
        if bin_record is not None and bin_record.sensor_id:
            return True
        return any(sensor.bin_id == bin_id for sensor in self.sensors())

    # ----------------------------------------------------------------- sensors

    def sensors(self) -> list[Sensor]:
        return [Sensor.model_validate(row) for row in self._load_list(SENSORS_KEY)]

    def get_sensor(self, sensor_id: str) -> Sensor | None:
        return next((item for item in self.sensors() if item.id == sensor_id), None)

    def add_sensor(self, data: dict[str, Any]) -> Sensor:
        now = self.clock()
        rows = self._load_list(SENSORS_KEY)
        index = next((idx for idx, row in enumerate(rows) if row.get("id") == data.get("id")), None)
        if index is not None:
            sensor = Sensor.model_validate({**rows[index], **data})
            rows[index] = sensor.model_dump(mode="json")
        else:
            sensor = Sensor.model_validate({"created_at": now, **data})
            rows.append(sensor.model_dump(mode="json"))
        self._save(SENSORS_KEY, rows)
        return sensor

    def update_sensor(self, sensor_id: str, updates: dict[str, Any]) -> Sensor | None:
        rows = self._load_list(SENSORS_KEY)
        for idx, row in enumerate(rows):
            if row.get("id") == sensor_id:
                sensor = Sensor.model_validate({**row, **updates, "last_update": self.clock()})
                rows[idx] = sensor.model_dump(mode="json")
                self._save(SENSORS_KEY, rows)
                return sensor
        return None

    def link_sensor(self, sensor_id: str, bin_id: str) -> Sensor | None:
        if self.get_bin(bin_id) is None:
            raise BinNotFoundError(bin_id)
        current = self.get_sensor(sensor_id)
        if current is None:
            return None

        # A sensor reports for one bin and a bin has one sensor.
        previous = self.get_bin(current.bin_id) if current.bin_id and current.bin_id != bin_id else None
        if previous is not None and previous.sensor_id == sensor_id:
            self._update_bin(current.bin_id, {"sensor_id": None}, action="manual_update")
            LOGGER.info("Moved sensor %s off bin %s", sensor_id, current.bin_id)
        for other in self.sensors():
            if other.id != sensor_id and other.bin_id == bin_id:
                self.update_sensor(other.id, {"bin_id": None})

        sensor = self.update_sensor(sensor_id, {"bin_id": bin_id})
        self._update_bin(bin_id, {"sensor_id": sensor_id}, action="manual_update")
        LOGGER.info("Linked sensor %s to bin %s", sensor_id, bin_id)
        return sensor

    def unlink_sensor(self, sensor_id: str) -> Sensor | None:
        sensor = self.get_sensor(sensor_id)
        if sensor is None or sensor.bin_id is None:
            return sensor
        bin_id = sensor.bin_id
        self._update_bin(bin_id, {"sensor_id": None}, action="manual_update")
        LOGGER.info("Unlinked sensor %s from bin %s", sensor_id, bin_id)
        return self.update_sensor(sensor_id, {"bin_id": None})

    def _touch_sensor(self, sensor_id: str, bin_record: Bin, with_fill: bool) -> None:
        sensor = self.get_sensor(sensor_id)
        if sensor is None:
            return
        readings = list(sensor.latest_readings)
        if with_fill:
            readings = (readings + [bin_record.fill_level])[-_SENSOR_READINGS_KEPT:]
        self.update_sensor(
            sensor_id,
            {"battery": bin_record.battery_level, "latest_readings": readings},
        )

    # ------------------------------------------------------------------ routes

    def routes(self) -> list[Route]:
        return [Route.model_validate(row) for row in self._load_list(ROUTES_KEY)]

    def add_route(self, data: dict[str, Any]) -> Route:
        now = self.clock()
        route = Route.model_validate({"id": generate_id("RTE", now), "created_at": now, **data})
        rows = self._load_list(ROUTES_KEY)
        rows.append(route.model_dump(mode="json"))
        self._save(ROUTES_KEY, rows)
        return route

    def update_route(self, route_id: str, updates: dict[str, Any]) -> Route | None:
        rows = self._load_list(ROUTES_KEY)
        for idx, row in enumerate(rows):
            if row.get("id") == route_id:
                route = Route.model_validate({**row, **updates})
                rows[idx] = route.model_dump(mode="json")
                self._save(ROUTES_KEY, rows)
                return route
        return None

    # ------------------------------------------------------------- collections

    def collections(self) -> list[Collection]:
        return [Collection.model_validate(row) for row in self._load_list(COLLECTIONS_KEY)]

    def get_collection(self, collection_id: str) -> Collection | None:
        return next((item for item in self.collections() if item.id == collection_id), None)

    def driver_collections(self, driver_id: str) -> list[Collection]:
        return [item for item in self.collections() if item.driver_id == driver_id]

    def today_collections(self) -> list[Collection]:
        today = self.clock().date()
        return [item for item in self.collections() if item.timestamp.date() == today]

    def add_collection(self, data: CollectionInput) -> Collection:
        bin_record = self.get_bin(data.bin_id)
        if bin_record is None:
            raise BinNotFoundError(data.bin_id)

        now = self.clock()
        fill_before = clamp_fill(data.fill_before if data.fill_before is not None else bin_record.fill_level)
        has_sensor = self.has_sensor(data.bin_id)
        opening = open_collection(fill_before, has_sensor=has_sensor)

        collection = Collection(
            id=generate_id("COL", now),
            bin_id=data.bin_id,
            driver_id=data.driver_id,
            timestamp=now,
            fill_before=fill_before,
            fill_after=opening.fill_after,
            collected_percent=opening.collected_percent,
            verification=opening.verification,  # type: ignore[arg-type]
            verified_by_sensor=opening.verified_by_sensor,
            ad_hoc=data.route_id is None,
            route_id=data.route_id,
            vehicle_id=data.vehicle_id,
            weight_kg=data.weight_kg if data.weight_kg is not None else round(fill_before * 0.6, 1),
            resolved_at=now if opening.verification == "no_sensor" else None,
        )
        rows = self._load_list(COLLECTIONS_KEY)
        rows.append(collection.model_dump(mode="json"))
        self._save(COLLECTIONS_KEY, rows)

        bin_updates: dict[str, Any] = {"last_collection": now, "collected_by": data.driver_id}
        if opening.reset_bin:
            bin_updates["fill_level"] = 0.0
        else:
            LOGGER.info("Bin %s has a sensor; waiting for a reading before clearing fill", data.bin_id)
        self._update_bin(data.bin_id, bin_updates, action="collection", collected_by=data.driver_id)

        self._bump_analytics(collection)
        self._add_driver_history(
            DriverHistoryEntry(
                id=generate_id("DH", now),
                driver_id=collection.driver_id,
                timestamp=now,
                bin_id=collection.bin_id,
                collection_id=collection.id,
                fill_before=collection.fill_before,
                fill_after=collection.fill_after,
                collected_percent=collection.collected_percent,
                route_id=collection.route_id,
                ad_hoc=collection.ad_hoc,
            )
        )
        suffix = " (ad-hoc)" if collection.ad_hoc else ""
        self.add_system_log(f"Collection completed: {collection.bin_id} by {collection.driver_id}{suffix}", "success")
        self._emit("collection.recorded", {"collection": collection.model_dump(mode="json")})
        return collection

    def _replace_collection(self, collection: Collection) -> None:
        rows = self._load_list(COLLECTIONS_KEY)
        for idx, row in enumerate(rows):
            if row.get("id") == collection.id:
                rows[idx] = collection.model_dump(mode="json")
                break
        self._save(COLLECTIONS_KEY, rows)

    def _settle_pending_collection(self, bin_id: str, reading: float) -> Collection | None:
        now = self.clock()
        latest = latest_within_lookback(self.collections(), bin_id, now=now, lookback=self.policy.lookback)
        if latest is None or latest.verification != "pending_sensor":
            return None

        resolved = resolve_with_reading(latest, reading, policy=self.policy, now=now)
        self._replace_collection(resolved)
        if resolved.verification == "sensor_rejected":
            self.add_alert(
                "collection_rejected",
                f"Sensor still reads {reading}% on bin {bin_id} after collection by {resolved.driver_id}",
                "high",
                related_id=resolved.id,
            )
        LOGGER.info("Collection %s resolved as %s", resolved.id, resolved.verification)
        self._emit("collection.verified", {"collection": resolved.model_dump(mode="json")})
        return resolved

    def expire_pending_collections(self) -> list[Collection]:
        now = self.clock()
        expired: list[Collection] = []
        for collection in self.collections():
            stale = expire_if_stale(collection, policy=self.policy, now=now)
            if stale is None:
                continue
            self._replace_collection(stale)
            self.add_alert(
                "unverified_collection",
                f"No sensor confirmation for collection {stale.id} on bin {stale.bin_id}",
                "medium",
                related_id=stale.id,
            )
            self._emit("collection.verified", {"collection": stale.model_dump(mode="json")})
            expired.append(stale)
        if expired:
            LOGGER.info("Timed out %d pending collections", len(expired))
        return expired

    # ------------------------------------------------------------------ alerts

    def alerts(self) -> list[Alert]:
        return [Alert.model_validate(row) for row in self._load_list(ALERTS_KEY)]

    def active_alerts(self) -> list[Alert]:
        return [item for item in self.alerts() if item.status == "active"]

    def add_alert(
        self,
        alert_type: str,
        message: str,
        priority: str = "medium",
        *,
        related_id: str | None = None,
    ) -> Alert:
        now = self.clock()
        window_start = now - timedelta(minutes=self.config.alerts.dedup_minutes)
        rows = self._load_list(ALERTS_KEY)

        for idx, row in enumerate(rows):
            existing = Alert.model_validate(row)
            if (
                existing.type == alert_type
                and existing.related_id == related_id
                and existing.status == "active"
                and existing.timestamp > window_start
            ):
                refreshed = existing.model_copy(update={"timestamp": now, "message": message})
                rows[idx] = refreshed.model_dump(mode="json")
                self._save(ALERTS_KEY, rows)
                return refreshed

        alert = Alert(
            id=generate_id("ALT", now),
            type=alert_type,
            related_id=related_id,
            priority=priority,  # type: ignore[arg-type]
            message=message,
            timestamp=now,
        )
        rows.append(alert.model_dump(mode="json"))
        self._save(ALERTS_KEY, rows)
        self._emit("alert.raised", {"alert": alert.model_dump(mode="json")})
        return alert

    def dismiss_alert(self, alert_id: str) -> Alert | None:
        rows = self._load_list(ALERTS_KEY)
        for idx, row in enumerate(rows):
            if row.get("id") == alert_id:
                alert = Alert.model_validate({**row, "status": "dismissed"})
                rows[idx] = alert.model_dump(mode="json")
                self._save(ALERTS_KEY, rows)
                self._emit("alert.dismissed", {"alert_id": alert_id})
                return alert
        return None

    # ----------------------------------------------------------------- history

    def bin_history(self, bin_id: str) -> list[BinHistoryEntry]:
        rows = self._load_map(BIN_HISTORY_KEY).get(bin_id, [])
        return [BinHistoryEntry.model_validate(row) for row in rows]

    def _add_bin_history(self, entry: BinHistoryEntry) -> None:
        history = self._load_map(BIN_HISTORY_KEY)
        entries = [entry.model_dump(mode="json")] + list(history.get(entry.bin_id, []))
        history[entry.bin_id] = entries[: self.config.history.bin_history_limit]
        self._save(BIN_HISTORY_KEY, history)

    def driver_history(self, driver_id: str) -> list[DriverHistoryEntry]:
        rows = self._load_map(DRIVER_HISTORY_KEY).get(driver_id, [])
        return [DriverHistoryEntry.model_validate(row) for row in rows]

    def _add_driver_history(self, entry: DriverHistoryEntry) -> None:
        history = self._load_map(DRIVER_HISTORY_KEY)
        entries = [entry.model_dump(mode="json")] + list(history.get(entry.driver_id, []))
        history[entry.driver_id] = entries[: self.config.history.driver_history_limit]
        self._save(DRIVER_HISTORY_KEY, history)

    def system_logs(self) -> list[SystemLogEntry]:
        return [SystemLogEntry.model_validate(row) for row in self._load_list(SYSTEM_LOGS_KEY)]

    def add_system_log(self, message: str, level: str = "info") -> None:
        now = self.clock()
        entry = SystemLogEntry(id=generate_id("LOG", now), message=message, level=level, timestamp=now)  # type: ignore[arg-type]
        logs = self._load_list(SYSTEM_LOGS_KEY)
        logs.append(entry.model_dump(mode="json"))
        self._save(SYSTEM_LOGS_KEY, logs[-self.config.history.system_log_limit :])

    # --------------------------------------------------------------- analytics

    def analytics(self) -> dict[str, Any]:
        return {"total_collections": 0, "total_weight_kg": 0.0, **self._load_map(ANALYTICS_KEY)}

    def _bump_analytics(self, collection: Collection) -> None:
        analytics = self.analytics()
        analytics["total_collections"] += 1
        analytics["total_weight_kg"] = round(analytics["total_weight_kg"] + (collection.weight_kg or 0.0), 1)
        self._save(ANALYTICS_KEY, analytics)

    def system_stats(self) -> dict[str, Any]:
        collections = self.collections()
        return {
            "total_bins": len(self.bins()),
            "total_sensors": len(self.sensors()),
            "active_alerts": len(self.active_alerts()),
            "today_collections": len(self.today_collections()),
            "pending_verifications": sum(1 for item in collections if item.verification == "pending_sensor"),
            "rejected_collections": sum(1 for item in collections if item.verification == "sensor_rejected"),
        }
