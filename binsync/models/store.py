from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from binsync.config import StoreConfig
from binsync.errors import StorageError

LOGGER = logging.getLogger(__name__)


class StateStore(Protocol):
    """Opaque key-value persistence. `set` returns True only after a verified write."""

    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any) -> bool: ...

    def close(self) -> None: ...


def _encode(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


class MemoryStateStore:
    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        with self._lock:
            raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    def set(self, key: str, value: Any) -> bool:
        encoded = _encode(value)
        with self._lock:
            self._data[key] = encoded
        return True

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._data)

    def close(self) -> None:
        return


class SqliteStateStore:
    def __init__(self, db_path: Path):
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row

    def initialize(self) -> None:
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS state (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                """
            )
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def get(self, key: str) -> Any | None:
        try:
            with self._lock:
                row = self._conn.execute("SELECT value FROM state WHERE key = ?", (key,)).fetchone()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to read `{key}`: {exc}") from exc
        return json.loads(row["value"]) if row else None

    def set(self, key: str, value: Any) -> bool:
        encoded = _encode(value)
        try:
            with self._lock:
                self._conn.execute(
                    """
                    INSERT INTO state (key, value, updated_at) VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                    """,
                    (key, encoded, datetime.now(tz=UTC).isoformat()),
                )
                self._conn.commit()
                row = self._conn.execute("SELECT value FROM state WHERE key = ?", (key,)).fetchone()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to write `{key}`: {exc}") from exc

        if row is None or row["value"] != encoded:
            LOGGER.error("Write verification mismatch for `%s`", key)
            return False
        return True


class FallbackStateStore:
    """Wraps a primary store and switches to memory for good after the first storage failure.

    Successful reads and writes are mirrored into the memory store, so whatever the
    process has already seen survives the switch. Nothing written after the switch
    outlives the process.
    """

    def __init__(self, primary: StateStore, *, fallback: MemoryStateStore | None = None) -> None:
        self.primary = primary
        self.fallback = fallback or MemoryStateStore()
        self.degraded = False

    def _degrade(self, exc: Exception) -> None:
        if not self.degraded:
            LOGGER.warning("State store unavailable (%s); continuing with in-memory fallback", exc)
        self.degraded = True

    def get(self, key: str) -> Any | None:
        if self.degraded:
            return self.fallback.get(key)
        try:
            value = self.primary.get(key)
        except (StorageError, OSError) as exc:
            self._degrade(exc)
            return self.fallback.get(key)
        if value is not None:
            self.fallback.set(key, value)
        return value

    def set(self, key: str, value: Any) -> bool:
        if self.degraded:
            return self.fallback.set(key, value)
        try:
            ok = self.primary.set(key, value)
        except (StorageError, OSError) as exc:
            self._degrade(exc)
            return self.fallback.set(key, value)
        if ok:
            self.fallback.set(key, value)
        return ok

    def close(self) -> None:
        self.primary.close()


def build_store(config: StoreConfig) -> FallbackStateStore:
    if config.backend == "memory":
        return FallbackStateStore(MemoryStateStore())
    try:
        primary = SqliteStateStore(config.path)
        primary.initialize()
    except (sqlite3.Error, OSError) as exc:
        LOGGER.warning("Could not open %s (%s); using in-memory store", config.path, exc)
        store = FallbackStateStore(MemoryStateStore())
        store.degraded = True
        return store
    return FallbackStateStore(primary)
