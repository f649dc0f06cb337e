import sqlite3
from pathlib import Path

from binsync.config import StoreConfig
from binsync.errors import StorageError
from binsync.models.store import FallbackStateStore, MemoryStateStore, SqliteStateStore, build_store


class BrokenStore:
    def __init__(self) -> None:
        self.calls = 0

    def get(self, key):
        self.calls += 1
        raise StorageError("disk gone")

    def set(self, key, value):
        self.calls += 1
        raise StorageError("disk gone")

    def close(self) -> None:
        return


def test_memory_store_returns_copies() -> None:
    store = MemoryStateStore()
    value = {"bins": [1, 2]}

    assert store.set("bins", value)
    value["bins"].append(3)

    assert store.get("bins") == {"bins": [1, 2]}
    assert store.get("missing") is None
    assert store.keys() == ["bins"]


def test_sqlite_store_persists_across_connections(tmp_path: Path) -> None:
    db_path = tmp_path / "state" / "binsync.db"
    store = SqliteStateStore(db_path)
    store.initialize()
    assert store.set("alerts", [{"id": "ALT-1"}])
    assert store.set("alerts", [{"id": "ALT-2"}])
    store.close()

    reopened = SqliteStateStore(db_path)
    reopened.initialize()
    assert reopened.get("alerts") == [{"id": "ALT-2"}]
    assert reopened.get("bins") is None
    reopened.close()


def test_fallback_switches_to_memory_after_failure() -> None:
    primary = BrokenStore()
    store = FallbackStateStore(primary)

    assert store.set("bins", [{"id": "BIN-1"}]) is True
    assert store.degraded
    assert store.get("bins") == [{"id": "BIN-1"}]
    assert primary.calls == 1


def test_fallback_mirrors_successful_writes() -> None:
    primary = MemoryStateStore()
    store = FallbackStateStore(primary)
    store.set("bins", [{"id": "BIN-1"}])

    assert store.fallback.get("bins") == [{"id": "BIN-1"}]
    assert not store.degraded


def test_build_store_memory_backend() -> None:
    store = build_store(StoreConfig(backend="memory"))

    assert isinstance(store.primary, MemoryStateStore)
    assert not store.degraded


def test_build_store_sqlite_backend(tmp_path: Path) -> None:
    store = build_store(StoreConfig(backend="sqlite", path=tmp_path / "binsync.db"))

    assert isinstance(store.primary, SqliteStateStore)
    assert store.set("routes", [])
    store.close()


def test_build_store_degrades_when_sqlite_cannot_open(monkeypatch, tmp_path: Path) -> None:
    def refuse(*args, **kwargs):
        raise sqlite3.OperationalError("unable to open database file")

    monkeypatch.setattr("binsync.models.store.sqlite3.connect", refuse)

    store = build_store(StoreConfig(backend="sqlite", path=tmp_path / "binsync.db"))

    assert store.degraded
    assert store.set("bins", []) is True
    assert store.get("bins") == []
