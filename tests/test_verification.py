from dataclasses import replace

import pytest

from binsync.domain.repository import DomainRepository
from binsync.errors import BinNotFoundError
from binsync.models.schemas import CollectionInput
from binsync.models.store import MemoryStateStore


def _sensor_bin(repository: DomainRepository, fill: float = 80.0, bin_id: str = "BIN-1") -> None:
    repository.add_bin({"id": bin_id, "location": "Main St", "fill_level": fill, "sensor_id": f"S-{bin_id}"})


def test_no_sensor_collection_trusts_driver(repository: DomainRepository) -> None:
    repository.add_bin({"id": "BIN-2", "location": "Park", "fill_level": 64})

    collection = repository.add_collection(CollectionInput(bin_id="BIN-2", driver_id="driver-1"))

    assert collection.verification == "no_sensor"
    assert collection.fill_before == 64.0
    assert collection.fill_after == 0.0
    assert collection.collected_percent == 64.0
    assert collection.ad_hoc is True
    assert repository.get_bin("BIN-2").fill_level == 0.0


def test_sensor_collection_keeps_fill_until_reading(repository: DomainRepository) -> None:
    _sensor_bin(repository, fill=80)

    collection = repository.add_collection(CollectionInput(bin_id="BIN-1", driver_id="driver-1", route_id="RTE-1"))

    assert collection.verification == "pending_sensor"
    assert collection.fill_after is None
    assert collection.ad_hoc is False
    bin_record = repository.get_bin("BIN-1")
    assert bin_record.fill_level == 80.0
    assert bin_record.collected_by == "driver-1"
    assert bin_record.last_collection is not None


def test_registered_sensor_counts_as_linked(repository: DomainRepository) -> None:
    repository.add_bin({"id": "BIN-3", "location": "Dock", "fill_level": 50})
    repository.add_sensor({"id": "S-9"})
    repository.link_sensor("S-9", "BIN-3")

    collection = repository.add_collection(CollectionInput(bin_id="BIN-3", driver_id="driver-2"))

    assert collection.verification == "pending_sensor"
    assert repository.get_bin("BIN-3").fill_level == 50.0


def test_low_reading_verifies_collection(repository: DomainRepository) -> None:
    _sensor_bin(repository, fill=80)
    collection = repository.add_collection(CollectionInput(bin_id="BIN-1", driver_id="driver-1"))

    repository.apply_sensor_reading("BIN-1", fill_level=10)

    resolved = repository.get_collection(collection.id)
    assert resolved.verification == "sensor_verified"
    assert resolved.verified_by_sensor is True
    assert resolved.fill_after == 10.0
    assert resolved.collected_percent == 70.0


def test_high_reading_rejects_collection_and_alerts(repository: DomainRepository) -> None:
    _sensor_bin(repository, fill=80)
    collection = repository.add_collection(CollectionInput(bin_id="BIN-1", driver_id="driver-1"))

    repository.apply_sensor_reading("BIN-1", fill_level=40)

    resolved = repository.get_collection(collection.id)
    assert resolved.verification == "sensor_rejected"
    assert resolved.verified_by_sensor is False
    assert resolved.collected_percent == 40.0
    alerts = [alert for alert in repository.active_alerts() if alert.type == "collection_rejected"]
    assert [alert.related_id for alert in alerts] == [collection.id]


def test_collect_then_verify_scenario(repository: DomainRepository, clock) -> None:
    _sensor_bin(repository, fill=82)

    collection = repository.add_collection(CollectionInput(bin_id="BIN-1", driver_id="driver-1"))
    assert collection.fill_before == 82.0
    assert collection.verification == "pending_sensor"
    assert repository.get_bin("BIN-1").fill_level == 82.0

    clock.advance(minutes=10)
    repository.apply_sensor_reading("BIN-1", fill_level=5)

    resolved = repository.get_collection(collection.id)
    assert resolved.fill_after == 5.0
    assert resolved.collected_percent == 77.0
    assert resolved.verification == "sensor_verified"
    bin_record = repository.get_bin("BIN-1")
    assert bin_record.fill_level == 5.0
    assert bin_record.status == "normal"


def test_distance_reading_uses_bin_calibration(repository: DomainRepository) -> None:
    repository.add_bin(
        {
            "id": "BIN-4",
            "fill_level": 90,
            "sensor_id": "S-4",
            "calibration": {"empty_distance_cm": 100, "full_distance_cm": 10},
        }
    )
    collection = repository.add_collection(CollectionInput(bin_id="BIN-4", driver_id="driver-1"))

    repository.apply_sensor_reading("BIN-4", distance_cm=95)

    assert repository.get_bin("BIN-4").fill_level == 5.6
    assert repository.get_collection(collection.id).verification == "sensor_verified"


def test_reading_outside_lookback_leaves_collection_pending(repository: DomainRepository, clock) -> None:
    _sensor_bin(repository, fill=80)
    collection = repository.add_collection(CollectionInput(bin_id="BIN-1", driver_id="driver-1"))

    clock.advance(hours=3)
    repository.apply_sensor_reading("BIN-1", fill_level=4)

    assert repository.get_collection(collection.id).verification == "pending_sensor"
    assert repository.get_bin("BIN-1").fill_level == 4.0


def test_terminal_collection_is_never_rewritten(repository: DomainRepository, clock) -> None:
    _sensor_bin(repository, fill=80)
    collection = repository.add_collection(CollectionInput(bin_id="BIN-1", driver_id="driver-1"))
    repository.apply_sensor_reading("BIN-1", fill_level=8)

    clock.advance(minutes=5)
    repository.apply_sensor_reading("BIN-1", fill_level=60)

    resolved = repository.get_collection(collection.id)
    assert resolved.verification == "sensor_verified"
    assert resolved.fill_after == 8.0


def test_manual_fill_update_also_resolves_pending(repository: DomainRepository) -> None:
    _sensor_bin(repository, fill=80)
    collection = repository.add_collection(CollectionInput(bin_id="BIN-1", driver_id="driver-1"))

    repository.update_bin("BIN-1", {"fill": 12})

    assert repository.get_collection(collection.id).verification == "sensor_verified"


def test_stale_pending_collection_times_out(repository: DomainRepository, clock) -> None:
    _sensor_bin(repository, fill=80)
    collection = repository.add_collection(CollectionInput(bin_id="BIN-1", driver_id="driver-1"))

    clock.advance(hours=23)
    assert repository.expire_pending_collections() == []

    clock.advance(hours=2)
    expired = repository.expire_pending_collections()

    assert [item.id for item in expired] == [collection.id]
    resolved = repository.get_collection(collection.id)
    assert resolved.verification == "sensor_timeout"
    assert resolved.is_terminal
    assert repository.get_bin("BIN-1").fill_level == 80.0
    assert any(alert.type == "unverified_collection" for alert in repository.active_alerts())


def test_zero_timeout_disables_expiry(config, clock) -> None:
    config.verification = replace(config.verification, pending_timeout_hours=0)
    repository = DomainRepository(MemoryStateStore(), config, clock=clock)
    _sensor_bin(repository, fill=80)
    collection = repository.add_collection(CollectionInput(bin_id="BIN-1", driver_id="driver-1"))

    clock.advance(days=10)

    assert repository.expire_pending_collections() == []
    assert repository.get_collection(collection.id).verification == "pending_sensor"


def test_unknown_bin_collection_raises(repository: DomainRepository) -> None:
    with pytest.raises(BinNotFoundError):
        repository.add_collection(CollectionInput(bin_id="BIN-404", driver_id="driver-1"))
