from datetime import datetime, timezone

from graphpipe.core.models import Assignment, AssignmentIntent, Device, EntityType
from graphpipe.services.local_store import MemoryStore, SQLiteStore


def test_sqlite_store_round_trips_records_through_decoders(tmp_path):
    store = SQLiteStore(tmp_path / "nested" / "cache.db", {EntityType.DEVICES: Device.from_record})
    devices = [
        Device(id="d1", device_name="Studio-01", last_sync=datetime(2024, 5, 1, 10, tzinfo=timezone.utc)),
        Device(id="d2", device_name="iPad-Lab"),
    ]
    store.replace(EntityType.DEVICES, devices)

    assert store.fetch(EntityType.DEVICES) == devices
    store.close()


def test_sqlite_store_persists_between_connections(tmp_path):
    path = tmp_path / "cache.db"
    first = SQLiteStore(path)
    first.register_decoder("assignments", Assignment.from_record)
    first.replace(EntityType.ASSIGNMENTS, [Assignment("a1", "g1", AssignmentIntent.UNINSTALL, id="x1")])
    first.close()

    second = SQLiteStore(path, {"assignments": Assignment.from_record})
    restored = second.fetch("assignments")
    assert restored == [Assignment("a1", "g1", AssignmentIntent.UNINSTALL, id="x1")]
    second.close()


def test_sqlite_replace_discards_previous_rows_and_reset_clears(tmp_path):
    store = SQLiteStore(tmp_path / "cache.db")
    store.replace("groups", [{"id": "g1"}, {"id": "g2"}])
    store.replace("groups", [{"id": "g3"}])
    store.replace("devices", [{"id": "d1"}])

    assert store.fetch("groups") == [{"id": "g3"}]
    store.reset()
    assert store.fetch("groups") == []
    assert store.fetch("devices") == []
    store.close()


def test_memory_store_returns_copies():
    store = MemoryStore()
    store.replace(EntityType.GROUPS, ["g1"])
    fetched = store.fetch("groups")
    fetched.append("g2")
    assert store.fetch(EntityType.GROUPS) == ["g1"]
    store.reset()
    assert store.fetch(EntityType.GROUPS) == []
