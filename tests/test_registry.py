from __future__ import annotations

import json

import pytest

from stonectl.core.errors import RegistryError
from stonectl.core.registry import DeviceRegistry


def test_first_registered_device_becomes_active(tmp_path) -> None:
    registry = DeviceRegistry(tmp_path / "devices.json")
    active = []
    registry.active_changes.subscribe(active.append)

    assert registry.upsert("AA:BB:CC:00:00:01", "STONE A") is True
    assert registry.active_address == "aa:bb:cc:00:00:01"
    assert active == ["aa:bb:cc:00:00:01"]


def test_new_devices_are_listed_first_without_changing_active(tmp_path) -> None:
    registry = DeviceRegistry(tmp_path / "devices.json")
    registry.upsert("aa:bb:cc:00:00:01", "STONE A")
    registry.upsert("aa:bb:cc:00:00:02", "STONE B")

    assert registry.addresses == ("aa:bb:cc:00:00:02", "aa:bb:cc:00:00:01")
    assert registry.active_address == "aa:bb:cc:00:00:01"


def test_upsert_existing_renames_and_reports_not_new(tmp_path) -> None:
    registry = DeviceRegistry(tmp_path / "devices.json")
    registry.upsert("aa:bb:cc:00:00:01", "STONE")
    assert registry.upsert("AA:BB:CC:00:00:01", "Kitchen STONE") is False
    assert registry.get("aa:bb:cc:00:00:01").name == "Kitchen STONE"
    assert len(registry.devices) == 1


def test_registry_round_trips_through_file(tmp_path) -> None:
    path = tmp_path / "devices.json"
    registry = DeviceRegistry(path)
    registry.upsert("aa:bb:cc:00:00:01", "STONE A")
    registry.upsert("aa:bb:cc:00:00:02", "STONE B")
    registry.set_active("aa:bb:cc:00:00:02")

    reloaded = DeviceRegistry(path)
    assert reloaded.addresses == registry.addresses
    assert reloaded.active_address == "aa:bb:cc:00:00:02"


def test_removing_active_device_falls_back_to_first_remaining(tmp_path) -> None:
    registry = DeviceRegistry(tmp_path / "devices.json")
    registry.upsert("aa:bb:cc:00:00:01", "STONE A")
    registry.upsert("aa:bb:cc:00:00:02", "STONE B")

    assert registry.remove("aa:bb:cc:00:00:01") is True
    assert registry.active_address == "aa:bb:cc:00:00:02"
    assert registry.remove("aa:bb:cc:00:00:02") is True
    assert registry.active_address is None
    assert registry.remove("aa:bb:cc:00:00:02") is False


def test_set_active_requires_registered_device(tmp_path) -> None:
    registry = DeviceRegistry(tmp_path / "devices.json")
    with pytest.raises(RegistryError):
        registry.set_active("aa:bb:cc:00:00:09")


def test_unreadable_file_yields_empty_registry(tmp_path) -> None:
    path = tmp_path / "devices.json"
    path.write_text("{not json", encoding="utf-8")
    registry = DeviceRegistry(path)
    assert registry.devices == ()
    assert registry.active_address is None


def test_load_normalizes_and_deduplicates(tmp_path) -> None:
    path = tmp_path / "devices.json"
    path.write_text(
        json.dumps(
            {
                "devices": [
                    {"address": "AA:BB:CC:00:00:01", "name": "STONE A"},
                    {"address": "aa:bb:cc:00:00:01", "name": "duplicate"},
                    {"name": "missing address"},
                    {"address": "aa:bb:cc:00:00:02"},
                ]
            }
        ),
        encoding="utf-8",
    )
    registry = DeviceRegistry(path)
    assert registry.addresses == ("aa:bb:cc:00:00:01", "aa:bb:cc:00:00:02")
    assert registry.get("aa:bb:cc:00:00:02").name == "aa:bb:cc:00:00:02"
    assert registry.active_address == "aa:bb:cc:00:00:01"


def test_write_failure_raises_registry_error(tmp_path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")
    registry = DeviceRegistry(blocker / "devices.json")
    with pytest.raises(RegistryError):
        registry.upsert("aa:bb:cc:00:00:01", "STONE A")


def test_in_memory_registry_does_not_touch_disk() -> None:
    registry = DeviceRegistry(None)
    registry.upsert("aa:bb:cc:00:00:01", "STONE A")
    assert "AA:BB:CC:00:00:01" in registry
