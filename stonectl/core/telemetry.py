"""Per-device telemetry and static device information."""

from __future__ import annotations

from dataclasses import replace
from typing import Any

from stonectl.core.model import DeviceStaticInfo, DeviceTelemetry, normalize_address


class TelemetryStore:
    """Per-device telemetry records, created with defaults on first access."""

    def __init__(self) -> None:
        self._data: dict[str, DeviceTelemetry] = {}
        self._info: dict[str, DeviceStaticInfo] = {}

    def get(self, address: str) -> DeviceTelemetry:
        key = normalize_address(address)
        existing = self._data.get(key)
        if existing is not None:
            return existing
        created = DeviceTelemetry()
        self._data[key] = created
        return created

    def update(self, address: str, **patch: Any) -> DeviceTelemetry:
        updated = replace(self.get(address), **patch)
        self._data[normalize_address(address)] = updated
        return updated

    def info(self, address: str) -> DeviceStaticInfo:
        return self._info.get(normalize_address(address), DeviceStaticInfo())

    def update_info(self, address: str, **patch: Any) -> DeviceStaticInfo:
        updated = replace(self.info(address), **patch)
        self._info[normalize_address(address)] = updated
        return updated

    def forget(self, address: str) -> None:
        key = normalize_address(address)
        self._data.pop(key, None)
        self._info.pop(key, None)
