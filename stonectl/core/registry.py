"""Persisted list of registered devices and the active-device selector."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from stonectl.core.errors import RegistryError
from stonectl.core.model import RegisteredDevice, normalize_address
from stonectl.core.observable import Observable

LOGGER = logging.getLogger(__name__)


class DeviceRegistry:
    """Ordered registered devices, newest first, keyed by normalized address.

    The file holds ``{"devices": [{"address", "name"}, ...], "active": ...}``.
    A missing or unreadable file yields an empty registry; write failures
    raise :class:`RegistryError`. When *path* is ``None`` nothing is persisted.
    """

    def __init__(self, path: Path | None = None) -> None:
        self._path = path
        self._devices: list[RegisteredDevice] = []
        self._active: str | None = None
        self.changes: Observable[tuple[RegisteredDevice, ...]] = Observable()
        self.active_changes: Observable[str | None] = Observable()
        self._load()

    @property
    def devices(self) -> tuple[RegisteredDevice, ...]:
        return tuple(self._devices)

    @property
    def addresses(self) -> tuple[str, ...]:
        return tuple(d.address for d in self._devices)

    @property
    def active_address(self) -> str | None:
        return self._active

    def get(self, address: str) -> RegisteredDevice | None:
        key = normalize_address(address)
        return next((d for d in self._devices if d.address == key), None)

    def __contains__(self, address: object) -> bool:
        return isinstance(address, str) and self.get(address) is not None

    def upsert(self, address: str, name: str | None = None) -> bool:
        """Insert or rename a device. Returns True when the entry is new."""
        key = normalize_address(address)
        label = name or key
        for index, device in enumerate(self._devices):
            if device.address == key:
                if device.name != label and name:
                    self._devices[index] = RegisteredDevice(address=key, name=label)
                    self._save()
                    self.changes.emit(self.devices)
                return False

        self._devices.insert(0, RegisteredDevice(address=key, name=label))
        activated = self._active is None
        if activated:
            self._active = key
        self._save()
        self.changes.emit(self.devices)
        if activated:
            self.active_changes.emit(key)
        return True

    def remove(self, address: str) -> bool:
        key = normalize_address(address)
        remaining = [d for d in self._devices if d.address != key]
        if len(remaining) == len(self._devices):
            return False
        self._devices = remaining
        deactivated = self._active == key
        if deactivated:
            self._active = remaining[0].address if remaining else None
        self._save()
        self.changes.emit(self.devices)
        if deactivated:
            self.active_changes.emit(self._active)
        return True

    def set_active(self, address: str | None) -> None:
        key = normalize_address(address) if address else None
        if key is not None and self.get(key) is None:
            raise RegistryError(f"Device {key} is not registered")
        if key == self._active:
            return
        self._active = key
        self._save()
        self.active_changes.emit(key)

    def _load(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            LOGGER.warning("Ignoring unreadable device registry %s: %s", self._path, exc)
            return

        entries: Any = raw.get("devices", []) if isinstance(raw, dict) else raw
        if not isinstance(entries, list):
            return
        seen: set[str] = set()
        for entry in entries:
            if not isinstance(entry, dict) or not isinstance(entry.get("address"), str):
                continue
            key = normalize_address(entry["address"])
            if key in seen:
                continue
            seen.add(key)
            name = entry.get("name")
            self._devices.append(RegisteredDevice(address=key, name=name if isinstance(name, str) else key))

        active = raw.get("active") if isinstance(raw, dict) else None
        if isinstance(active, str) and normalize_address(active) in seen:
            self._active = normalize_address(active)
        elif self._devices:
            self._active = self._devices[0].address

    def _save(self) -> None:
        if self._path is None:
            return
        doc = {
            "devices": [{"address": d.address, "name": d.name} for d in self._devices],
            "active": self._active,
        }
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(json.dumps(doc, indent=2), encoding="utf-8")
        except OSError as exc:
            raise RegistryError(f"Could not write device registry {self._path}: {exc}") from exc
