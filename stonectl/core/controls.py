"""Telemetry requests and local control writes for the active device."""

from __future__ import annotations

import asyncio
import logging

from stonectl.backends.base import Backend
from stonectl.core.connection import ConnectionStateStore
from stonectl.core.errors import PayloadError
from stonectl.core.gaia import (
    CMD_GET_BATTERY_STEP,
    CMD_GET_DC_STATE,
    CMD_GET_LAMP_STATE,
    CMD_GET_VOLUME,
    CMD_RUN_LAMP,
    CMD_SET_LAMP_BRIGHTNESS,
    CMD_SET_LAMP_COLOR,
    CMD_SET_LAMP_TYPE,
    CMD_SET_VOLUME,
    CMD_STOP_LAMP,
    DYNAMIC_INFO_COMMANDS,
    LAMP_TYPE_SOLID,
    LAMP_TYPES,
    STATIC_INFO_COMMANDS,
    VENDOR_ID,
    from_volume_bucket,
    parse_hex_bytes,
    parse_hex_id,
    round_half_up,
    slider_to_rgb,
    to_hex,
    to_volume_bucket,
)
from stonectl.core.model import DeviceTelemetry, Notice
from stonectl.core.observable import Observable
from stonectl.core.registry import DeviceRegistry
from stonectl.core.telemetry import TelemetryStore

LOGGER = logging.getLogger(__name__)

# Shares the router's logger so IN and OUT traffic land in one stream.
TRAFFIC_LOGGER = logging.getLogger("stonectl.core.gaia")


class DeviceControls:
    """Commands aimed at the active device.

    Setters write the telemetry store first and only then talk to the
    device, and only when it is connected. Backend failures are logged and
    emitted as error notices instead of being raised.
    """

    def __init__(
        self,
        backend: Backend,
        registry: DeviceRegistry,
        connections: ConnectionStateStore,
        telemetry: TelemetryStore,
        *,
        vendor_id: int = VENDOR_ID,
        battery_poll_interval_s: float = 30.0,
        notices: Observable[Notice] | None = None,
    ) -> None:
        self.backend = backend
        self.registry = registry
        self.connections = connections
        self.telemetry = telemetry
        self.vendor_id = vendor_id
        self.battery_poll_interval_s = battery_poll_interval_s
        self.notices: Observable[Notice] = notices if notices is not None else Observable()
        self._last_volume: tuple[str, int] | None = None
        self._poll_task: asyncio.Task[None] | None = None

    @property
    def active_address(self) -> str | None:
        return self.registry.active_address

    def is_active_connected(self) -> bool:
        address = self.active_address
        return address is not None and self.connections.is_connected(address)

    async def request_battery(self) -> bool:
        if not await self._send(CMD_GET_BATTERY_STEP):
            return False
        return await self._send(CMD_GET_DC_STATE)

    async def request_volume(self) -> bool:
        return await self._send(CMD_GET_VOLUME)

    async def request_lamp_state(self) -> bool:
        return await self._send(CMD_GET_LAMP_STATE)

    async def request_static_info(self) -> bool:
        for command in STATIC_INFO_COMMANDS:
            if not await self._send(command):
                return False
        return True

    async def request_dynamic_info(self) -> bool:
        for command in DYNAMIC_INFO_COMMANDS:
            if not await self._send(command):
                return False
        return True

    async def refresh_active(self) -> None:
        """Ask the freshly connected active device for its live state."""
        await self.request_battery()
        await self.request_volume()
        await self.request_lamp_state()

    async def set_volume(self, value: float) -> DeviceTelemetry | None:
        address = self.active_address
        if address is None:
            return None
        updated = self.telemetry.update(address, volume=value)
        if not self.connections.is_connected(address):
            return updated

        bucket = to_volume_bucket(value)
        if self._last_volume == (address, bucket):
            LOGGER.debug("Volume bucket %d already sent to %s", bucket, address)
            return updated
        level = round_half_up(from_volume_bucket(bucket))
        if await self._send(CMD_SET_VOLUME, bytes([level])):
            self._last_volume = (address, bucket)
        return updated

    async def set_lamp_enabled(self, enabled: bool) -> DeviceTelemetry | None:
        address = self.active_address
        if address is None:
            return None
        current = self.telemetry.get(address)
        brightness = current.lamp_brightness or 0
        if enabled:
            brightness = brightness if brightness > 0 else current.lamp_last_non_zero
        else:
            brightness = 0
        updated = self.telemetry.update(
            address,
            lamp_on=enabled,
            lamp_brightness=brightness,
            lamp_last_non_zero=brightness if brightness > 0 else current.lamp_last_non_zero,
        )
        if not self.connections.is_connected(address):
            return updated

        if enabled:
            r, g, b = slider_to_rgb(updated.lamp_hue)
            payload = bytes([round_half_up(brightness), updated.lamp_type, r, g, b])
            await self._send(CMD_RUN_LAMP, payload)
        else:
            await self._send(CMD_STOP_LAMP)
        return updated

    async def set_lamp_brightness(self, value: float) -> DeviceTelemetry | None:
        address = self.active_address
        if address is None:
            return None
        value = max(0.0, min(100.0, value))
        current = self.telemetry.get(address)
        updated = self.telemetry.update(
            address,
            lamp_brightness=value,
            lamp_last_non_zero=value if value > 0 else current.lamp_last_non_zero,
        )
        if updated.lamp_on and self.connections.is_connected(address):
            await self._send(CMD_SET_LAMP_BRIGHTNESS, bytes([round_half_up(value)]))
        return updated

    async def set_lamp_type(self, lamp_type: int) -> DeviceTelemetry | None:
        if lamp_type not in LAMP_TYPES:
            raise PayloadError(f"Lamp type must be between {LAMP_TYPES.start} and {LAMP_TYPES.stop - 1}")
        address = self.active_address
        if address is None:
            return None
        updated = self.telemetry.update(address, lamp_type=lamp_type)
        if not updated.lamp_on or not self.connections.is_connected(address):
            return updated
        if await self._send(CMD_SET_LAMP_TYPE, bytes([lamp_type])) and lamp_type == LAMP_TYPE_SOLID:
            await self._send(CMD_SET_LAMP_COLOR, bytes(slider_to_rgb(updated.lamp_hue)))
        return updated

    async def set_lamp_hue(self, hue: float) -> DeviceTelemetry | None:
        address = self.active_address
        if address is None:
            return None
        updated = self.telemetry.update(address, lamp_hue=hue)
        if (
            updated.lamp_on
            and updated.lamp_type == LAMP_TYPE_SOLID
            and self.connections.is_connected(address)
        ):
            await self._send(CMD_SET_LAMP_COLOR, bytes(slider_to_rgb(hue)))
        return updated

    async def send_raw(self, vendor_hex: str, command_hex: str, payload_hex: str = "") -> bool:
        """Send a hand-built command; invalid hex raises :class:`PayloadError`."""
        vendor_id = parse_hex_id(vendor_hex, context="vendor id")
        command_id = parse_hex_id(command_hex, context="command id")
        payload = parse_hex_bytes(payload_hex)
        return await self._send(command_id, payload, vendor_id=vendor_id)

    def start_battery_polling(self) -> None:
        if self._poll_task is not None and not self._poll_task.done():
            return
        self._poll_task = asyncio.ensure_future(self._poll_battery())

    def stop_battery_polling(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def forget_device(self, address: str) -> None:
        if self._last_volume is not None and self._last_volume[0] == address:
            self._last_volume = None

    async def _poll_battery(self) -> None:
        while True:
            await asyncio.sleep(self.battery_poll_interval_s)
            if self.is_active_connected():
                await self.request_battery()

    async def _send(self, command_id: int, payload: bytes = b"", *, vendor_id: int | None = None) -> bool:
        address = self.active_address
        if address is None:
            LOGGER.debug("No active device; not sending %s", to_hex(command_id, 4))
            return False
        vendor = self.vendor_id if vendor_id is None else vendor_id
        try:
            await self.backend.send_gaia_command(address, vendor, command_id, payload)
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            LOGGER.warning("Command %s to %s failed: %s", to_hex(command_id, 4), address, message)
            self.notices.emit(Notice(kind="error", message=message, address=address))
            return False

        payload_text = " ".join(to_hex(b, 2) for b in payload) if payload else "<empty>"
        TRAFFIC_LOGGER.info("[OUT] %s %s %s", to_hex(vendor, 4), to_hex(command_id, 4), payload_text)
        return True
