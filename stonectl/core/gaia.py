"""GAIA command codes, value conversions and the inbound packet router."""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Callable
from dataclasses import dataclass

from stonectl.core.config import DEFAULT_VENDOR_ID
from stonectl.core.connection import ConnectionStateStore
from stonectl.core.errors import PayloadError
from stonectl.core.model import GaiaPacket, normalize_address
from stonectl.core.observable import Observable
from stonectl.core.telemetry import TelemetryStore

LOGGER = logging.getLogger(__name__)

VENDOR_ID = DEFAULT_VENDOR_ID
STATUS_SUCCESS = 0x00

CMD_SET_VOLUME = 0x0201
CMD_SET_LAMP_BRIGHTNESS = 0x0202
CMD_SET_LAMP_TYPE = 0x0203
CMD_SET_LAMP_COLOR = 0x0204
CMD_RUN_LAMP = 0x0212
CMD_STOP_LAMP = 0x0213
CMD_GET_VOLUME = 0x0401
CMD_GET_LAMP_STATE = 0x0411
CMD_GET_NAME = 0x0451
CMD_GET_FIRMWARE = 0x0452
CMD_GET_MAC = 0x0453
CMD_GET_RSSI = 0x0454
CMD_GET_BATTERY_STEP = 0x0455
CMD_GET_DC_STATE = 0x0456
CMD_GET_WHEEL = 0x0457

STATIC_INFO_COMMANDS = (CMD_GET_NAME, CMD_GET_FIRMWARE, CMD_GET_MAC, CMD_GET_WHEEL)
DYNAMIC_INFO_COMMANDS = (CMD_GET_RSSI,)

DC_STATE_FULL = 1
DC_STATE_CHARGING = 3

LAMP_TYPE_SOLID = 1
LAMP_TYPES = range(1, 6)
VOLUME_MAX = 30
VOLUME_BUCKETS = 30
HUE_MAX = 360
_WHITE_BAND = 20

_BATTERY_STEP_PERCENT = {0: 20, 1: 20, 2: 40, 3: 60, 4: 80, 5: 100}
_HEX_CLEAN_RE = re.compile(r"[^0-9a-fA-F]")


def to_hex(value: int, width: int) -> str:
    return f"{value:0{width}X}"


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def parse_hex_bytes(text: str) -> bytes:
    cleaned = _HEX_CLEAN_RE.sub("", text)
    if len(cleaned) % 2 != 0:
        raise PayloadError("Payload hex must have even length")
    return bytes.fromhex(cleaned)


def parse_hex_id(text: str, *, context: str) -> int:
    try:
        value = int(text.strip().removeprefix("0x").removeprefix("0X"), 16)
    except ValueError as exc:
        raise PayloadError(f"Invalid {context} '{text}'") from exc
    if not 0 <= value <= 0xFFFF:
        raise PayloadError(f"{context} must fit in 16 bits")
    return value


def battery_percent(step: int) -> int:
    """Map a discretized battery step to a percentage; unknown steps pass through."""
    return _BATTERY_STEP_PERCENT.get(step, step)


@dataclass(frozen=True)
class BatteryStatus:
    percent: int
    charging: bool
    full: bool


def battery_status(step: int | None, dc_state: int | None) -> BatteryStatus | None:
    if step is None:
        return None
    return BatteryStatus(
        percent=battery_percent(step),
        charging=dc_state == DC_STATE_CHARGING,
        full=dc_state == DC_STATE_FULL and step == 5,
    )


def to_volume_bucket(value: float) -> int:
    clamped = max(0.0, min(float(VOLUME_MAX), value))
    return round_half_up(clamped / VOLUME_MAX * VOLUME_BUCKETS)


def from_volume_bucket(bucket: int) -> float:
    clamped = max(0, min(VOLUME_BUCKETS, bucket))
    return clamped / VOLUME_BUCKETS * VOLUME_MAX


def slider_to_rgb(value: float) -> tuple[int, int, int]:
    """Convert the lamp hue slider (0-360) to RGB.

    The first 20 units fade from white to warm yellow; the rest sweeps the
    hue wheel from 60 to 360 degrees at full saturation.
    """
    v = max(0.0, min(float(HUE_MAX), value))
    if v <= _WHITE_BAND:
        t = v / _WHITE_BAND
        return 255, round_half_up(255 - t * 13), round_half_up(255 - t * 255)

    h = 60 + (v - _WHITE_BAND) / (HUE_MAX - _WHITE_BAND) * 300

    def channel(n: int) -> int:
        k = (n + h / 60) % 6
        return round_half_up(255 * (1 - max(0.0, min(1.0, min(k, 4 - k)))))

    return channel(5), channel(3), channel(1)


def rgb_to_slider(r: int, g: int, b: int) -> int:
    rf, gf, bf = r / 255, g / 255, b / 255
    high, low = max(rf, gf, bf), min(rf, gf, bf)
    delta = high - low
    if delta < 0.05 and high > 0.9:
        return 0

    h = 0.0
    if delta != 0:
        if high == rf:
            h = (gf - bf) / delta + (6 if gf < bf else 0)
        elif high == gf:
            h = (bf - rf) / delta + 2
        else:
            h = (rf - gf) / delta + 4
        h *= 60

    if h < 60:
        return _WHITE_BAND
    return round_half_up(_WHITE_BAND + (h - 60) / 300 * (HUE_MAX - _WHITE_BAND))


def format_packet(packet: GaiaPacket) -> str:
    payload_text = " ".join(to_hex(b, 2) for b in packet.payload) if packet.payload else "<empty>"
    ack_text = " ACK" if packet.ack else ""
    status_text = f" status={packet.status}" if packet.status is not None else ""
    return f"{to_hex(packet.vendor_id, 4)} {to_hex(packet.command_id, 4)}{ack_text}{status_text} {payload_text}"


def _decode_text(data: bytes) -> str:
    return data.decode("utf-8", errors="replace").strip().strip("\x00").strip()


class GaiaRouter:
    """Decode inbound GAIA packets and apply them to the telemetry store.

    Packets are applied only when they come from the configured vendor, are
    either unsolicited or acknowledged with success, and belong to a device
    the connection store reports as connected. Every packet is logged.
    """

    def __init__(
        self,
        telemetry: TelemetryStore,
        connections: ConnectionStateStore,
        *,
        vendor_id: int = VENDOR_ID,
    ) -> None:
        self.telemetry = telemetry
        self.connections = connections
        self.vendor_id = vendor_id
        self.packets: Observable[str] = Observable()
        self.updates: Observable[str] = Observable()
        self._handlers: dict[int, Callable[[str, int, bytes], bool]] = {
            CMD_GET_BATTERY_STEP: self._battery_step,
            CMD_GET_DC_STATE: self._dc_state,
            CMD_GET_VOLUME: self._volume,
            CMD_GET_LAMP_STATE: self._lamp_state,
            CMD_GET_NAME: self._device_info,
            CMD_GET_FIRMWARE: self._device_info,
            CMD_GET_MAC: self._device_info,
            CMD_GET_RSSI: self._device_info,
            CMD_GET_WHEEL: self._device_info,
        }

    def should_dispatch(self, packet: GaiaPacket) -> bool:
        if packet.vendor_id != self.vendor_id:
            return False
        if packet.ack and packet.ack_status not in (None, STATUS_SUCCESS):
            return False
        return self.connections.is_connected(packet.address)

    def route(self, packet: GaiaPacket) -> str:
        if self.should_dispatch(packet):
            handler = self._handlers.get(packet.command)
            if handler is not None and handler(normalize_address(packet.address), packet.command, packet.data):
                self.updates.emit(normalize_address(packet.address))

        line = format_packet(packet)
        LOGGER.info("[IN] %s", line)
        self.packets.emit(line)
        return line

    def _battery_step(self, address: str, command: int, data: bytes) -> bool:
        if len(data) < 1:
            return False
        self.telemetry.update(address, battery_step=data[0], battery_level=battery_percent(data[0]))
        return True

    def _dc_state(self, address: str, command: int, data: bytes) -> bool:
        if len(data) < 1:
            return False
        self.telemetry.update(address, dc_state=data[0])
        return True

    def _volume(self, address: str, command: int, data: bytes) -> bool:
        if len(data) < 1:
            return False
        self.telemetry.update(address, volume=data[0])
        return True

    def _lamp_state(self, address: str, command: int, data: bytes) -> bool:
        if len(data) < 6:
            return False
        brightness = data[1]
        lamp_type = data[2] if data[2] in LAMP_TYPES else LAMP_TYPE_SOLID
        last_non_zero = brightness if brightness > 0 else self.telemetry.get(address).lamp_last_non_zero
        self.telemetry.update(
            address,
            lamp_on=data[0] == 1,
            lamp_brightness=brightness,
            lamp_type=lamp_type,
            lamp_hue=rgb_to_slider(data[3], data[4], data[5]),
            lamp_last_non_zero=last_non_zero,
        )
        return True

    def _device_info(self, address: str, command: int, data: bytes) -> bool:
        if command in (CMD_GET_NAME, CMD_GET_FIRMWARE, CMD_GET_MAC):
            text = _decode_text(data)
            if not text:
                return False
            field = {CMD_GET_NAME: "name", CMD_GET_FIRMWARE: "firmware", CMD_GET_MAC: "mac"}[command]
            self.telemetry.update_info(address, **{field: text})
            return True
        if len(data) < 1:
            return False
        if command == CMD_GET_RSSI:
            self.telemetry.update_info(address, rssi=data[0] - 256 if data[0] & 0x80 else data[0])
        else:
            self.telemetry.update_info(address, wheel=data[0])
        return True
