"""Core data models used across stores, controllers, backends and CLI."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Literal

ConnectionState = Literal["idle", "connecting", "connected", "disconnecting"]
ConnectReason = Literal["manual", "startup", "pair"]
EnqueueOutcome = Literal["completed", "queued", "rejected"]
NoticeKind = Literal["info", "error", "paired"]

CONNECT_CANCELLED = "Cancelled"


def normalize_address(address: str) -> str:
    return address.strip().lower()


@dataclass(frozen=True)
class DeviceInfo:
    address: str
    name: str
    connected: bool = False
    alias: str | None = None
    raw_name: str | None = None

    @property
    def label(self) -> str:
        if self.alias and self.raw_name and self.alias != self.raw_name:
            return f"{self.alias} (name: {self.raw_name})"
        return self.name or self.address


@dataclass(frozen=True)
class ConnectionInfo:
    address: str
    link: bool
    rfcomm: bool


@dataclass(frozen=True)
class ConnectionRecord:
    state: ConnectionState = "idle"
    link: bool = False
    rfcomm: bool = False
    last_error: str | None = None
    updated_at: float = 0.0


@dataclass(frozen=True)
class RegisteredDevice:
    address: str
    name: str


@dataclass(frozen=True)
class ConnectQueueItem:
    address: str
    reason: ConnectReason
    activate_on_success: bool = False
    quiet: bool = False
    suppress_paired_notice: bool = False


@dataclass(frozen=True)
class DeviceTelemetry:
    battery_step: int | None = None
    battery_level: int | None = None
    dc_state: int | None = None
    volume: float | None = None
    lamp_on: bool = False
    lamp_brightness: float | None = None
    lamp_type: int = 1
    lamp_hue: float = 0
    lamp_last_non_zero: float = 50


@dataclass(frozen=True)
class DeviceStaticInfo:
    name: str | None = None
    firmware: str | None = None
    mac: str | None = None
    rssi: int | None = None
    wheel: int | None = None


@dataclass(frozen=True)
class Notice:
    kind: NoticeKind
    message: str
    address: str | None = None


@dataclass(frozen=True)
class ConnectResult:
    address: str
    ok: bool
    error: str | None = None

    @classmethod
    def from_event(cls, payload: Mapping[str, Any]) -> ConnectResult:
        return cls(
            address=str(payload["address"]),
            ok=bool(payload["ok"]),
            error=payload.get("error"),
        )


@dataclass(frozen=True)
class DeviceEvent:
    address: str
    connected: bool

    @classmethod
    def from_event(cls, payload: Mapping[str, Any]) -> DeviceEvent:
        return cls(address=str(payload["address"]), connected=bool(payload["connected"]))


@dataclass(frozen=True)
class GaiaPacket:
    address: str
    vendor_id: int
    command_id: int
    command: int
    ack: bool
    payload: bytes = b""
    status: int | None = None
    flags: int = 0

    @property
    def ack_status(self) -> int | None:
        """Status of an ACK: the explicit field, else byte 0 of the payload."""
        if self.status is not None:
            return self.status
        if self.ack and self.payload:
            return self.payload[0]
        return None

    @property
    def data(self) -> bytes:
        """Response data: the status byte is stripped from non-empty ACK payloads."""
        if self.ack and self.payload:
            return self.payload[1:]
        return self.payload

    @classmethod
    def from_event(cls, payload: Mapping[str, Any]) -> GaiaPacket:
        status = payload.get("status")
        return cls(
            address=str(payload.get("address") or ""),
            vendor_id=int(payload["vendor_id"]),
            command_id=int(payload["command_id"]),
            command=int(payload.get("command", int(payload["command_id"]) & 0x7FFF)),
            ack=bool(payload["ack"]),
            payload=bytes(payload.get("payload") or b""),
            status=int(status) if status is not None else None,
            flags=int(payload.get("flags", 0)),
        )
