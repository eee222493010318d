"""Linux backend built on ``bluetoothctl`` and RFCOMM sockets."""

from __future__ import annotations

import asyncio
import logging
import re
import socket
import subprocess
from collections.abc import Callable, Sequence

from stonectl.backends.base import (
    EVENT_CONNECT_RESULT,
    EVENT_DEVICE,
    EVENT_GAIA_PACKET,
    EventCallback,
    EventHub,
    EventName,
)
from stonectl.core.config import TransportConfig
from stonectl.core.errors import BackendError, BackendUnavailableError, TransportError, TransportSendError
from stonectl.core.model import (
    CONNECT_CANCELLED,
    ConnectionInfo,
    ConnectResult,
    DeviceEvent,
    DeviceInfo,
    normalize_address,
)
from stonectl.transports.framing import GaiaFrameParser, encode_frame
from stonectl.transports.rfcomm import RFCOMMLink

LOGGER = logging.getLogger(__name__)

_DEVICE_LINE_RE = re.compile(r"^Device\s+([0-9A-F:]{17})\s+(.+)$", re.IGNORECASE)

PAIRED_COMMANDS = (
    ["bluetoothctl", "devices", "Paired"],
    ["bluetoothctl", "paired-devices"],
)
CONNECTED_COMMANDS = (["bluetoothctl", "devices", "Connected"],)
ALL_DEVICES_COMMANDS = (["bluetoothctl", "devices"],)


class BluezBackend:
    """Backend for BlueZ hosts.

    Device state comes from ``bluetoothctl``; each connected device gets a
    dedicated RFCOMM link that carries GAIA frames. Connect attempts run as
    background tasks and report through ``bt_connect_result``.
    """

    def __init__(
        self,
        transport: TransportConfig | None = None,
        *,
        name_filter: str = "STONE",
        scan_duration_s: float = 5.0,
        link_factory: Callable[..., RFCOMMLink] = RFCOMMLink,
    ) -> None:
        self.transport = transport or TransportConfig()
        self.name_filter = name_filter
        self.scan_duration_s = scan_duration_s
        self._link_factory = link_factory
        self._events = EventHub()
        self._links: dict[str, RFCOMMLink] = {}
        self._readers: dict[str, asyncio.Task[None]] = {}
        self._attempts: dict[str, asyncio.Task[None]] = {}

    def subscribe(self, event: EventName, callback: EventCallback) -> Callable[[], None]:
        return self._events.subscribe(event, callback)

    async def list_devices(self) -> list[DeviceInfo]:
        paired = await asyncio.to_thread(_discover_devices, PAIRED_COMMANDS)
        connected_devices = await asyncio.to_thread(_discover_devices, CONNECTED_COMMANDS)
        connected = {normalize_address(d.address) for d in connected_devices}
        return [
            DeviceInfo(address=d.address, name=d.name, connected=normalize_address(d.address) in connected)
            for d in paired
        ]

    async def get_connection_infos(self) -> list[ConnectionInfo]:
        connected = await asyncio.to_thread(_discover_devices, CONNECTED_COMMANDS)
        infos = {
            normalize_address(d.address): ConnectionInfo(
                address=d.address,
                link=True,
                rfcomm=normalize_address(d.address) in self._links,
            )
            for d in connected
        }
        for key, link in self._links.items():
            if key not in infos:
                infos[key] = ConnectionInfo(address=link.address, link=True, rfcomm=True)
        return list(infos.values())

    async def connect_device_async(self, address: str) -> None:
        key = normalize_address(address)
        attempt = self._attempts.get(key)
        if attempt is not None and not attempt.done():
            raise BackendError(f"Connect to {address} already running")
        if not hasattr(socket, "AF_BLUETOOTH") or not hasattr(socket, "BTPROTO_RFCOMM"):
            raise BackendUnavailableError(
                "Python runtime missing AF_BLUETOOTH/BTPROTO_RFCOMM; RFCOMM connections are unavailable."
            )
        self._attempts[key] = asyncio.ensure_future(self._connect(address.upper()))

    async def disconnect_device(self, address: str) -> None:
        key = normalize_address(address)
        attempt = self._attempts.pop(key, None)
        if attempt is not None and not attempt.done():
            attempt.cancel()
            LOGGER.info("Cancelled connect attempt for %s", address)
            await self._events.emit(
                EVENT_CONNECT_RESULT,
                ConnectResult(address=address, ok=False, error=CONNECT_CANCELLED),
            )
        had_link = self._drop_link(key)
        result = await asyncio.to_thread(_run_command, ["bluetoothctl", "disconnect", address.upper()])
        if result is None:
            raise BackendUnavailableError("bluetoothctl is not installed")
        if result.returncode != 0 and not had_link:
            raise BackendError(_command_error(result, f"Disconnect from {address} failed"))
        await self._events.emit(EVENT_DEVICE, DeviceEvent(address=address, connected=False))

    async def scan_unpaired_stone_devices(self) -> list[DeviceInfo]:
        scan = ["bluetoothctl", "--timeout", str(int(self.scan_duration_s)), "scan", "on"]
        if await asyncio.to_thread(_run_command, scan) is None:
            raise BackendUnavailableError("bluetoothctl is not installed")
        paired_devices = await asyncio.to_thread(_discover_devices, PAIRED_COMMANDS)
        paired = {normalize_address(d.address) for d in paired_devices}
        seen = await asyncio.to_thread(_discover_devices, ALL_DEVICES_COMMANDS)
        needle = self.name_filter.lower()
        return [d for d in seen if normalize_address(d.address) not in paired and needle in d.name.lower()]

    async def send_gaia_command(
        self,
        address: str,
        vendor_id: int,
        command_id: int,
        payload: bytes = b"",
    ) -> None:
        link = self._links.get(normalize_address(address))
        if link is None:
            raise TransportSendError(f"No RFCOMM link to {address}")
        frame = encode_frame(vendor_id, command_id, payload)
        LOGGER.debug("Send GAIA command: vendor=0x%04X cmd=0x%04X len=%d", vendor_id, command_id, len(payload))
        await asyncio.to_thread(link.send, frame)

    async def close(self) -> None:
        for attempt in self._attempts.values():
            attempt.cancel()
        self._attempts.clear()
        for key in list(self._links):
            self._drop_link(key)

    async def _connect(self, address: str) -> None:
        key = normalize_address(address)
        LOGGER.info("Connect request: %s", address)
        try:
            link = await self._open_link(address)
        except Exception as exc:
            LOGGER.warning("Connect to %s failed: %s", address, exc)
            self._attempts.pop(key, None)
            error = str(exc) or exc.__class__.__name__
            await self._events.emit(EVENT_CONNECT_RESULT, ConnectResult(address=address, ok=False, error=error))
            return

        self._links[key] = link
        self._readers[key] = asyncio.ensure_future(self._read_loop(key, link))
        self._attempts.pop(key, None)
        await self._events.emit(EVENT_CONNECT_RESULT, ConnectResult(address=address, ok=True))
        await self._events.emit(EVENT_DEVICE, DeviceEvent(address=address, connected=True))

    async def _open_link(self, address: str) -> RFCOMMLink:
        result = await asyncio.to_thread(_run_command, ["bluetoothctl", "connect", address])
        if result is not None and result.returncode != 0:
            LOGGER.debug("bluetoothctl connect %s returned %s; trying RFCOMM anyway", address, result.returncode)

        link = self._link_factory(
            address,
            channel=self.transport.rfcomm_channel,
            timeout_s=self.transport.command_timeout_s,
        )
        await asyncio.to_thread(link.open)
        return link

    async def _read_loop(self, key: str, link: RFCOMMLink) -> None:
        parser = GaiaFrameParser(link.address)
        try:
            while True:
                data = await asyncio.to_thread(link.recv)
                if data is None:
                    continue
                if not data:
                    break
                for packet in parser.feed(data):
                    await self._events.emit(EVENT_GAIA_PACKET, packet)
        except TransportError as exc:
            LOGGER.warning("RFCOMM link to %s failed: %s", link.address, exc)

        if self._links.get(key) is link:
            self._drop_link(key, cancel_reader=False)
            await self._events.emit(EVENT_DEVICE, DeviceEvent(address=link.address, connected=False))

    def _drop_link(self, key: str, *, cancel_reader: bool = True) -> bool:
        reader = self._readers.pop(key, None)
        if reader is not None and cancel_reader:
            reader.cancel()
        link = self._links.pop(key, None)
        if link is None:
            return False
        link.close()
        return True


def _discover_devices(commands: Sequence[Sequence[str]]) -> list[DeviceInfo]:
    """Run the first ``bluetoothctl`` listing that works and parse its output."""
    command_errors: list[str] = []
    available = False
    for cmd in commands:
        result = _run_command(cmd)
        if result is None:
            continue
        available = True
        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            if stderr:
                command_errors.append(f"{' '.join(cmd)} -> {stderr}")
            continue

        seen: set[str] = set()
        devices: list[DeviceInfo] = []
        for line in result.stdout.splitlines():
            match = _DEVICE_LINE_RE.match(line.strip())
            if not match:
                continue
            address, name = match.group(1).upper(), match.group(2).strip()
            if address in seen:
                continue
            seen.add(address)
            devices.append(DeviceInfo(address=address, name=name))
        return devices

    if not available:
        raise BackendUnavailableError("bluetoothctl is not installed")
    joined = " | ".join(command_errors) or "no output"
    raise BackendError(f"Bluetooth discovery failed. Ensure a working D-Bus/BlueZ session. Details: {joined}")


def _run_command(cmd: Sequence[str]) -> subprocess.CompletedProcess[str] | None:
    try:
        return subprocess.run(
            cmd,
            check=False,
            capture_output=True,
            text=True,
        )
    except FileNotFoundError:
        return None


def _command_error(result: subprocess.CompletedProcess[str], prefix: str) -> str:
    detail = (result.stderr or result.stdout or "").strip()
    return f"{prefix}: {detail}" if detail else prefix
