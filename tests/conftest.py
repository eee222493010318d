from __future__ import annotations

import asyncio

import pytest

from stonectl.backends.base import EVENT_CONNECT_RESULT, EVENT_DEVICE, EVENT_GAIA_PACKET, EventHub
from stonectl.core.connection import ConnectionStateStore
from stonectl.core.manager import ConnectionManager
from stonectl.core.model import ConnectionInfo, ConnectResult, DeviceEvent, DeviceInfo, GaiaPacket
from stonectl.core.registry import DeviceRegistry

STONE_A = "AA:BB:CC:00:00:01"
STONE_B = "AA:BB:CC:00:00:02"
STONE_C = "AA:BB:CC:00:00:03"


class FakeBackend:
    """Recording backend; connect results are emitted by the test unless *auto_result* is set."""

    def __init__(self, *args, auto_result: bool | None = None, **kwargs) -> None:
        self.events = EventHub()
        self.auto_result = auto_result
        self.devices: list[DeviceInfo] = []
        self.connection_infos: list[ConnectionInfo] = []
        self.scan_results: list[DeviceInfo] = []
        self.connect_calls: list[str] = []
        self.disconnect_calls: list[str] = []
        self.sent: list[tuple[str, int, int, bytes]] = []
        self.connect_errors: dict[str, Exception] = {}
        self.disconnect_error: Exception | None = None
        self.send_error: Exception | None = None
        self.scan_error: Exception | None = None
        self.scan_gate: asyncio.Event | None = None
        self.outstanding = 0
        self.max_outstanding = 0

    def subscribe(self, event, callback):
        return self.events.subscribe(event, callback)

    async def list_devices(self) -> list[DeviceInfo]:
        return list(self.devices)

    async def get_connection_infos(self) -> list[ConnectionInfo]:
        return list(self.connection_infos)

    async def connect_device_async(self, address: str) -> None:
        self.connect_calls.append(address)
        error = self.connect_errors.get(address.lower())
        if error is not None:
            raise error
        self.outstanding += 1
        self.max_outstanding = max(self.max_outstanding, self.outstanding)
        if self.auto_result is not None:
            asyncio.ensure_future(self.resolve(address, ok=self.auto_result, error=None if self.auto_result else "refused"))

    async def resolve(self, address: str, ok: bool = True, error: str | None = None) -> None:
        if self.outstanding > 0:
            self.outstanding -= 1
        if ok:
            self.connection_infos = [i for i in self.connection_infos if i.address.lower() != address.lower()]
            self.connection_infos.append(ConnectionInfo(address=address, link=True, rfcomm=True))
        await self.events.emit(EVENT_CONNECT_RESULT, ConnectResult(address=address, ok=ok, error=error))

    async def push_device_event(self, address: str, connected: bool) -> None:
        await self.events.emit(EVENT_DEVICE, DeviceEvent(address=address, connected=connected))

    async def push_packet(self, packet: GaiaPacket) -> None:
        await self.events.emit(EVENT_GAIA_PACKET, packet)

    async def disconnect_device(self, address: str) -> None:
        self.disconnect_calls.append(address)
        if self.disconnect_error is not None:
            raise self.disconnect_error

    async def scan_unpaired_stone_devices(self) -> list[DeviceInfo]:
        if self.scan_gate is not None:
            await self.scan_gate.wait()
        if self.scan_error is not None:
            raise self.scan_error
        return list(self.scan_results)

    async def send_gaia_command(self, address: str, vendor_id: int, command_id: int, payload: bytes = b"") -> None:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((address, vendor_id, command_id, bytes(payload)))


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def registry(tmp_path) -> DeviceRegistry:
    return DeviceRegistry(tmp_path / "devices.json")


@pytest.fixture
def connections() -> ConnectionStateStore:
    return ConnectionStateStore(clock=lambda: 100.0)


@pytest.fixture
def manager(backend, connections, registry) -> ConnectionManager:
    manager = ConnectionManager(backend, connections, registry)
    backend.subscribe(EVENT_CONNECT_RESULT, manager.handle_connect_result)
    backend.subscribe(EVENT_DEVICE, manager.handle_device_event)
    return manager
