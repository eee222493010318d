"""Stable public API for building tooling on top of stonectl.

This module is the supported integration surface for third-party callers.
Avoid importing from private/internal modules unless intentionally depending on
non-stable internals.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

from stonectl.backends.base import Backend, EventHub
from stonectl.backends.bluez import BluezBackend
from stonectl.core.config import Config, load_config
from stonectl.core.errors import (
    BackendError,
    BackendUnavailableError,
    ConfigError,
    ConfigValidationError,
    PairingError,
    PayloadError,
    RegistryError,
    StonectlError,
    TransportConnectError,
    TransportError,
    TransportSendError,
    TransportTimeoutError,
)
from stonectl.core.gaia import BatteryStatus, battery_status
from stonectl.core.model import (
    ConnectionRecord,
    ConnectResult,
    DeviceInfo,
    DeviceStaticInfo,
    DeviceTelemetry,
    EnqueueOutcome,
    GaiaPacket,
    Notice,
    RegisteredDevice,
    normalize_address,
)
from stonectl.core.pairing import PairCandidate
from stonectl.core.session import Session

__all__ = [
    "StonectlError",
    "ConfigError",
    "ConfigValidationError",
    "RegistryError",
    "PairingError",
    "PayloadError",
    "BackendError",
    "BackendUnavailableError",
    "TransportError",
    "TransportConnectError",
    "TransportSendError",
    "TransportTimeoutError",
    "Backend",
    "BluezBackend",
    "EventHub",
    "Config",
    "BatteryStatus",
    "ConnectionRecord",
    "ConnectResult",
    "DeviceInfo",
    "DeviceStaticInfo",
    "DeviceTelemetry",
    "GaiaPacket",
    "Notice",
    "PairCandidate",
    "RegisteredDevice",
    "Session",
    "Client",
]


class Client:
    """Public client for driving a STONE speaker session.

    A `Client` wraps configuration loading, the backend and a `Session`
    behind a stable async API intended for third-party tools
    (GUI/TUI/services/scripts). Use it as an async context manager so the
    session's background tasks are started and stopped.
    """

    def __init__(
        self,
        *,
        backend: Backend | None = None,
        config: Config | None = None,
        config_path: Path | None = None,
    ) -> None:
        self.config = config or load_config(config_path)
        self.backend = backend or BluezBackend(
            self.config.transport,
            name_filter=self.config.pairing.name_filter,
        )
        self._session = Session(self.backend, self.config)

    @property
    def session(self) -> Session:
        return self._session

    async def __aenter__(self) -> Client:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    async def start(self) -> None:
        await self._session.start()

    async def stop(self) -> None:
        await self._session.stop()

    async def list_devices(self) -> list[DeviceInfo]:
        return await self._session.manager.refresh_devices()

    async def scan(self) -> tuple[PairCandidate, ...]:
        await self._session.pairing.refresh()
        return self._session.pairing.candidates

    def registered_devices(self) -> tuple[RegisteredDevice, ...]:
        return self._session.registry.devices

    @property
    def active_address(self) -> str | None:
        return self._session.registry.active_address

    def set_active(self, address: str | None) -> None:
        self._session.registry.set_active(address)

    def remove_device(self, address: str) -> bool:
        return self._session.remove_device(address)

    def status(self) -> dict[str, ConnectionRecord]:
        return self._session.connections.snapshot()

    def telemetry(self, address: str | None = None) -> DeviceTelemetry | None:
        if address is None:
            return self._session.active_telemetry()
        return self._session.telemetry.get(address)

    def battery(self, address: str | None = None) -> BatteryStatus | None:
        data = self.telemetry(address)
        return battery_status(data.battery_step, data.dc_state) if data else None

    async def connect(self, address: str, *, activate: bool = False) -> EnqueueOutcome:
        return await self._session.manager.connect(address, activate_on_success=activate)

    async def pair(self, address: str) -> EnqueueOutcome:
        return await self._session.manager.pair(address)

    async def disconnect(self, address: str) -> bool:
        return await self._session.manager.disconnect(address)

    async def connect_and_wait(
        self,
        address: str,
        *,
        activate: bool = False,
        pair: bool = False,
        timeout_s: float | None = None,
    ) -> ConnectResult:
        """Request a connection and wait for its outcome.

        Raises :class:`BackendError` when the request is rejected and
        :class:`TransportTimeoutError` when no result arrives in time.
        """
        key = normalize_address(address)
        timeout = timeout_s if timeout_s is not None else self.config.transport.command_timeout_s
        loop = asyncio.get_running_loop()
        future: asyncio.Future[ConnectResult] = loop.create_future()

        def _on_result(result: ConnectResult) -> None:
            if normalize_address(result.address) == key and not future.done():
                future.set_result(result)

        unsubscribe = self._session.manager.results.subscribe(_on_result)
        try:
            if pair:
                outcome = await self._session.manager.pair(key)
            else:
                outcome = await self._session.manager.connect(key, activate_on_success=activate)
            if outcome == "completed":
                return ConnectResult(address=key, ok=True)
            if outcome == "rejected":
                raise BackendError(f"Connect to {key} already in progress or queued")
            try:
                return await asyncio.wait_for(future, timeout)
            except asyncio.TimeoutError as exc:
                raise TransportTimeoutError(f"No connect result for {key} within {timeout:g}s") from exc
        finally:
            unsubscribe()

    async def send(self, vendor_hex: str, command_hex: str, payload_hex: str = "") -> bool:
        return await self._session.controls.send_raw(vendor_hex, command_hex, payload_hex)
