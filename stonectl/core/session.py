"""Wiring of the stores and controllers around one backend."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from stonectl.backends.base import EVENT_CONNECT_RESULT, EVENT_DEVICE, EVENT_GAIA_PACKET, Backend
from stonectl.core.config import Config
from stonectl.core.connection import ConnectionChange, ConnectionStateStore
from stonectl.core.controls import DeviceControls
from stonectl.core.gaia import GaiaRouter
from stonectl.core.manager import ConnectionManager
from stonectl.core.model import DeviceTelemetry, normalize_address
from stonectl.core.pairing import BackendScanSource, CandidateSource, PairingFlow, SyntheticCandidateSource
from stonectl.core.registry import DeviceRegistry
from stonectl.core.telemetry import TelemetryStore

LOGGER = logging.getLogger(__name__)


class Session:
    """One backend plus every store and controller that reacts to it.

    ``start`` subscribes to backend events, reconciles with the backend,
    auto-connects registered devices and starts periodic reconciliation.
    ``stop`` cancels background work and unsubscribes.
    """

    def __init__(
        self,
        backend: Backend,
        config: Config | None = None,
        *,
        registry: DeviceRegistry | None = None,
    ) -> None:
        self.config = config or Config()
        self.backend = backend
        self.connections = ConnectionStateStore()
        self.telemetry = TelemetryStore()
        self.registry = registry if registry is not None else DeviceRegistry(self.config.registry_path)
        self.manager = ConnectionManager(backend, self.connections, self.registry)
        self.router = GaiaRouter(self.telemetry, self.connections, vendor_id=self.config.vendor_id)
        self.controls = DeviceControls(
            backend,
            self.registry,
            self.connections,
            self.telemetry,
            vendor_id=self.config.vendor_id,
            battery_poll_interval_s=self.config.telemetry.battery_poll_interval_s,
            notices=self.manager.notices,
        )
        sources: list[CandidateSource] = [BackendScanSource(backend)]
        if self.config.pairing.synthetic_candidates:
            sources.append(SyntheticCandidateSource())
        self.pairing = PairingFlow(
            self.manager,
            sources,
            scan_interval_s=self.config.pairing.scan_interval_s,
            error_display_limit=self.config.pairing.error_display_limit,
        )
        self.manager.results.subscribe(self.pairing.handle_connect_result)
        self.connections.changes.subscribe(self._on_connection_change)
        self.registry.active_changes.subscribe(self._on_active_change)

        self._unsubscribers: list[Callable[[], None]] = []
        self._sync_task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[None]] = set()
        self._started = False

    @property
    def is_running(self) -> bool:
        return self._started

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._unsubscribers = [
            self.backend.subscribe(EVENT_CONNECT_RESULT, self.manager.handle_connect_result),
            self.backend.subscribe(EVENT_DEVICE, self.manager.handle_device_event),
            self.backend.subscribe(EVENT_GAIA_PACKET, self.router.route),
        ]

        try:
            await self.manager.refresh_devices()
        except Exception as exc:
            LOGGER.warning("Initial device listing failed: %s", exc)
        await self.manager.sync_backend_connections()
        if self.config.connection.auto_connect:
            await self.manager.auto_connect_registered()
        self._sync_task = asyncio.ensure_future(self._sync_loop())

    async def stop(self) -> None:
        self._started = False
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        if self._sync_task is not None:
            self._sync_task.cancel()
            self._sync_task = None
        self.controls.stop_battery_polling()
        self.pairing.close()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        self._background.clear()

    def active_telemetry(self) -> DeviceTelemetry | None:
        address = self.registry.active_address
        return self.telemetry.get(address) if address else None

    def is_active_connected(self) -> bool:
        return self.controls.is_active_connected()

    def active_label(self) -> str | None:
        address = self.registry.active_address
        return self.manager.label(address) if address else None

    def remove_device(self, address: str) -> bool:
        key = normalize_address(address)
        removed = self.registry.remove(key)
        if removed:
            self.telemetry.forget(key)
            self.controls.forget_device(key)
        return removed

    async def _sync_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.connection.sync_interval_s)
            await self.manager.sync_backend_connections()

    def _on_connection_change(self, change: ConnectionChange) -> None:
        if change.address != self.registry.active_address:
            return
        was_connected = change.previous.state == "connected"
        is_connected = change.current.state == "connected"
        if is_connected and not was_connected:
            self._on_active_connected()
        elif was_connected and not is_connected:
            self.controls.stop_battery_polling()

    def _on_active_change(self, address: str | None) -> None:
        if address is not None and self.connections.is_connected(address):
            self._on_active_connected()
        else:
            self.controls.stop_battery_polling()

    def _on_active_connected(self) -> None:
        if not self._started:
            return
        self.controls.start_battery_polling()
        self._spawn(self.controls.refresh_active())

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
