"""Connection queue controller.

``ConnectionManager`` accepts connect, pair and disconnect requests and
drives the connection store and device registry from their outcomes:

- At most one connect attempt is in flight across all addresses; the rest
  wait in a FIFO queue and are started as soon as the in-flight attempt
  resolves (result event or immediate backend failure).
- A second request for an address that is already in flight or queued is
  rejected without a backend call.
- A request for an address that is already connected completes at once.
- Backend snapshots are merged without clobbering an attempt in progress.

Backend failures never propagate out of the manager; they are recorded as
``last_error`` on the connection record and surfaced as notices unless the
request was quiet. Pairing failures are always surfaced.
"""

from __future__ import annotations

import logging
from collections import deque

from stonectl.backends.base import Backend
from stonectl.core.connection import ConnectionStateStore
from stonectl.core.errors import RegistryError
from stonectl.core.model import (
    CONNECT_CANCELLED,
    ConnectQueueItem,
    ConnectResult,
    DeviceEvent,
    DeviceInfo,
    EnqueueOutcome,
    Notice,
    NoticeKind,
    normalize_address,
)
from stonectl.core.observable import Observable
from stonectl.core.registry import DeviceRegistry

LOGGER = logging.getLogger(__name__)


def _error_text(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


class ConnectionManager:
    def __init__(
        self,
        backend: Backend,
        connections: ConnectionStateStore,
        registry: DeviceRegistry,
    ) -> None:
        self.backend = backend
        self.connections = connections
        self.registry = registry
        self.notices: Observable[Notice] = Observable()
        self.results: Observable[ConnectResult] = Observable()
        self._queue: deque[ConnectQueueItem] = deque()
        self._in_flight: ConnectQueueItem | None = None
        self._pending_pairs: set[str] = set()
        self._devices: dict[str, DeviceInfo] = {}

    @property
    def in_flight(self) -> str | None:
        return self._in_flight.address if self._in_flight else None

    @property
    def queued(self) -> tuple[str, ...]:
        return tuple(item.address for item in self._queue)

    @property
    def devices(self) -> tuple[DeviceInfo, ...]:
        return tuple(self._devices.values())

    def is_pending(self, address: str) -> bool:
        key = normalize_address(address)
        return self.in_flight == key or key in self.queued

    def is_pairing(self, address: str) -> bool:
        return normalize_address(address) in self._pending_pairs

    def label(self, address: str) -> str:
        key = normalize_address(address)
        device = self._devices.get(key)
        if device is not None and device.name:
            return device.name
        registered = self.registry.get(key)
        return registered.name if registered is not None else key

    async def connect(
        self,
        address: str,
        *,
        activate_on_success: bool = False,
        quiet: bool = False,
    ) -> EnqueueOutcome:
        item = ConnectQueueItem(
            address=normalize_address(address),
            reason="manual",
            activate_on_success=activate_on_success,
            quiet=quiet,
        )
        return await self._enqueue(item)

    async def pair(self, address: str, *, suppress_auto_paired_toast: bool = False) -> EnqueueOutcome:
        item = ConnectQueueItem(
            address=normalize_address(address),
            reason="pair",
            activate_on_success=True,
            suppress_paired_notice=suppress_auto_paired_toast,
        )
        return await self._enqueue(item)

    async def auto_connect_registered(self) -> None:
        """Try every registered device once, active device first, quietly."""
        active = self.registry.active_address
        ordered = list(self.registry.addresses)
        if active in ordered:
            ordered.remove(active)
            ordered.insert(0, active)
        for address in ordered:
            await self._enqueue(ConnectQueueItem(address=address, reason="startup", quiet=True))

    async def disconnect(self, address: str) -> bool:
        key = normalize_address(address)
        waiting = [item for item in self._queue if item.address == key]
        if waiting:
            for item in waiting:
                self._queue.remove(item)
            self._pending_pairs.discard(key)
            LOGGER.debug("Dropped queued connect for %s", key)
            return True

        released = self._release_in_flight(key)
        self.connections.patch(key, state="disconnecting")
        try:
            await self.backend.disconnect_device(key)
        except Exception as exc:
            error = _error_text(exc)
            LOGGER.warning("Disconnect from %s failed: %s", key, error)
            self.connections.patch(key, state="idle", last_error=error)
            self._notify("error", error, key)
            return False
        else:
            self.connections.mark_idle(key)
            self._notify("info", f"Disconnected from {self.label(key)}", key)
            return True
        finally:
            if released:
                await self._dequeue()

    async def refresh_devices(self) -> list[DeviceInfo]:
        devices = await self.backend.list_devices()
        self._devices = {normalize_address(d.address): d for d in devices}
        return devices

    async def sync_backend_connections(self) -> None:
        try:
            infos = await self.backend.get_connection_infos()
        except Exception as exc:
            LOGGER.warning("Could not fetch backend connection state: %s", _error_text(exc))
            return

        self.connections.reconcile(infos, in_flight=self.in_flight)
        for info in infos:
            if info.rfcomm:
                self._register(normalize_address(info.address), announce=True)

    async def handle_connect_result(self, result: ConnectResult) -> None:
        key = normalize_address(result.address)
        item = self._in_flight
        if item is None or item.address != key:
            LOGGER.debug("Ignoring connect result for %s: no attempt in flight", key)
            # a released attempt has already reported its cancellation
            if result.error != CONNECT_CANCELLED:
                self.results.emit(result)
            return

        self._in_flight = None
        try:
            if result.ok:
                self._on_connected(item)
            else:
                self._on_failed(item, result.error or "Connect failed")
        finally:
            self.results.emit(result)
            await self._dequeue()

    async def handle_device_event(self, event: DeviceEvent) -> None:
        key = normalize_address(event.address)
        known = self.connections.is_tracked(key) or key in self._devices or key in self.registry
        device = self._devices.get(key)
        if device is not None:
            self._devices[key] = DeviceInfo(
                address=device.address,
                name=device.name,
                connected=event.connected,
                alias=device.alias,
                raw_name=device.raw_name,
            )

        if not event.connected:
            if not self.connections.is_tracked(key):
                return
            if self.connections.get(key).state == "connecting":
                self.connections.patch(key, link=False)
            else:
                self.connections.patch(key, state="idle", link=False, rfcomm=False)
            return

        self.connections.patch(key, link=True)
        if known:
            return
        try:
            await self.refresh_devices()
        except Exception as exc:
            LOGGER.warning("Device refresh after link-up of %s failed: %s", key, _error_text(exc))
        await self.sync_backend_connections()

    async def _enqueue(self, item: ConnectQueueItem) -> EnqueueOutcome:
        key = item.address
        if not key:
            self._notify("error", "Select a device first")
            return "rejected"

        if self.connections.is_connected(key):
            self._complete_immediately(item)
            return "completed"

        if self.is_pending(key):
            LOGGER.debug("Rejected %s request for %s: already in progress", item.reason, key)
            if item.reason == "pair" or not item.quiet:
                self._notify("error", f"Connect to {self.label(key)} already in progress or queued", key)
            return "rejected"

        if item.reason == "pair":
            self._pending_pairs.add(key)
        self._queue.append(item)
        LOGGER.debug("Queued %s connect for %s (%d waiting)", item.reason, key, len(self._queue))
        await self._dequeue()
        return "queued"

    async def _dequeue(self) -> None:
        while self._in_flight is None and self._queue:
            item = self._queue.popleft()
            self._in_flight = item
            self.connections.mark_connecting(item.address)
            LOGGER.info("Connecting to %s (%s)", item.address, item.reason)
            try:
                await self.backend.connect_device_async(item.address)
            except Exception as exc:
                if self._in_flight is not item:
                    LOGGER.debug("Connect to %s failed after release: %s", item.address, _error_text(exc))
                    return
                self._in_flight = None
                error = _error_text(exc)
                self._on_failed(item, error)
                self.results.emit(ConnectResult(address=item.address, ok=False, error=error))
                continue
            return

    def _complete_immediately(self, item: ConnectQueueItem) -> None:
        key = item.address
        if item.reason == "pair":
            created = self._register(key, announce=False)
            if not item.suppress_paired_notice:
                self._notify("paired", f"Device paired: {self.label(key)}", key)
            LOGGER.debug("Pair of %s completed on existing connection (new=%s)", key, created)
        elif not item.quiet:
            self._notify("info", f"Already connected to {self.label(key)}", key)
        if item.activate_on_success:
            self._activate(key)

    def _on_connected(self, item: ConnectQueueItem) -> None:
        key = item.address
        self.connections.mark_connected(key)
        self._pending_pairs.discard(key)
        self._register(key, announce=not item.suppress_paired_notice)
        if item.activate_on_success or self.registry.active_address is None:
            self._activate(key)
        if item.quiet:
            LOGGER.debug("Connected to %s", key)
        else:
            self._notify("info", f"Connected to {self.label(key)}", key)

    def _on_failed(self, item: ConnectQueueItem, error: str) -> None:
        key = item.address
        self.connections.mark_idle(key, error)
        if key in self._pending_pairs:
            self._pending_pairs.discard(key)
            self._notify("error", f"Pairing with {self.label(key)} failed: {error}", key)
        elif item.quiet:
            LOGGER.debug("Connect to %s failed: %s", key, error)
        else:
            self._notify("error", error, key)

    def _release_in_flight(self, key: str) -> bool:
        """Give up the in-flight attempt for *key* so the queue can move on."""
        item = self._in_flight
        if item is None or item.address != key:
            return False
        self._in_flight = None
        self._pending_pairs.discard(key)
        LOGGER.info("Cancelled connect attempt for %s", key)
        self.connections.mark_idle(key, CONNECT_CANCELLED)
        self.results.emit(ConnectResult(address=key, ok=False, error=CONNECT_CANCELLED))
        return True

    def _register(self, key: str, *, announce: bool) -> bool:
        try:
            created = self.registry.upsert(key, self.label(key))
        except RegistryError as exc:
            self._notify("error", str(exc), key)
            return False
        if created and announce:
            self._notify("paired", f"Device paired: {self.label(key)}", key)
        return created

    def _activate(self, key: str) -> None:
        if key not in self.registry:
            LOGGER.debug("Not activating %s: not registered", key)
            return
        try:
            self.registry.set_active(key)
        except RegistryError as exc:
            self._notify("error", str(exc), key)

    def _notify(self, kind: NoticeKind, message: str, address: str | None = None) -> None:
        level = logging.WARNING if kind == "error" else logging.INFO
        LOGGER.log(level, "%s", message)
        self.notices.emit(Notice(kind=kind, message=message, address=address))
