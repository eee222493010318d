"""Backend interface and event fan-out."""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, Literal, Protocol

from stonectl.core.model import (
    ConnectionInfo,
    ConnectResult,
    DeviceEvent,
    DeviceInfo,
    GaiaPacket,
)

LOGGER = logging.getLogger(__name__)

EventName = Literal["bt_connect_result", "bt_device_event", "gaia_packet"]
EventCallback = Callable[[Any], Awaitable[None] | None]

EVENT_CONNECT_RESULT: EventName = "bt_connect_result"
EVENT_DEVICE: EventName = "bt_device_event"
EVENT_GAIA_PACKET: EventName = "gaia_packet"

_DECODERS: dict[str, Callable[[Mapping[str, Any]], Any]] = {
    EVENT_CONNECT_RESULT: ConnectResult.from_event,
    EVENT_DEVICE: DeviceEvent.from_event,
    EVENT_GAIA_PACKET: GaiaPacket.from_event,
}


class Backend(Protocol):
    """Radio stack reachable through async calls and pushed events.

    ``connect_device_async`` only starts an attempt; its outcome arrives as a
    ``bt_connect_result`` event.
    """

    async def list_devices(self) -> list[DeviceInfo]: ...

    async def get_connection_infos(self) -> list[ConnectionInfo]: ...

    async def connect_device_async(self, address: str) -> None: ...

    async def disconnect_device(self, address: str) -> None: ...

    async def scan_unpaired_stone_devices(self) -> list[DeviceInfo]: ...

    async def send_gaia_command(
        self,
        address: str,
        vendor_id: int,
        command_id: int,
        payload: bytes = b"",
    ) -> None: ...

    def subscribe(self, event: EventName, callback: EventCallback) -> Callable[[], None]: ...


class EventHub:
    """Per-event subscriber lists with ordered, awaited delivery.

    Mapping payloads are decoded into the matching model type before
    delivery. Coroutine callbacks are awaited one after another in
    registration order; a subscriber that raises is logged and the rest
    still run.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventCallback]] = {}

    def subscribe(self, event: EventName, callback: EventCallback) -> Callable[[], None]:
        self._subscribers.setdefault(event, []).append(callback)

        def _unsubscribe() -> None:
            callbacks = self._subscribers.get(event, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return _unsubscribe

    def subscriber_count(self, event: EventName) -> int:
        return len(self._subscribers.get(event, []))

    async def emit(self, event: EventName, payload: Any) -> None:
        if isinstance(payload, Mapping):
            decoder = _DECODERS.get(event)
            if decoder is not None:
                payload = decoder(payload)
        for callback in list(self._subscribers.get(event, [])):
            try:
                outcome = callback(payload)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                LOGGER.exception("Subscriber for %s failed", event)
