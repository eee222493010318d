from __future__ import annotations

import asyncio

import pytest

from stonectl.backends.base import EVENT_CONNECT_RESULT, EVENT_DEVICE, EVENT_GAIA_PACKET, EventHub
from stonectl.core.model import ConnectResult, DeviceEvent, GaiaPacket


@pytest.mark.asyncio
async def test_subscribers_run_in_order_and_coroutines_are_awaited() -> None:
    hub = EventHub()
    calls: list[str] = []

    async def slow(result: ConnectResult) -> None:
        await asyncio.sleep(0.01)
        calls.append(f"slow:{result.address}")

    hub.subscribe(EVENT_CONNECT_RESULT, slow)
    hub.subscribe(EVENT_CONNECT_RESULT, lambda result: calls.append(f"sync:{result.address}"))

    await hub.emit(EVENT_CONNECT_RESULT, ConnectResult(address="AA", ok=True))
    assert calls == ["slow:AA", "sync:AA"]


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_stop_delivery(caplog: pytest.LogCaptureFixture) -> None:
    hub = EventHub()
    seen: list[DeviceEvent] = []

    def broken(event: DeviceEvent) -> None:
        raise RuntimeError("boom")

    hub.subscribe(EVENT_DEVICE, broken)
    hub.subscribe(EVENT_DEVICE, seen.append)

    await hub.emit(EVENT_DEVICE, DeviceEvent(address="AA", connected=True))
    assert len(seen) == 1
    assert "Subscriber for bt_device_event failed" in caplog.text


@pytest.mark.asyncio
async def test_unsubscribe_stops_delivery() -> None:
    hub = EventHub()
    seen: list[object] = []
    unsubscribe = hub.subscribe(EVENT_DEVICE, seen.append)
    assert hub.subscriber_count(EVENT_DEVICE) == 1

    unsubscribe()
    unsubscribe()
    await hub.emit(EVENT_DEVICE, DeviceEvent(address="AA", connected=False))
    assert seen == []
    assert hub.subscriber_count(EVENT_DEVICE) == 0


@pytest.mark.asyncio
async def test_mapping_payloads_are_decoded() -> None:
    hub = EventHub()
    results: list[ConnectResult] = []
    packets: list[GaiaPacket] = []
    hub.subscribe(EVENT_CONNECT_RESULT, results.append)
    hub.subscribe(EVENT_GAIA_PACKET, packets.append)

    await hub.emit(EVENT_CONNECT_RESULT, {"address": "AA", "ok": False, "error": "timeout"})
    await hub.emit(
        EVENT_GAIA_PACKET,
        {"address": "AA", "vendor_id": 0x5054, "command_id": 0x8455, "ack": True, "payload": b"\x00\x03", "status": 0},
    )

    assert results == [ConnectResult(address="AA", ok=False, error="timeout")]
    assert packets[0].command == 0x0455
    assert packets[0].payload == b"\x00\x03"
