from __future__ import annotations

import asyncio

import pytest
from conftest import STONE_A, STONE_B

from stonectl.core.errors import BackendError, PairingError
from stonectl.core.model import DeviceInfo
from stonectl.core.pairing import (
    DEFAULT_FAILURE_MESSAGE,
    BackendScanSource,
    PairingFlow,
    SyntheticCandidateSource,
    summarize_error,
)

A, B = STONE_A.lower(), STONE_B.lower()


def _flow(manager, sources, **kwargs) -> PairingFlow:
    flow = PairingFlow(manager, sources, **kwargs)
    manager.results.subscribe(flow.handle_connect_result)
    return flow


@pytest.fixture
def flow(manager, backend) -> PairingFlow:
    backend.scan_results = [
        DeviceInfo(address=STONE_A, name="STONE A"),
        DeviceInfo(address=STONE_B, name="STONE B"),
    ]
    return _flow(manager, [BackendScanSource(backend)])


@pytest.mark.asyncio
async def test_candidates_exclude_registered_devices(flow, registry) -> None:
    registry.upsert(B, "STONE B")
    await flow.refresh()
    assert [c.address for c in flow.candidates] == [A]


@pytest.mark.asyncio
async def test_successful_pairing(flow, manager, backend, registry) -> None:
    stages = []
    flow.changes.subscribe(stages.append)
    notices = []
    manager.notices.subscribe(notices.append)
    await flow.refresh()

    await flow.begin_pair(STONE_A)
    assert flow.stage == "connecting"
    assert manager.is_pairing(A)

    await backend.resolve(A)
    assert flow.stage == "success"
    assert A in registry
    assert "paired" not in [n.kind for n in notices]

    flow.confirm()
    assert flow.stage == "select"
    assert stages == ["connecting", "success", "select"]


@pytest.mark.asyncio
async def test_failed_pairing_shows_short_error_and_retries(flow, backend) -> None:
    await flow.refresh()
    await flow.begin_pair(STONE_A)
    await backend.resolve(A, ok=False, error="Page   timeout\n" + "x" * 200)

    assert flow.stage == "fail"
    assert flow.message.startswith("Page timeout xxx")
    assert flow.message.endswith("...")
    assert len(flow.message) == 93

    flow.retry()
    assert flow.stage == "select"
    assert flow.message is None


@pytest.mark.asyncio
async def test_pair_rejected_by_queue_fails(flow, manager) -> None:
    await flow.refresh()
    await manager.connect(STONE_A)

    await flow.begin_pair(STONE_A)
    assert flow.stage == "fail"


@pytest.mark.asyncio
async def test_pair_of_connected_device_succeeds_immediately(flow, connections, backend) -> None:
    await flow.refresh()
    connections.mark_connected(A)

    await flow.begin_pair(STONE_A)
    assert flow.stage == "success"
    assert backend.connect_calls == []


@pytest.mark.asyncio
async def test_immediate_backend_failure_fails_the_flow(flow, backend) -> None:
    backend.connect_errors[A] = BackendError("adapter off")
    await flow.refresh()

    await flow.begin_pair(STONE_A)
    assert flow.stage == "fail"
    assert flow.last_error == "adapter off"


@pytest.mark.asyncio
async def test_cancel_suppresses_late_result(flow, backend) -> None:
    await flow.refresh()
    await flow.begin_pair(STONE_A)

    assert await flow.cancel() is True
    assert flow.stage == "select"
    assert backend.disconnect_calls == [A]

    await backend.resolve(A)
    assert flow.stage == "select"


@pytest.mark.asyncio
async def test_cancel_lets_queued_connect_start(flow, manager, backend) -> None:
    await flow.refresh()
    await flow.begin_pair(STONE_A)
    await manager.connect(STONE_B)
    assert backend.connect_calls == [A]

    await flow.cancel()
    assert backend.connect_calls == [A, B]
    assert manager.in_flight == B
    assert flow.stage == "select"


@pytest.mark.asyncio
async def test_cancel_outside_connecting_is_a_no_op(flow) -> None:
    assert await flow.cancel() is False


@pytest.mark.asyncio
async def test_invalid_transitions_raise(flow) -> None:
    await flow.refresh()
    with pytest.raises(PairingError):
        await flow.begin_pair("aa:bb:cc:99:99:99")
    with pytest.raises(PairingError):
        flow.confirm()
    with pytest.raises(PairingError):
        flow.retry()

    await flow.begin_pair(STONE_A)
    with pytest.raises(PairingError):
        await flow.begin_pair(STONE_B)


@pytest.mark.asyncio
async def test_stale_refresh_is_discarded(flow, backend) -> None:
    backend.scan_gate = asyncio.Event()
    pending = asyncio.ensure_future(flow.refresh())
    await asyncio.sleep(0)

    flow.reset(refresh=False)
    backend.scan_gate.set()
    await pending

    assert flow.candidates == ()


@pytest.mark.asyncio
async def test_scan_failure_keeps_previous_candidates(flow, backend) -> None:
    await flow.refresh()
    backend.scan_error = BackendError("scan failed")
    await flow.refresh()
    assert len(flow.candidates) == 2


@pytest.mark.asyncio
async def test_auto_scan_runs_only_in_select(manager, backend) -> None:
    backend.scan_results = [DeviceInfo(address=STONE_A, name="STONE A")]
    flow = _flow(manager, [BackendScanSource(backend)], scan_interval_s=0.01)

    flow.open()
    await asyncio.sleep(0.05)
    assert flow.is_scanning
    assert [c.address for c in flow.candidates] == [A]

    await flow.begin_pair(STONE_A)
    assert not flow.is_scanning

    await flow.cancel()
    assert flow.is_scanning
    flow.close()
    assert not flow.is_scanning


@pytest.mark.asyncio
async def test_synthetic_candidates_resolve_prepared_outcome(manager, backend) -> None:
    synthetic = SyntheticCandidateSource(delay_s=0.01)
    flow = _flow(manager, [synthetic])
    await flow.refresh()
    assert [c.name for c in flow.candidates] == ["STONE DEBUG A", "STONE DEBUG B"]

    synthetic.prepare_outcome("success")
    await flow.begin_pair("debug-stone-virtual-a")
    assert flow.stage == "connecting"
    await asyncio.sleep(0.05)
    assert flow.stage == "success"
    assert backend.connect_calls == []

    flow.confirm()
    synthetic.prepare_outcome("fail")
    await flow.begin_pair("debug-stone-virtual-b")
    await asyncio.sleep(0.05)
    assert flow.stage == "fail"
    assert flow.message == "Debug simulated failure"


@pytest.mark.asyncio
async def test_cancelling_synthetic_pair_skips_disconnect(manager, backend) -> None:
    synthetic = SyntheticCandidateSource(delay_s=0.01)
    flow = _flow(manager, [synthetic])
    await flow.refresh()
    synthetic.prepare_outcome("success")
    await flow.begin_pair("debug-stone-virtual-a")

    await flow.cancel()
    await asyncio.sleep(0.05)
    assert flow.stage == "select"
    assert backend.disconnect_calls == []


def test_summarize_error() -> None:
    assert summarize_error(None) == DEFAULT_FAILURE_MESSAGE
    assert summarize_error("  \n ") == DEFAULT_FAILURE_MESSAGE
    assert summarize_error("a\t b\n\nc") == "a b c"
    assert summarize_error("x" * 95, limit=90) == "x" * 90 + "..."
    assert summarize_error("x" * 90, limit=90) == "x" * 90
