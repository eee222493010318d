from __future__ import annotations

from stonectl.core.connection import ConnectionStateStore
from stonectl.core.model import ConnectionInfo


def test_untracked_address_reads_as_idle(connections: ConnectionStateStore) -> None:
    record = connections.get("AA:BB:CC:00:00:01")
    assert record.state == "idle"
    assert not record.link and not record.rfcomm
    assert not connections.is_tracked("aa:bb:cc:00:00:01")


def test_patch_normalizes_address_and_stamps_time(connections: ConnectionStateStore) -> None:
    connections.patch(" AA:BB:CC:00:00:01 ", link=True)
    assert connections.is_tracked("aa:bb:cc:00:00:01")
    assert connections.get("aa:bb:cc:00:00:01").updated_at == 100.0


def test_connected_implies_rfcomm(connections: ConnectionStateStore) -> None:
    record = connections.patch("aa:bb:cc:00:00:01", state="connected")
    assert record.rfcomm


def test_clearing_rfcomm_on_connected_record_demotes_to_idle(connections: ConnectionStateStore) -> None:
    connections.mark_connected("aa:bb:cc:00:00:01")
    record = connections.patch("aa:bb:cc:00:00:01", rfcomm=False)
    assert record.state == "idle"
    assert not connections.is_connected("aa:bb:cc:00:00:01")


def test_subscribers_see_mutation_in_same_call(connections: ConnectionStateStore) -> None:
    seen = []
    connections.changes.subscribe(lambda change: seen.append((change.previous.state, change.current.state)))
    connections.mark_connecting("aa:bb:cc:00:00:01")
    assert seen == [("idle", "connecting")]


def test_mark_connecting_clears_last_error(connections: ConnectionStateStore) -> None:
    connections.mark_idle("aa:bb:cc:00:00:01", "boom")
    assert connections.get("aa:bb:cc:00:00:01").last_error == "boom"
    connections.mark_connecting("aa:bb:cc:00:00:01")
    assert connections.get("aa:bb:cc:00:00:01").last_error is None


def test_reconcile_connects_reported_rfcomm_devices(connections: ConnectionStateStore) -> None:
    connections.reconcile([ConnectionInfo(address="AA:BB:CC:00:00:01", link=True, rfcomm=True)])
    assert connections.is_connected("aa:bb:cc:00:00:01")


def test_reconcile_keeps_in_flight_attempt_connecting(connections: ConnectionStateStore) -> None:
    connections.mark_connecting("aa:bb:cc:00:00:01")
    connections.reconcile(
        [ConnectionInfo(address="AA:BB:CC:00:00:01", link=True, rfcomm=False)],
        in_flight="aa:bb:cc:00:00:01",
    )
    record = connections.get("aa:bb:cc:00:00:01")
    assert record.state == "connecting"
    assert record.link


def test_reconcile_reported_without_rfcomm_is_idle(connections: ConnectionStateStore) -> None:
    connections.mark_connected("aa:bb:cc:00:00:01")
    connections.reconcile([ConnectionInfo(address="aa:bb:cc:00:00:01", link=True, rfcomm=False)])
    record = connections.get("aa:bb:cc:00:00:01")
    assert record.state == "idle"
    assert record.link


def test_reconcile_does_not_clobber_unreported_transitional_state(connections: ConnectionStateStore) -> None:
    connections.mark_connecting("aa:bb:cc:00:00:01")
    connections.patch("aa:bb:cc:00:00:02", state="disconnecting")
    connections.reconcile([])
    assert connections.get("aa:bb:cc:00:00:01").state == "connecting"
    assert connections.get("aa:bb:cc:00:00:02").state == "disconnecting"


def test_reconcile_drops_unreported_connected_devices(connections: ConnectionStateStore) -> None:
    connections.mark_connected("aa:bb:cc:00:00:01")
    connections.reconcile([])
    record = connections.get("aa:bb:cc:00:00:01")
    assert record.state == "idle"
    assert not record.link and not record.rfcomm


def test_reconcile_leaves_idle_records_alone(connections: ConnectionStateStore) -> None:
    connections.mark_idle("aa:bb:cc:00:00:01", "old error")
    seen = []
    connections.changes.subscribe(seen.append)
    connections.reconcile([])
    assert seen == []
    assert connections.get("aa:bb:cc:00:00:01").last_error == "old error"


def test_repeated_reconcile_of_same_snapshot_emits_nothing(connections: ConnectionStateStore) -> None:
    snapshot = [
        ConnectionInfo(address="AA:BB:CC:00:00:01", link=True, rfcomm=True),
        ConnectionInfo(address="AA:BB:CC:00:00:02", link=True, rfcomm=False),
    ]
    connections.reconcile(snapshot)
    seen = []
    connections.changes.subscribe(seen.append)

    connections.reconcile(snapshot)
    assert seen == []

    connections.reconcile([ConnectionInfo(address="AA:BB:CC:00:00:02", link=True, rfcomm=True)] + snapshot[:1])
    assert [change.address for change in seen] == ["aa:bb:cc:00:00:02"]
