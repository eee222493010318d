"""Per-device connection state with targeted patches and snapshot reconciliation."""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from typing import Any

from stonectl.core.model import ConnectionInfo, ConnectionRecord, normalize_address
from stonectl.core.observable import Observable

_TRANSITIONAL = ("connecting", "disconnecting")


@dataclass(frozen=True)
class ConnectionChange:
    address: str
    previous: ConnectionRecord
    current: ConnectionRecord


class ConnectionStateStore:
    """Connection records keyed by normalized address.

    Every mutation is applied synchronously and emitted on :attr:`changes`
    before the call returns. ``state == "connected"`` always implies
    ``rfcomm``: writing ``connected`` sets the flag, and clearing the flag on
    a connected record demotes it to ``idle``.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._records: dict[str, ConnectionRecord] = {}
        self.changes: Observable[ConnectionChange] = Observable()

    def get(self, address: str) -> ConnectionRecord:
        return self._records.get(normalize_address(address), ConnectionRecord())

    def is_tracked(self, address: str) -> bool:
        return normalize_address(address) in self._records

    def is_connected(self, address: str) -> bool:
        record = self.get(address)
        return record.state == "connected" and record.rfcomm

    def addresses(self) -> tuple[str, ...]:
        return tuple(self._records)

    def snapshot(self) -> dict[str, ConnectionRecord]:
        return dict(self._records)

    def patch(self, address: str, **changes: Any) -> ConnectionRecord:
        key = normalize_address(address)
        previous = self._records.get(key, ConnectionRecord())
        current = replace(previous, **changes)
        if current.state == "connected" and changes.get("rfcomm") is False:
            current = replace(current, state="idle")
        elif current.state == "connected":
            current = replace(current, rfcomm=True)
        current = replace(current, updated_at=self._clock())
        self._records[key] = current
        self.changes.emit(ConnectionChange(address=key, previous=previous, current=current))
        return current

    def mark_connecting(self, address: str) -> ConnectionRecord:
        return self.patch(address, state="connecting", last_error=None)

    def mark_connected(self, address: str) -> ConnectionRecord:
        return self.patch(address, state="connected", link=True, rfcomm=True, last_error=None)

    def mark_idle(self, address: str, error: str | None = None) -> ConnectionRecord:
        return self.patch(address, state="idle", link=False, rfcomm=False, last_error=error)

    def reconcile(self, infos: Iterable[ConnectionInfo], in_flight: str | None = None) -> None:
        """Merge an authoritative backend snapshot into the local records.

        Reported addresses take the backend's flags; ``rfcomm`` means
        connected, otherwise a locally in-flight attempt stays ``connecting``
        and everything else becomes ``idle``. Unreported addresses keep a
        transitional state and are forced to ``idle`` otherwise.
        """
        in_flight_key = normalize_address(in_flight) if in_flight else None
        reported: set[str] = set()
        for info in infos:
            key = normalize_address(info.address)
            if not key:
                continue
            reported.add(key)
            if info.rfcomm:
                state = "connected"
            elif key == in_flight_key:
                state = "connecting"
            else:
                state = "idle"
            record = self._records.get(key)
            unchanged = record is not None and (record.state, record.link, record.rfcomm) == (
                state,
                info.link,
                info.rfcomm,
            )
            if unchanged:
                continue
            self.patch(key, state=state, link=info.link, rfcomm=info.rfcomm)

        for key, record in list(self._records.items()):
            if key in reported or record.state in _TRANSITIONAL:
                continue
            if record.state != "idle" or record.link or record.rfcomm:
                self.patch(key, state="idle", link=False, rfcomm=False)
