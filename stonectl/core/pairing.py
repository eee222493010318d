"""Interactive pairing flow on top of the connection manager.

The flow moves ``select -> connecting -> success | fail`` and back to
``select`` through :meth:`PairingFlow.confirm`, :meth:`PairingFlow.retry` or
:meth:`PairingFlow.cancel`. While in ``select`` it periodically re-lists
pairing candidates from its candidate sources.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Literal, Protocol

from stonectl.backends.base import Backend
from stonectl.core.errors import PairingError
from stonectl.core.manager import ConnectionManager
from stonectl.core.model import ConnectResult, normalize_address
from stonectl.core.observable import Observable

LOGGER = logging.getLogger(__name__)

PairStage = Literal["select", "connecting", "success", "fail"]
SyntheticOutcome = Literal["success", "fail"]

DEFAULT_FAILURE_MESSAGE = "Connection failed."
SYNTHETIC_FAILURE_MESSAGE = "Debug simulated failure"
SYNTHETIC_DELAY_S = 0.38

_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class PairCandidate:
    address: str
    name: str
    synthetic: bool = False


SYNTHETIC_CANDIDATES = (
    PairCandidate(address="debug-stone-virtual-a", name="STONE DEBUG A", synthetic=True),
    PairCandidate(address="debug-stone-virtual-b", name="STONE DEBUG B", synthetic=True),
)


def summarize_error(message: str | None, limit: int = 90) -> str:
    if not message:
        return DEFAULT_FAILURE_MESSAGE
    compact = _WHITESPACE_RE.sub(" ", message).strip()
    if not compact:
        return DEFAULT_FAILURE_MESSAGE
    return f"{compact[:limit]}..." if len(compact) > limit else compact


class CandidateSource(Protocol):
    async def candidates(self) -> list[PairCandidate]: ...


class BackendScanSource:
    """Unpaired STONE devices reported by the backend scan."""

    def __init__(self, backend: Backend) -> None:
        self.backend = backend

    async def candidates(self) -> list[PairCandidate]:
        devices = await self.backend.scan_unpaired_stone_devices()
        return [PairCandidate(address=normalize_address(d.address), name=d.label) for d in devices]


class SyntheticCandidateSource:
    """Fixed debug candidates whose pairing outcome is prepared up front."""

    def __init__(self, delay_s: float = SYNTHETIC_DELAY_S) -> None:
        self.delay_s = delay_s
        self._outcome: SyntheticOutcome | None = None

    def prepare_outcome(self, outcome: SyntheticOutcome) -> None:
        self._outcome = outcome

    def take_outcome(self) -> SyntheticOutcome | None:
        outcome, self._outcome = self._outcome, None
        return outcome

    def clear(self) -> None:
        self._outcome = None

    async def candidates(self) -> list[PairCandidate]:
        return list(SYNTHETIC_CANDIDATES)


class PairingFlow:
    def __init__(
        self,
        manager: ConnectionManager,
        sources: Sequence[CandidateSource],
        *,
        scan_interval_s: float = 10.0,
        error_display_limit: int = 90,
    ) -> None:
        self.manager = manager
        self.sources = tuple(sources)
        self.scan_interval_s = scan_interval_s
        self.error_display_limit = error_display_limit
        self.changes: Observable[PairStage] = Observable()
        self._stage: PairStage = "select"
        self._candidates: list[PairCandidate] = []
        self._pending: PairCandidate | None = None
        self._last_error: str | None = None
        self._cancel_requested = False
        self._refresh_token = 0
        self._refresh_in_flight = False
        self._scan_task: asyncio.Task[None] | None = None
        self._synthetic_task: asyncio.Task[None] | None = None
        self._open = False

    @property
    def stage(self) -> PairStage:
        return self._stage

    @property
    def pending(self) -> PairCandidate | None:
        return self._pending

    @property
    def last_error(self) -> str | None:
        return self._last_error

    @property
    def message(self) -> str | None:
        """Short error text for the ``fail`` stage."""
        if self._stage != "fail":
            return None
        return summarize_error(self._last_error, self.error_display_limit)

    @property
    def candidates(self) -> tuple[PairCandidate, ...]:
        registered = set(self.manager.registry.addresses)
        return tuple(c for c in self._candidates if c.address not in registered)

    @property
    def is_scanning(self) -> bool:
        return self._scan_task is not None and not self._scan_task.done()

    def find_candidate(self, address: str) -> PairCandidate | None:
        key = normalize_address(address)
        return next((c for c in self.candidates if c.address == key), None)

    def open(self) -> None:
        """Enter the flow and start the periodic candidate scan."""
        self._open = True
        self.start_auto_scan()

    def close(self) -> None:
        self._open = False
        self.stop_auto_scan()
        self._cancel_synthetic()
        self._invalidate_refresh()

    async def refresh(self) -> None:
        if self._stage != "select" or self._refresh_in_flight:
            return
        self._refresh_token += 1
        token = self._refresh_token
        self._refresh_in_flight = True
        try:
            found: list[PairCandidate] = []
            seen: set[str] = set()
            for source in self.sources:
                for candidate in await source.candidates():
                    if candidate.address not in seen:
                        seen.add(candidate.address)
                        found.append(candidate)
        except Exception as exc:
            if token == self._refresh_token:
                LOGGER.warning("Candidate scan failed: %s", exc)
            return
        finally:
            if token == self._refresh_token:
                self._refresh_in_flight = False

        if token != self._refresh_token or self._stage != "select":
            LOGGER.debug("Discarding stale candidate scan")
            return
        self._candidates = found
        LOGGER.debug("Pairing candidates: %s", ", ".join(c.address for c in found) or "<none>")

    async def begin_pair(self, address: str) -> None:
        if self._stage != "select":
            raise PairingError(f"Cannot start pairing while {self._stage}")
        candidate = self.find_candidate(address)
        if candidate is None:
            raise PairingError("Select a device to pair")

        self._pending = candidate
        self._last_error = None
        self._cancel_requested = False
        LOGGER.info("Initiating pairing for %s", candidate.address)
        self._set_stage("connecting")

        if candidate.synthetic:
            source = self._synthetic_source()
            prepared = source.take_outcome() if source is not None else None
            if prepared is not None:
                self._synthetic_task = asyncio.ensure_future(self._resolve_synthetic(candidate, prepared))
            return

        try:
            outcome = await self.manager.pair(candidate.address, suppress_auto_paired_toast=True)
        except Exception as exc:
            if self._is_waiting_for(candidate.address):
                self._fail(str(exc))
            return

        if not self._is_waiting_for(candidate.address):
            return
        if outcome == "completed":
            self._set_stage("success")
        elif outcome == "rejected":
            self._fail("Connect already in progress or queued")

    def handle_connect_result(self, result: ConnectResult) -> None:
        if not self._is_waiting_for(result.address):
            return
        if result.ok:
            self._set_stage("success")
        else:
            self._fail(result.error or "Connect failed")

    async def cancel(self) -> bool:
        if self._stage != "connecting" or self._pending is None:
            return False
        pending = self._pending
        self._cancel_requested = True
        LOGGER.info("Cancel pairing request: %s", pending.address)
        self._cancel_synthetic()
        self.reset(refresh=False)
        if not pending.synthetic:
            await self.manager.disconnect(pending.address)
        return True

    def confirm(self) -> None:
        if self._stage != "success":
            raise PairingError(f"Nothing to confirm while {self._stage}")
        self.reset()

    def retry(self) -> None:
        if self._stage != "fail":
            raise PairingError(f"Nothing to retry while {self._stage}")
        self.reset()

    def reset(self, *, refresh: bool = True, keep_synthetic_outcome: bool = False) -> None:
        self._invalidate_refresh()
        self._pending = None
        self._last_error = None
        self._cancel_requested = False
        if not keep_synthetic_outcome:
            source = self._synthetic_source()
            if source is not None:
                source.clear()
        self._set_stage("select")
        if self._open:
            self.start_auto_scan(immediate=refresh)

    def start_auto_scan(self, *, immediate: bool = True) -> None:
        if self._stage != "select":
            return
        self.stop_auto_scan()
        self._scan_task = asyncio.ensure_future(self._auto_scan(immediate))

    def stop_auto_scan(self) -> None:
        if self._scan_task is not None:
            self._scan_task.cancel()
            self._scan_task = None

    async def _auto_scan(self, immediate: bool) -> None:
        if not immediate:
            await asyncio.sleep(self.scan_interval_s)
        while self._stage == "select":
            await self.refresh()
            await asyncio.sleep(self.scan_interval_s)

    async def _resolve_synthetic(self, candidate: PairCandidate, outcome: SyntheticOutcome) -> None:
        source = self._synthetic_source()
        await asyncio.sleep(source.delay_s if source else SYNTHETIC_DELAY_S)
        if not self._is_waiting_for(candidate.address):
            return
        if outcome == "success":
            self._set_stage("success")
        else:
            self._fail(SYNTHETIC_FAILURE_MESSAGE)

    def _is_waiting_for(self, address: str) -> bool:
        return (
            self._stage == "connecting"
            and self._pending is not None
            and not self._cancel_requested
            and self._pending.address == normalize_address(address)
        )

    def _fail(self, error: str) -> None:
        self._last_error = error
        LOGGER.info("Pairing failed: %s", summarize_error(error, self.error_display_limit))
        self._set_stage("fail")

    def _set_stage(self, stage: PairStage) -> None:
        if stage != "select":
            self.stop_auto_scan()
            self._invalidate_refresh()
        if stage == self._stage:
            return
        self._stage = stage
        self.changes.emit(stage)

    def _invalidate_refresh(self) -> None:
        self._refresh_token += 1
        self._refresh_in_flight = False

    def _synthetic_source(self) -> SyntheticCandidateSource | None:
        return next((s for s in self.sources if isinstance(s, SyntheticCandidateSource)), None)

    def _cancel_synthetic(self) -> None:
        if self._synthetic_task is not None:
            self._synthetic_task.cancel()
            self._synthetic_task = None
