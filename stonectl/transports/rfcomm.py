"""RFCOMM link implementation using Python sockets."""

from __future__ import annotations

import socket

from stonectl.core.errors import (
    TransportConnectError,
    TransportSendError,
    TransportTimeoutError,
)


class RFCOMMLink:
    """A long-lived RFCOMM stream to one device.

    All calls block; callers on an event loop run them in a worker thread.
    """

    def __init__(self, address: str, *, channel: int, timeout_s: float = 3.0) -> None:
        self.address = address
        self.channel = channel
        self.timeout_s = timeout_s
        self._socket: socket.socket | None = None

    @property
    def is_open(self) -> bool:
        return self._socket is not None

    def open(self) -> None:
        if self._socket is not None:
            return
        try:
            af_bluetooth = socket.AF_BLUETOOTH
            btproto_rfcomm = socket.BTPROTO_RFCOMM
        except AttributeError as exc:
            raise TransportConnectError(
                "This Python build does not expose Bluetooth socket APIs (AF_BLUETOOTH/BTPROTO_RFCOMM)."
            ) from exc

        try:
            bt_socket = socket.socket(af_bluetooth, socket.SOCK_STREAM, btproto_rfcomm)
        except OSError as exc:
            raise TransportConnectError(f"Could not create RFCOMM socket: {exc}") from exc
        bt_socket.settimeout(self.timeout_s)
        try:
            bt_socket.connect((self.address, self.channel))
        except TimeoutError as exc:
            bt_socket.close()
            raise TransportTimeoutError(
                f"RFCOMM connect timed out for {self.address} on channel {self.channel}"
            ) from exc
        except OSError as exc:
            bt_socket.close()
            raise TransportConnectError(
                f"RFCOMM connect failed for {self.address} on channel {self.channel}: {exc}"
            ) from exc
        self._socket = bt_socket

    def send(self, frame: bytes) -> None:
        if self._socket is None:
            raise TransportSendError(f"RFCOMM link to {self.address} is not open")
        try:
            self._socket.sendall(frame)
        except TimeoutError as exc:
            raise TransportTimeoutError("RFCOMM send timed out") from exc
        except OSError as exc:
            raise TransportSendError(f"RFCOMM send failed: {exc}") from exc

    def recv(self, size: int = 1024) -> bytes | None:
        """Read what is available; ``None`` on timeout, ``b""`` once the peer closed."""
        if self._socket is None:
            return b""
        try:
            return self._socket.recv(size)
        except TimeoutError:
            return None
        except OSError as exc:
            raise TransportSendError(f"RFCOMM receive failed: {exc}") from exc

    def close(self) -> None:
        if self._socket is not None:
            self._socket.close()
            self._socket = None
