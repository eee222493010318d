"""GAIA v1 frame encoding and a streaming frame parser.

Frame layout::

    0xFF 0x01 flags length vendor(2, BE) command(2, BE) payload [checksum]

The checksum byte is present when ``flags & 0x01`` and is the XOR of every
preceding byte. Bit ``0x8000`` of the command id marks an acknowledgement.
"""

from __future__ import annotations

from functools import reduce
from operator import xor

from stonectl.core.errors import PayloadError
from stonectl.core.model import GaiaPacket

SOF = 0xFF
PROTOCOL_VERSION = 0x01
FLAG_CHECKSUM = 0x01
ACK_BIT = 0x8000
HEADER_LEN = 8
MAX_PAYLOAD = 254
MAX_FRAME = 270


def encode_frame(vendor_id: int, command_id: int, payload: bytes = b"", *, flags: int = 0) -> bytes:
    if len(payload) > MAX_PAYLOAD:
        raise PayloadError("Payload too long")
    frame = bytearray([SOF, PROTOCOL_VERSION, flags & 0xFF, len(payload)])
    frame += vendor_id.to_bytes(2, "big")
    frame += command_id.to_bytes(2, "big")
    frame += payload
    if flags & FLAG_CHECKSUM:
        frame.append(reduce(xor, frame, 0))
    return bytes(frame)


def decode_frame(data: bytes, address: str = "") -> GaiaPacket | None:
    """Decode one complete frame; malformed frames yield ``None``."""
    if len(data) < HEADER_LEN:
        return None
    flags = data[2]
    length = data[3]
    check_len = 1 if flags & FLAG_CHECKSUM else 0
    if len(data) < HEADER_LEN + length + check_len:
        return None
    if check_len and reduce(xor, data[:-1], 0) != data[-1]:
        return None

    command_id = int.from_bytes(data[6:8], "big")
    ack = bool(command_id & ACK_BIT)
    payload = bytes(data[HEADER_LEN : HEADER_LEN + length])
    return GaiaPacket(
        address=address,
        vendor_id=int.from_bytes(data[4:6], "big"),
        command_id=command_id,
        command=command_id & 0x7FFF,
        ack=ack,
        payload=payload,
        status=payload[0] if ack and payload else None,
        flags=flags,
    )


class GaiaFrameParser:
    """Reassemble frames from an arbitrarily chunked byte stream.

    Bytes before a start-of-frame marker are skipped, and a header that
    announces a frame longer than :data:`MAX_FRAME` drops the partial frame.
    """

    def __init__(self, address: str = "") -> None:
        self.address = address
        self._buffer = bytearray()
        self._expected = 0

    def reset(self) -> None:
        self._buffer.clear()
        self._expected = 0

    def feed(self, data: bytes) -> list[GaiaPacket]:
        packets: list[GaiaPacket] = []
        for byte in data:
            if not self._buffer:
                if byte == SOF:
                    self._buffer.append(byte)
                continue

            self._buffer.append(byte)
            if len(self._buffer) == 4:
                check_len = 1 if self._buffer[2] & FLAG_CHECKSUM else 0
                self._expected = HEADER_LEN + byte + check_len
                if self._expected > MAX_FRAME:
                    self.reset()
                    continue

            if self._expected and len(self._buffer) == self._expected:
                packet = decode_frame(bytes(self._buffer), self.address)
                if packet is not None:
                    packets.append(packet)
                self.reset()
        return packets
