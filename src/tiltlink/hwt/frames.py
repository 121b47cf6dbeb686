from __future__ import annotations

import logging
import struct
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, Iterator, Optional, Union


FRAME_LEN = 17
MAGIC = b"\x50\x03\x0c"
CRC_SPAN = 15
AXIS_OFFSETS = (3, 7, 11)

# Read 6 registers from 0x003D at address 0x50, CRC included.
POLL_COMMAND = bytes([0x50, 0x03, 0x00, 0x3D, 0x00, 0x06, 0x59, 0x85])

CRC_FAILED = "CRC validation failed"
NO_FRAME = "No valid frame found"


@dataclass
class Reading:
    device_id: str
    sensing_time: datetime
    ang_x: Decimal
    ang_y: Decimal
    ang_z: Decimal
    metrics: Dict[str, Optional[float]] = field(default_factory=dict)


@dataclass
class ErrorRecord:
    sensing_time: datetime
    reason: str


Decoded = Union[Reading, ErrorRecord]


def crc16_modbus(data: bytes, poly: int = 0xA001, init: int = 0xFFFF) -> int:
    crc = init
    for byte in data:
        crc ^= byte
        for _ in range(8):
            if crc & 0x0001:
                crc = (crc >> 1) ^ poly
            else:
                crc >>= 1
    return crc & 0xFFFF


def decode_axis(frame: bytes, offset: int) -> Decimal:
    """
    Decode one axis group of a frame.

    The sensor sends the low 16-bit word first, each word big-endian, so
    bytes ``[offset+2, offset+3, offset+0, offset+1]`` form a signed
    big-endian integer in thousandths of a degree.
    """
    group = bytes(
        (frame[offset + 2], frame[offset + 3], frame[offset], frame[offset + 1])
    )
    (raw,) = struct.unpack(">i", group)
    return Decimal(raw).scaleb(-3)


def encode_axis(raw: int) -> bytes:
    packed = struct.pack(">i", raw)
    return packed[2:4] + packed[0:2]


def build_frame(x: int, y: int, z: int, *, crc_override: Optional[int] = None) -> bytes:
    """Build a 17-byte response frame from raw axis counts (thousandths)."""
    body = MAGIC + encode_axis(x) + encode_axis(y) + encode_axis(z)
    crc = crc_override if crc_override is not None else crc16_modbus(body)
    return body + struct.pack("<H", crc)


class FrameDecoder:
    """
    Streaming decoder for the fixed 17-byte tilt response frames.

    CRC failures drop the whole 17-byte span without trying to resync inside
    it. A bad header scans forward for the next magic start byte.
    """

    def __init__(self, device_id: str):
        self.device_id = device_id
        self._buffer = bytearray()
        self._stats: Dict[str, int] = {
            "frames": 0,
            "crc_errors": 0,
            "resyncs": 0,
            "discarded_bytes": 0,
            "buffer_clears": 0,
        }
        self._log = logging.getLogger(__name__)

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def feed(self, chunk: bytes, now: Callable[[], datetime]) -> Iterator[Decoded]:
        """
        Buffer *chunk* and yield decoded items one at a time. Each item is
        timestamped when it is decoded, after the consumer handled the
        previous one.
        """
        if chunk:
            self._buffer.extend(chunk)
        while len(self._buffer) >= FRAME_LEN:
            if self._buffer[:3] == MAGIC:
                frame = bytes(self._buffer[:FRAME_LEN])
                del self._buffer[:FRAME_LEN]
                crc_expected = struct.unpack_from("<H", frame, CRC_SPAN)[0]
                crc_actual = crc16_modbus(frame[:CRC_SPAN])
                if crc_actual != crc_expected:
                    self._stats["crc_errors"] += 1
                    self._log.info(
                        "CRC mismatch (expected=%04X, actual=%04X), discarding frame",
                        crc_expected,
                        crc_actual,
                    )
                    yield ErrorRecord(sensing_time=now(), reason=CRC_FAILED)
                    continue
                self._stats["frames"] += 1
                yield self._decode(frame, now())
                continue
            index = self._buffer.find(MAGIC[0], 1)
            if index < 0:
                self._stats["buffer_clears"] += 1
                self._stats["discarded_bytes"] += len(self._buffer)
                self._log.info("No valid frame found, clearing %d buffered bytes", len(self._buffer))
                self._buffer.clear()
                yield ErrorRecord(sensing_time=now(), reason=NO_FRAME)
                break
            self._stats["resyncs"] += 1
            self._stats["discarded_bytes"] += index
            self._log.debug("Discarding %d bytes to find the next valid frame", index)
            del self._buffer[:index]

    def _decode(self, frame: bytes, sensing_time: datetime) -> Reading:
        ang_x, ang_y, ang_z = (decode_axis(frame, offset) for offset in AXIS_OFFSETS)
        return Reading(
            device_id=self.device_id,
            sensing_time=sensing_time,
            ang_x=ang_x,
            ang_y=ang_y,
            ang_z=ang_z,
        )

    def stats(self) -> Dict[str, int]:
        return dict(self._stats)
