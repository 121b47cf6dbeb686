from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

from tiltlink.hwt.frames import (
    CRC_FAILED,
    NO_FRAME,
    POLL_COMMAND,
    ErrorRecord,
    FrameDecoder,
    Reading,
    build_frame,
    crc16_modbus,
    decode_axis,
)

T0 = datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)


def ticking_clock(step_ms: int = 1):
    state = {"now": T0}

    def now() -> datetime:
        current = state["now"]
        state["now"] = current + timedelta(milliseconds=step_ms)
        return current

    return now


def feed(decoder: FrameDecoder, data: bytes) -> list:
    return list(decoder.feed(data, ticking_clock()))


def test_crc16_modbus_reference_values() -> None:
    assert crc16_modbus(b"123456789") == 0x4B37
    # The poll command carries its own CRC in the last two bytes, low byte first.
    assert crc16_modbus(POLL_COMMAND[:6]) == POLL_COMMAND[6] | (POLL_COMMAND[7] << 8)


def test_decode_axis_word_order() -> None:
    frame = bytearray(build_frame(0, 0, 0))
    frame[3:7] = b"\x00\x64\x00\x00"
    assert decode_axis(bytes(frame), 3) == Decimal("0.100")
    assert f"{decode_axis(bytes(frame), 3):.3f}" == "0.100"

    frame[7:11] = b"\x00\x01\x00\x02"  # 0x00020001
    assert decode_axis(bytes(frame), 7) == Decimal("131.073")


def test_decode_negative_and_zero_axes() -> None:
    decoder = FrameDecoder("dev")
    items = feed(decoder, build_frame(-1234, 0, 90000))
    assert len(items) == 1
    reading = items[0]
    assert isinstance(reading, Reading)
    assert str(reading.ang_x) == "-1.234"
    assert f"{reading.ang_y:.3f}" == "0.000"
    assert f"{reading.ang_z:.3f}" == "90.000"
    assert reading.device_id == "dev"
    assert reading.sensing_time == T0


def test_incremental_bytes_wait_for_full_frame() -> None:
    decoder = FrameDecoder("dev")
    frame = build_frame(100, 200, 300)
    now = ticking_clock()
    emitted = []
    for idx in range(len(frame)):
        emitted.extend(decoder.feed(frame[idx : idx + 1], now))
        if idx < len(frame) - 1:
            assert emitted == []
            assert decoder.buffered == idx + 1
    assert len(emitted) == 1
    assert decoder.buffered == 0


def test_any_single_bit_flip_is_rejected() -> None:
    frame = build_frame(12345, -6789, 42)
    for byte_idx in range(3, 15):
        for bit in range(8):
            corrupted = bytearray(frame)
            corrupted[byte_idx] ^= 1 << bit
            decoder = FrameDecoder("dev")
            items = feed(decoder, bytes(corrupted))
            assert len(items) == 1
            assert isinstance(items[0], ErrorRecord)
            assert items[0].reason == CRC_FAILED


def test_crc_failure_consumes_whole_frame() -> None:
    decoder = FrameDecoder("dev")
    good_crc = crc16_modbus(build_frame(1, 2, 3)[:15])
    bad = build_frame(1, 2, 3, crc_override=good_crc ^ 0x0101)
    good = build_frame(4, 5, 6)
    items = feed(decoder, bad + good)
    assert [type(item) for item in items] == [ErrorRecord, Reading]
    assert items[1].ang_x == Decimal("0.004")
    stats = decoder.stats()
    assert stats["crc_errors"] == 1
    assert stats["frames"] == 1
    assert decoder.buffered == 0


def test_resync_discards_leading_garbage() -> None:
    garbage = b"\x01\x02\xff\x10\x33"
    decoder = FrameDecoder("dev")
    items = feed(decoder, garbage + build_frame(7, 8, 9))
    assert len(items) == 1
    assert isinstance(items[0], Reading)
    assert decoder.stats()["discarded_bytes"] == len(garbage)
    assert decoder.buffered == 0


def test_resync_skips_embedded_start_byte() -> None:
    garbage = b"\x01\x50\x02"
    decoder = FrameDecoder("dev")
    items = feed(decoder, garbage + build_frame(7, 8, 9))
    assert [type(item) for item in items] == [Reading]
    stats = decoder.stats()
    assert stats["discarded_bytes"] == 3
    assert stats["resyncs"] == 2


def test_buffer_without_start_byte_is_cleared() -> None:
    decoder = FrameDecoder("dev")
    items = feed(decoder, bytes(range(1, 21)))
    assert len(items) == 1
    assert isinstance(items[0], ErrorRecord)
    assert items[0].reason == NO_FRAME
    assert decoder.buffered == 0
    assert decoder.stats()["buffer_clears"] == 1


def test_short_buffer_is_left_alone() -> None:
    decoder = FrameDecoder("dev")
    assert feed(decoder, bytes(range(1, 17))) == []
    assert decoder.buffered == 16


def test_items_are_timestamped_lazily() -> None:
    decoder = FrameDecoder("dev")
    calls: list[datetime] = []
    now = ticking_clock(step_ms=250)

    def tracking_now() -> datetime:
        value = now()
        calls.append(value)
        return value

    stream = decoder.feed(build_frame(1, 1, 1) + build_frame(2, 2, 2), tracking_now)
    first = next(stream)
    assert len(calls) == 1
    second = next(stream)
    assert second.sensing_time - first.sensing_time == timedelta(milliseconds=250)
    assert list(stream) == []
