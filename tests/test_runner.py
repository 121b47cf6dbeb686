from __future__ import annotations

import queue
import threading
import time
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from tiltlink.hwt.clock import PreciseClock
from tiltlink.hwt.config import AgentConfig, HostRuntime, MirrorConfig
from tiltlink.hwt.dailylog import DailyLog
from tiltlink.hwt.delivery import DeliveryPipeline
from tiltlink.hwt.frames import POLL_COMMAND, ErrorRecord, FrameDecoder, Reading, build_frame
from tiltlink.hwt.runner import AgentContext, SerialReaderThread, SerialSettings, build_context, process_chunk
from tiltlink.hwt.sinks import DeliveryResult

ANCHOR = datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)


def corrupt(frame: bytes) -> bytes:
    return frame[:-1] + bytes([frame[-1] ^ 0xFF])


class FakeSerialInstance:
    def __init__(self, chunks: list[bytes]):
        self._chunks = chunks
        self.written: list[bytes] = []

    def read(self, size: int) -> bytes:
        if self._chunks:
            return self._chunks.pop(0)
        time.sleep(0.01)
        return b""

    def write(self, data: bytes) -> int:
        self.written.append(bytes(data))
        return len(data)

    def flush(self) -> None:
        pass

    def close(self) -> None:
        pass


class FakeSerialModule:
    EIGHTBITS = 8
    STOPBITS_ONE = 1
    PARITY_NONE = "N"

    def __init__(self, chunks: list[bytes]):
        self.calls = 0
        self.kwargs: dict = {}
        self._chunks = chunks
        self.instances: list[FakeSerialInstance] = []
        self.SerialException = RuntimeError

    def Serial(self, *args, **kwargs):
        self.calls += 1
        self.kwargs = kwargs
        if self.calls == 1:
            raise self.SerialException("mock disconnect")
        instance = FakeSerialInstance(list(self._chunks))
        self.instances.append(instance)
        return instance


def make_config(tmp_path: Path) -> AgentConfig:
    return AgentConfig(
        api_url="http://ingest.invalid/api",
        device_id="tilt-01",
        sample_rate_ms=60000,
        serial_port="/dev/ttyFAKE",
        log_dir=tmp_path / "sensor_log",
        host=HostRuntime(
            queue_maxsize=4,
            reconnect_initial_sec=0.01,
            reconnect_max_sec=0.02,
            stats_log_interval=1,
            chunk_size=64,
        ),
    )


def test_serial_reader_reconnect(monkeypatch, tmp_path: Path) -> None:
    frame = build_frame(100, 200, 300)
    fake_serial = FakeSerialModule([frame])
    monkeypatch.setattr("tiltlink.hwt.runner.serial", fake_serial)

    settings = SerialSettings(port="/dev/ttyFAKE", timeout=0.05)
    chunk_queue: "queue.Queue[bytes]" = queue.Queue()
    reader = SerialReaderThread(settings, make_config(tmp_path), chunk_queue)
    reader.start()
    try:
        chunk = chunk_queue.get(timeout=1.0)
        assert chunk == frame
        assert fake_serial.calls >= 2  # initial failure + successful reconnect
        assert fake_serial.kwargs["baudrate"] == 115200
        assert fake_serial.kwargs["parity"] == "N"
        assert reader.wait_ready(1.0)
        reader.send_poll()
        assert fake_serial.instances[-1].written == [POLL_COMMAND]
    finally:
        reader.stop()
        reader.join(timeout=1.0)
    assert reader.stats()["reconnects"] == 0


def test_write_without_port_is_logged_not_raised(tmp_path: Path) -> None:
    reader = SerialReaderThread(SerialSettings(port="/dev/ttyFAKE"), make_config(tmp_path), queue.Queue())
    assert reader.write(POLL_COMMAND) is False
    assert reader.stats()["write_errors"] == 1


class DroppingSerialModule(FakeSerialModule):
    """First port drops out after its chunks; later ones stay open."""

    def Serial(self, *args, **kwargs):
        self.calls += 1
        self.kwargs = kwargs
        instance = FakeSerialInstance(list(self._chunks) if self.calls == 1 else [])
        if self.calls == 1:
            exc_type = self.SerialException
            read = instance.read

            def read_then_drop(size: int) -> bytes:
                data = read(size)
                if not data:
                    raise exc_type("device unplugged")
                return data

            instance.read = read_then_drop  # type: ignore[method-assign]
        self.instances.append(instance)
        return instance


def test_serial_reader_reports_reconnect(monkeypatch, tmp_path: Path) -> None:
    fake_serial = DroppingSerialModule([build_frame(1, 2, 3)])
    monkeypatch.setattr("tiltlink.hwt.runner.serial", fake_serial)
    reconnected = threading.Event()

    reader = SerialReaderThread(
        SerialSettings(port="/dev/ttyFAKE", timeout=0.05),
        make_config(tmp_path),
        queue.Queue(),
        on_reconnect=reconnected.set,
    )
    reader.start()
    try:
        assert reconnected.wait(timeout=2.0)
    finally:
        reader.stop()
        reader.join(timeout=1.0)
    assert fake_serial.calls >= 2
    assert reader.stats()["reconnects"] >= 1


def test_serial_reader_without_pyserial_exits(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setattr("tiltlink.hwt.runner.serial", None)
    reader = SerialReaderThread(SerialSettings(port="/dev/ttyFAKE"), make_config(tmp_path), queue.Queue())
    reader.start()
    reader.join(timeout=1.0)
    assert not reader.is_alive()
    assert isinstance(reader.last_exception, ImportError)


def test_build_context_rejects_incomplete_mirror(tmp_path: Path) -> None:
    cfg = replace(make_config(tmp_path), mirror=MirrorConfig(enabled=True, host=None, port=9000))
    with pytest.raises(ValueError, match="mirror.host"):
        build_context(cfg)


class RecordingSink:
    def __init__(self) -> None:
        self.sent: list[dict] = []

    def send(self, payload: dict) -> DeliveryResult:
        self.sent.append(payload)
        return DeliveryResult(ok=True)


def test_process_chunk_delivers_each_frame_in_order(tmp_path: Path) -> None:
    cfg = make_config(tmp_path)
    mono = {"ns": 0}

    def monotonic_ns() -> int:
        mono["ns"] += 5_000_000
        return mono["ns"]

    clock = PreciseClock(wall=lambda: ANCHOR, monotonic_ns=monotonic_ns)
    sink = RecordingSink()
    pipeline = DeliveryPipeline(cfg, sink, DailyLog(cfg.log_dir), probes={})
    ctx = AgentContext(config=cfg, clock=clock, decoder=FrameDecoder(cfg.device_id), pipeline=pipeline)

    data = build_frame(1000, 0, 0) + corrupt(build_frame(2000, 0, 0)) + build_frame(3000, 0, 0)
    items = process_chunk(ctx, data[:40])
    items += process_chunk(ctx, data[40:])

    assert [type(item) for item in items] == [Reading, ErrorRecord, Reading]
    assert [payload["ang_x"] for payload in sink.sent] == ["1.000", "3.000"]
    assert items[0].sensing_time < items[2].sensing_time
    assert items[0].sensing_time - ANCHOR == timedelta(milliseconds=5)
    assert pipeline.state.last_success_time == items[2].sensing_time
    logged = pipeline.daily_log.read_day(ANCHOR.date())
    assert [entry.get("error") for entry in logged] == [None, "CRC validation failed", None]
