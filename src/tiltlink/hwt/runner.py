from __future__ import annotations

import logging
import queue
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO, Callable, Dict, Iterator, List, Optional

import typer

try:
    import serial  # type: ignore[import]
except ImportError:  # pragma: no cover - handled in CLI validation
    serial = None  # type: ignore[assignment]

from .clock import PollScheduler, PreciseClock
from .config import AgentConfig, ConfigError, load_config
from .dailylog import DailyLog
from .delivery import DeliveryPipeline
from .frames import POLL_COMMAND, Decoded, FrameDecoder
from .sinks import HttpSink, TcpMirror

logger = logging.getLogger(__name__)


@dataclass
class SerialSettings:
    port: str
    baudrate: int = 115200
    timeout: float = 0.2


class SerialReaderThread(threading.Thread):
    """
    Owns the serial handle: reads raw chunks into *chunk_queue* and reopens
    the port with exponential backoff after device errors.
    """

    def __init__(
        self,
        settings: SerialSettings,
        config: AgentConfig,
        chunk_queue: "queue.Queue[bytes]",
        on_reconnect: Optional[Callable[[], None]] = None,
    ) -> None:
        super().__init__(daemon=True, name="serial-reader")
        self.settings = settings
        self.config = config
        self.queue = chunk_queue
        self.on_reconnect = on_reconnect
        self._stop_event = threading.Event()
        self._ready_event = threading.Event()
        self._write_lock = threading.Lock()
        self._serial_handle = None
        self._dropped = 0
        self._reconnects = 0
        self._write_errors = 0
        self._connected_once = False
        self.last_exception: Optional[Exception] = None
        self._log = logging.getLogger(__name__)

    def run(self) -> None:
        if serial is None:
            self.last_exception = ImportError("pyserial is required but not installed.")
            self._log.error("Serial reader not started: %s", self.last_exception)
            return
        initial_delay = max(self.config.host.reconnect_initial_sec, 0.01)
        max_delay = max(self.config.host.reconnect_max_sec, initial_delay)
        backoff = initial_delay
        while not self._stop_event.is_set():
            self._serial_handle = None
            try:
                self._serial_handle = self._open_serial()
                if self._connected_once:
                    self._reconnects += 1
                    self._log.info("Reconnected to %s", self.settings.port)
                    if self.on_reconnect is not None:
                        self.on_reconnect()
                else:
                    self._log.info("Connected to %s", self.settings.port)
                    self._connected_once = True
                self.last_exception = None
                backoff = initial_delay
                self._ready_event.set()
                for chunk in self._iter_chunks(max(self.config.host.chunk_size, 17)):
                    self._emit(chunk)
            except serial.SerialException as exc:  # type: ignore[union-attr]
                self.last_exception = exc
                self._log.warning("Serial Port Error (%s): %s", self.settings.port, exc)
            except Exception as exc:  # pragma: no cover - unexpected driver failure
                self.last_exception = exc
                self._log.exception("Unexpected error in serial reader")
            finally:
                self._ready_event.clear()
                self._close_handle()
            if self._stop_event.is_set():
                break
            wait_time = min(backoff, max_delay)
            self._log.info("Reconnecting in %.1fs", wait_time)
            self._stop_event.wait(wait_time)
            backoff = min(backoff * 2, max_delay)

    def _iter_chunks(self, chunk_size: int) -> Iterator[bytes]:
        while not self._stop_event.is_set():
            handle = self._serial_handle
            if handle is None:
                break
            waiting = getattr(handle, "in_waiting", 0) or 0
            data = handle.read(waiting or chunk_size)
            if data:
                yield bytes(data)

    def _emit(self, chunk: bytes) -> None:
        try:
            self.queue.put(chunk, timeout=1.0)
        except queue.Full:
            self._dropped += 1
            self._log.warning("Chunk queue full (%d), dropping %d bytes", self.queue.qsize(), len(chunk))

    def write(self, data: bytes) -> bool:
        with self._write_lock:
            handle = self._serial_handle
            if handle is None:
                self._write_errors += 1
                self._log.warning("Error writing to port: not connected")
                return False
            try:
                handle.write(data)
                handle.flush()
            except Exception as exc:
                self._write_errors += 1
                self._log.warning("Error writing to port: %s", exc)
                return False
        return True

    def send_poll(self) -> None:
        self.write(POLL_COMMAND)

    def wait_ready(self, timeout: float = 2.0) -> bool:
        return self._ready_event.wait(timeout)

    def stop(self) -> None:
        self._stop_event.set()
        self._close_handle()

    def stats(self) -> Dict[str, int]:
        return {
            "dropped": self._dropped,
            "reconnects": self._reconnects,
            "write_errors": self._write_errors,
        }

    def _close_handle(self) -> None:
        handle = self._serial_handle
        if handle is None:
            return
        self._serial_handle = None
        try:
            handle.close()
        except Exception as exc:
            self._log.debug("Error closing serial port: %s", exc)

    def _open_serial(self):
        if serial is None:
            raise ImportError("pyserial is required but not installed.")
        return serial.Serial(
            port=self.settings.port,
            baudrate=self.settings.baudrate,
            bytesize=serial.EIGHTBITS,
            stopbits=serial.STOPBITS_ONE,
            parity=serial.PARITY_NONE,
            timeout=self.settings.timeout,
        )


@dataclass
class AgentContext:
    """Everything the host loop mutates: byte buffer, clock anchors, delivery state."""

    config: AgentConfig
    clock: PreciseClock
    decoder: FrameDecoder
    pipeline: DeliveryPipeline


def build_context(config: AgentConfig, clock: Optional[PreciseClock] = None) -> AgentContext:
    mirror = None
    if config.mirror.enabled:
        if config.mirror.host is None or config.mirror.port is None:
            raise ValueError("mirror.host and mirror.port are required when the mirror is enabled")
        mirror = TcpMirror(
            config.mirror.host,
            config.mirror.port,
            config.device_id,
            timeout=config.mirror.timeout_sec,
        )
    pipeline = DeliveryPipeline(
        config,
        primary=HttpSink(config.api_url, timeout=config.http_timeout_sec),
        daily_log=DailyLog(config.log_dir),
        mirror=mirror,
    )
    return AgentContext(
        config=config,
        clock=clock or PreciseClock(),
        decoder=FrameDecoder(config.device_id),
        pipeline=pipeline,
    )


def process_chunk(ctx: AgentContext, chunk: bytes) -> List[Decoded]:
    """Decode *chunk* and deliver every item, in order, before returning."""
    items: List[Decoded] = []
    for item in ctx.decoder.feed(chunk, ctx.clock.now):
        ctx.pipeline.handle(item)
        items.append(item)
    return items


def iterate_binary_stream(handle: BinaryIO, chunk_size: int = 64) -> Iterator[bytes]:
    while True:
        chunk = handle.read(chunk_size)
        if not chunk:
            break
        yield chunk


class TiltHost:
    """Host-side orchestrator: serial reader, poll timer and delivery loop."""

    def __init__(self, settings: SerialSettings, ctx: AgentContext):
        self.settings = settings
        self.ctx = ctx
        self.processed = 0

    def run(self) -> None:
        if self.settings.port == "-":
            self._run_from_stream(sys.stdin.buffer)
            return

        host_cfg = self.ctx.config.host
        chunk_queue: "queue.Queue[bytes]" = queue.Queue(maxsize=host_cfg.queue_maxsize)
        reader = SerialReaderThread(self.settings, self.ctx.config, chunk_queue)
        scheduler = PollScheduler(self.ctx.config.sample_rate_ms, reader.send_poll, self.ctx.clock)
        # Port came back: re-anchor timestamps and realign polls to the period grid.
        reader.on_reconnect = scheduler.resync
        reader.start()
        scheduler.start()
        interval_sec = max(float(host_cfg.stats_log_interval), 5.0)
        next_log = time.monotonic() + interval_sec
        try:
            while True:
                try:
                    chunk = chunk_queue.get(timeout=1.0)
                except queue.Empty:
                    chunk = None
                if chunk is not None:
                    self.processed += len(process_chunk(self.ctx, chunk))
                if time.monotonic() >= next_log:
                    self._emit_stats(reader.stats())
                    next_log = time.monotonic() + interval_sec
        except KeyboardInterrupt:
            logger.info("Stopping host (Ctrl+C)")
        finally:
            scheduler.stop()
            reader.stop()
            scheduler.join(timeout=2)
            reader.join(timeout=5)
            self._emit_stats(reader.stats(), prefix="Final stats")

    def _run_from_stream(self, handle: BinaryIO) -> None:
        for chunk in iterate_binary_stream(handle, self.ctx.config.host.chunk_size):
            self.processed += len(process_chunk(self.ctx, chunk))
        self._emit_stats({}, prefix="Processed stdin")

    def _emit_stats(self, reader_stats: Dict[str, int], prefix: str = "Stats") -> None:
        decoder = self.ctx.decoder.stats()
        delivery = self.ctx.pipeline.stats()
        logger.info(
            "%s: items=%d frames=%d crc_errors=%d resyncs=%d delivered=%d failed=%d "
            "backfilled=%d dropped=%d reconnects=%d",
            prefix,
            self.processed,
            decoder["frames"],
            decoder["crc_errors"],
            decoder["resyncs"],
            delivery["delivered"],
            delivery["failed"],
            delivery["backfilled"],
            reader_stats.get("dropped", 0),
            reader_stats.get("reconnects", 0),
        )


def run(
    config_path: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to agent config JSON."
    ),
    port: Optional[str] = typer.Option(
        None, "--port", "-p", help="Serial device (overrides serial_port). Use '-' to read from stdin."
    ),
    baudrate: int = typer.Option(115200, "--baud", help="Serial baudrate."),
    timeout: float = typer.Option(0.2, "--timeout", help="Serial read timeout (seconds)."),
    override: Optional[List[str]] = typer.Option(
        None,
        "--set",
        help="Override config keys, e.g. --set sample_rate_ms=60000 --set mirror.enabled=true",
    ),
) -> None:
    """Poll the sensor, deliver readings and backfill delivery gaps."""

    overrides: List[str] = list(override or [])
    if port is not None:
        overrides.append(f"serial_port={port}")
    try:
        cfg = load_config(config_path, overrides or None)
    except ConfigError as exc:
        for problem in exc.problems:
            typer.echo(f"Error: {problem}", err=True)
        raise typer.Exit(code=1) from exc
    except (OSError, ValueError) as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    if cfg.serial_port != "-" and serial is None:
        raise typer.BadParameter("pyserial is required to open a serial port", param_hint="--port")
    logger.info(
        "Starting agent device=%s port=%s period=%d ms gap>%.0f ms mirror=%s",
        cfg.device_id,
        cfg.serial_port,
        cfg.sample_rate_ms,
        cfg.gap_threshold_ms,
        "on" if cfg.mirror.enabled else "off",
    )
    settings = SerialSettings(port=cfg.serial_port, baudrate=baudrate, timeout=timeout)
    host = TiltHost(settings, build_context(cfg))
    host.run()


def describe_config(cfg: AgentConfig) -> Dict[str, Any]:
    return {
        "device_id": cfg.device_id,
        "api_url": cfg.api_url,
        "serial_port": cfg.serial_port,
        "sample_rate_ms": cfg.sample_rate_ms,
        "gap_threshold_ms": cfg.gap_threshold_ms,
        "log_dir": str(cfg.log_dir),
        "mirror": f"{cfg.mirror.host}:{cfg.mirror.port}" if cfg.mirror.enabled else "off",
    }


def check_config(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to agent config JSON."),
    override: Optional[List[str]] = typer.Option(None, "--set", help="Override config keys."),
) -> None:
    """Validate the configuration and print the effective settings."""

    try:
        cfg = load_config(config_path, override or None)
    except ConfigError as exc:
        for problem in exc.problems:
            typer.echo(f"Error: {problem}", err=True)
        raise typer.Exit(code=1) from exc
    for key, value in describe_config(cfg).items():
        typer.echo(f"{key}: {value}")
