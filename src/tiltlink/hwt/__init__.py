"""
HWT9053 tilt sensor acquisition and delivery.

The subpackage holds the frame decoder, the drift-stable clock and poll
scheduler, the delivery pipeline with its daily-log backfill, and the
serial host that wires them together.
"""

from .clock import PollScheduler, PreciseClock, delay_to_next_boundary_ms
from .config import AgentConfig, ConfigError, HostRuntime, MirrorConfig, load_config
from .dailylog import DailyLog, DailyLogError
from .delivery import BackfillReport, DeliveryPipeline, DeliveryState
from .frames import ErrorRecord, FrameDecoder, Reading, crc16_modbus, decode_axis
from .runner import AgentContext, TiltHost, process_chunk
from .sinks import DeliveryResult, HttpSink, TcpMirror

__all__ = [
    "AgentConfig",
    "ConfigError",
    "HostRuntime",
    "MirrorConfig",
    "load_config",
    "PollScheduler",
    "PreciseClock",
    "delay_to_next_boundary_ms",
    "DailyLog",
    "DailyLogError",
    "BackfillReport",
    "DeliveryPipeline",
    "DeliveryState",
    "ErrorRecord",
    "FrameDecoder",
    "Reading",
    "crc16_modbus",
    "decode_axis",
    "AgentContext",
    "TiltHost",
    "process_chunk",
    "DeliveryResult",
    "HttpSink",
    "TcpMirror",
]
