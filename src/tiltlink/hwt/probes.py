"""Host health probes attached to every reading."""
from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional

import psutil

logger = logging.getLogger(__name__)

Probe = Callable[[], float]

THERMAL_ZONE = Path("/sys/class/thermal/thermal_zone0/temp")
PROC_WIRELESS = Path("/proc/net/wireless")


def _vcgencmd(*args: str) -> str:
    result = subprocess.run(
        ["vcgencmd", *args], capture_output=True, text=True, timeout=2.0, check=True
    )
    # e.g. "temp=48.3'C" or "volt=0.8563V"
    return result.stdout.strip().split("=", 1)[1]


def cpu_temperature() -> float:
    try:
        return float(_vcgencmd("measure_temp").rstrip("'C"))
    except (OSError, subprocess.SubprocessError, IndexError, ValueError):
        return int(THERMAL_ZONE.read_text(encoding="ascii").strip()) / 1000.0


def cpu_voltage() -> float:
    return float(_vcgencmd("measure_volts", "core").rstrip("V"))


def rssi() -> float:
    lines = PROC_WIRELESS.read_text(encoding="ascii").splitlines()
    # Two header lines, then "wlan0: 0000   60.  -50.  -256 ..."
    for line in lines[2:]:
        if ":" not in line:
            continue
        fields = line.split(":", 1)[1].split()
        return float(fields[2].rstrip("."))
    raise LookupError("no wireless interface listed")


def memory_usage_percent() -> float:
    return float(psutil.virtual_memory().percent)


def disk_usage_percent(path: str = "/") -> float:
    return float(psutil.disk_usage(path).percent)


DEFAULT_PROBES: Dict[str, Probe] = {
    "cpu_temperture": cpu_temperature,
    "cpu_voltage": cpu_voltage,
    "rssi": rssi,
    "memUsage": memory_usage_percent,
    "diskUsage": disk_usage_percent,
}


def collect_metrics(probes: Mapping[str, Probe]) -> Dict[str, Optional[float]]:
    values: Dict[str, Optional[float]] = {}
    for name, probe in probes.items():
        try:
            values[name] = probe()
        except Exception as exc:
            logger.debug("Probe %s failed: %s", name, exc)
            values[name] = None
    return values
