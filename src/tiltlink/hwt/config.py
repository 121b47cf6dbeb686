from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

DEFAULT_DEVICE_ID = "tiltmeter_default"
# Overrides for these keys are taken verbatim, e.g. device_id=1e3.
STRING_KEYS = frozenset({"api_url", "device_id", "serial_port", "log_dir", "mirror.host"})


class ConfigError(ValueError):
    """Raised when required settings are missing or invalid."""

    def __init__(self, problems: Sequence[str]):
        self.problems = list(problems)
        super().__init__("; ".join(self.problems))


@dataclass
class MirrorConfig:
    enabled: bool = False
    host: Optional[str] = None
    port: Optional[int] = None
    timeout_sec: float = 5.0


@dataclass
class HostRuntime:
    queue_maxsize: int = 512
    reconnect_initial_sec: float = 0.5
    reconnect_max_sec: float = 5.0
    stats_log_interval: float = 300.0
    chunk_size: int = 64


@dataclass
class AgentConfig:
    api_url: str
    device_id: str
    sample_rate_ms: int
    serial_port: str
    gap_factor: float = 1.5
    log_dir: Path = Path("sensor_log")
    forward_errors: bool = False
    http_timeout_sec: float = 10.0
    mirror: MirrorConfig = field(default_factory=MirrorConfig)
    host: HostRuntime = field(default_factory=HostRuntime)

    @property
    def gap_threshold_ms(self) -> float:
        return self.gap_factor * self.sample_rate_ms


def _load_json(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as fh:
        return json.load(fh)


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = {**base}
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            merged[key] = _merge(base[key], value)  # type: ignore[index]
        else:
            merged[key] = value
    return merged


def load_config(path: Path | str | None, overrides: Sequence[str] | None = None) -> AgentConfig:
    """
    Load the agent configuration from JSON and apply CLI-style overrides.

    Overrides are dotted `key=value` pairs, e.g.:
        ["sample_rate_ms=60000", "mirror.enabled=true"]
    Passing ``path=None`` builds the configuration from overrides alone.
    """
    data = _load_json(Path(path)) if path is not None else {}
    override_data: Dict[str, Any] = {}
    for override in overrides or []:
        key, raw_value = _parse_override(override)
        _assign_nested(override_data, key, raw_value)
    return config_from_mapping(_merge(data, override_data))


def config_from_mapping(merged: Dict[str, Any]) -> AgentConfig:
    problems = _validate(merged)
    if problems:
        raise ConfigError(problems)
    mirror_data = merged.get("mirror") or {}
    host_data = merged.get("host") or {}
    return AgentConfig(
        api_url=str(merged["api_url"]),
        device_id=str(merged["device_id"]),
        sample_rate_ms=int(merged["sample_rate_ms"]),
        serial_port=str(merged["serial_port"]),
        gap_factor=float(merged.get("gap_factor", 1.5)),
        log_dir=Path(merged.get("log_dir") or "sensor_log"),
        forward_errors=bool(merged.get("forward_errors", False)),
        http_timeout_sec=float(merged.get("http_timeout_sec", 10.0)),
        mirror=MirrorConfig(
            enabled=bool(mirror_data.get("enabled", False)),
            host=mirror_data.get("host"),
            port=int(mirror_data["port"]) if mirror_data.get("port") is not None else None,
            timeout_sec=float(mirror_data.get("timeout_sec", 5.0)),
        ),
        host=HostRuntime(
            queue_maxsize=int(host_data.get("queue_maxsize", 512)),
            reconnect_initial_sec=float(host_data.get("reconnect_initial_sec", 0.5)),
            reconnect_max_sec=float(host_data.get("reconnect_max_sec", 5.0)),
            stats_log_interval=float(host_data.get("stats_log_interval", 300.0)),
            chunk_size=int(host_data.get("chunk_size", 64)),
        ),
    )


def _validate(data: Dict[str, Any]) -> List[str]:
    problems: List[str] = []
    for key in ("api_url", "device_id", "sample_rate_ms", "serial_port"):
        if data.get(key) in (None, ""):
            problems.append(f"{key} is not defined")
    if data.get("device_id") == DEFAULT_DEVICE_ID:
        problems.append(f"device_id must be changed from '{DEFAULT_DEVICE_ID}'")
    rate = data.get("sample_rate_ms")
    if rate not in (None, ""):
        try:
            if int(rate) <= 0:
                problems.append("sample_rate_ms must be positive")
        except (TypeError, ValueError):
            problems.append(f"sample_rate_ms must be an integer, got {rate!r}")
    gap_factor = data.get("gap_factor", 1.5)
    try:
        if float(gap_factor) <= 0:
            problems.append("gap_factor must be positive")
    except (TypeError, ValueError):
        problems.append(f"gap_factor must be a number, got {gap_factor!r}")
    mirror = data.get("mirror") or {}
    if not isinstance(mirror, dict):
        problems.append("mirror must be an object")
    elif mirror.get("enabled"):
        for key in ("host", "port"):
            if mirror.get(key) in (None, ""):
                problems.append(f"mirror.{key} is required when mirror.enabled is true")
    return problems


def _parse_override(item: str) -> tuple[str, Any]:
    if "=" not in item:
        raise ValueError(f"Override '{item}' must use key=value syntax")
    key, raw_value = item.split("=", 1)
    key = key.strip()
    if not key:
        raise ValueError("Override key may not be empty")
    raw_value = raw_value.strip()
    value = raw_value if key in STRING_KEYS else _coerce_value(raw_value)
    return key, value


def _coerce_value(raw: str) -> Any:
    if raw.lower() in {"true", "false"}:
        return raw.lower() == "true"
    try:
        if "." in raw or "e" in raw.lower():
            return float(raw)
        return int(raw)
    except ValueError:
        pass
    if raw.startswith("[") and raw.endswith("]"):
        return json.loads(raw)
    if raw.startswith("{") and raw.endswith("}"):
        return json.loads(raw)
    return raw


def _assign_nested(target: Dict[str, Any], dotted_key: str, value: Any) -> None:
    cursor = target
    parts = dotted_key.split(".")
    for part in parts[:-1]:
        cursor = cursor.setdefault(part, {})
    cursor[parts[-1]] = value
