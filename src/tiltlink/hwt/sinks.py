from __future__ import annotations

import logging
import socket
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import requests

logger = logging.getLogger(__name__)

MIRROR_FIELDS = ("sensing_time", "ang_x", "ang_y", "ang_z", "cpu_temperture", "cpu_voltage", "rssi")


@dataclass(frozen=True)
class DeliveryResult:
    ok: bool
    error: Optional[str] = None


class HttpSink:
    """POST each payload as JSON to the ingestion API."""

    def __init__(self, url: str, timeout: float = 10.0, session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout
        self._session = session or requests.Session()

    def send(self, payload: Mapping[str, Any]) -> DeliveryResult:
        try:
            response = self._session.post(self.url, json=dict(payload), timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            return DeliveryResult(ok=False, error=str(exc))
        return DeliveryResult(ok=True)

    def close(self) -> None:
        self._session.close()


def _mirror_value(value: Any) -> str:
    return "null" if value is None else str(value)


def format_mirror_record(device_id: str, payload: Mapping[str, Any]) -> str:
    fields = [device_id] + [_mirror_value(payload.get(key)) for key in MIRROR_FIELDS]
    return "$$$" + ",".join(fields) + "###"


class TcpMirror:
    """Backup channel: one short-lived TCP connection per reading."""

    def __init__(self, host: str, port: int, device_id: str, timeout: float = 5.0):
        self.host = host
        self.port = port
        self.device_id = device_id
        self.timeout = timeout

    def send(self, payload: Dict[str, Any]) -> DeliveryResult:
        record = format_mirror_record(self.device_id, payload).encode("ascii", errors="replace")
        try:
            with socket.create_connection((self.host, self.port), timeout=self.timeout) as sock:
                sock.sendall(record)
        except OSError as exc:
            return DeliveryResult(ok=False, error=str(exc))
        logger.debug("Mirrored %d bytes to %s:%d", len(record), self.host, self.port)
        return DeliveryResult(ok=True)
