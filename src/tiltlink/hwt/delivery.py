from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Protocol

from .config import AgentConfig
from .dailylog import DailyLog, DailyLogError
from .frames import Decoded, ErrorRecord, Reading
from .probes import DEFAULT_PROBES, Probe, collect_metrics
from .sinks import DeliveryResult

logger = logging.getLogger(__name__)

ANGLE_FIELDS = ("ang_x", "ang_y", "ang_z")
_MS = timedelta(milliseconds=1)


class Sink(Protocol):
    def send(self, payload: Dict[str, Any]) -> DeliveryResult: ...


def format_timestamp(value: datetime) -> str:
    """ISO-8601 UTC with millisecond precision, e.g. 2024-05-01T08:00:00.000Z."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_timestamp(text: str) -> datetime:
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    value = datetime.fromisoformat(text)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_day(value: datetime) -> date:
    if value.tzinfo is None:
        return value.date()
    return value.astimezone(timezone.utc).date()


def day_range(start: date, end: date) -> List[date]:
    """Calendar days from *start* to *end*, both inclusive."""
    days: List[date] = []
    current = start
    while current <= end:
        days.append(current)
        current += timedelta(days=1)
    return days


def reading_payload(reading: Reading) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "sensing_time": format_timestamp(reading.sensing_time),
        "ang_x": f"{reading.ang_x:.3f}",
        "ang_y": f"{reading.ang_y:.3f}",
        "ang_z": f"{reading.ang_z:.3f}",
        "device_id": reading.device_id,
    }
    for key in DEFAULT_PROBES:
        payload[key] = reading.metrics.get(key)
    for key, value in reading.metrics.items():
        payload.setdefault(key, value)
    return payload


def error_payload(record: ErrorRecord) -> Dict[str, Any]:
    return {"sensing_time": format_timestamp(record.sensing_time), "error": record.reason}


@dataclass
class DeliveryState:
    last_success_time: Optional[datetime] = None


@dataclass
class BackfillReport:
    candidates: int = 0
    delivered: int = 0
    failed_at: Optional[datetime] = None
    skipped_days: List[date] = field(default_factory=list)


class DeliveryPipeline:
    """
    Per-reading delivery: enrich, send to the primary sink, detect gaps since
    the last confirmed delivery and backfill them from the daily log, then
    mirror to the optional secondary sink and persist.
    """

    def __init__(
        self,
        config: AgentConfig,
        primary: Sink,
        daily_log: DailyLog,
        mirror: Optional[Sink] = None,
        probes: Mapping[str, Probe] = DEFAULT_PROBES,
    ):
        self.config = config
        self.primary = primary
        self.daily_log = daily_log
        self.mirror = mirror
        self.probes = probes
        self.state = DeliveryState()
        self.last_backfill: Optional[BackfillReport] = None
        self._stats: Dict[str, int] = {
            "delivered": 0,
            "failed": 0,
            "backfill_episodes": 0,
            "backfilled": 0,
            "mirror_failures": 0,
            "errors_logged": 0,
        }

    def handle(self, item: Decoded) -> None:
        if isinstance(item, Reading):
            self.deliver(item)
        else:
            self.record_error(item)

    def record_error(self, record: ErrorRecord) -> None:
        payload = error_payload(record)
        self._stats["errors_logged"] += 1
        if self.config.forward_errors:
            result = self.primary.send(payload)
            if not result.ok:
                logger.warning("Failed to forward error record: %s", result.error)
        self._persist(record.sensing_time, payload)

    def deliver(self, reading: Reading) -> DeliveryResult:
        reading.metrics = collect_metrics(self.probes)
        payload = reading_payload(reading)
        logger.debug("Sending %s", payload)
        result = self.primary.send(payload)
        if result.ok:
            self._stats["delivered"] += 1
            logger.info("Sent reading %s", payload["sensing_time"])
            if self.gap_detected(reading.sensing_time):
                self.backfill(reading)
            self.state.last_success_time = reading.sensing_time
        else:
            self._stats["failed"] += 1
            logger.warning("Error during data transmission: %s", result.error)
        # The mirror is independent of the primary outcome.
        self._mirror(payload)
        self._persist(reading.sensing_time, payload)
        return result

    def gap_threshold_ms(self) -> float:
        return self.config.gap_threshold_ms

    def gap_detected(self, sensing_time: datetime) -> bool:
        last = self.state.last_success_time
        if last is None:
            return False
        diff_ms = (sensing_time - last) / _MS
        if diff_ms > self.gap_threshold_ms():
            logger.info(
                "Detected gap of %.0f ms exceeding threshold (%.0f ms), initiating retransmission",
                diff_ms,
                self.gap_threshold_ms(),
            )
            return True
        return False

    def backfill(self, reading: Reading) -> BackfillReport:
        """
        Resend logged readings in ``(last_success_time, reading.sensing_time]``,
        newest first. Stops at the first failed send.
        """
        report = BackfillReport()
        self.last_backfill = report
        last = self.state.last_success_time
        if last is None:
            return report
        self._stats["backfill_episodes"] += 1
        candidates = self.collect_candidates(last, reading.sensing_time, report)
        candidates.reverse()
        report.candidates = len(candidates)
        logger.info("Found %d unsent entries to resend", len(candidates))
        for entry_time, entry in candidates:
            result = self.primary.send(entry)
            if not result.ok:
                report.failed_at = entry_time
                logger.warning(
                    "Failed to resend entry from %s: %s", entry["sensing_time"], result.error
                )
                break
            self.state.last_success_time = entry_time
            report.delivered += 1
            self._stats["backfilled"] += 1
            logger.debug("Resent entry from %s", entry["sensing_time"])
        return report

    def collect_candidates(
        self, after: datetime, until: datetime, report: Optional[BackfillReport] = None
    ) -> List[tuple[datetime, Dict[str, Any]]]:
        """Logged readings with ``after < sensing_time <= until`` in file order."""
        found: List[tuple[datetime, Dict[str, Any]]] = []
        for day in day_range(utc_day(after), utc_day(until)):
            try:
                entries = self.daily_log.read_day(day)
            except DailyLogError as exc:
                logger.warning("Error reading log file for date %s: %s", day.isoformat(), exc)
                if report is not None:
                    report.skipped_days.append(day)
                continue
            for entry in entries:
                if not isinstance(entry, dict) or not all(key in entry for key in ANGLE_FIELDS):
                    continue
                try:
                    entry_time = parse_timestamp(str(entry["sensing_time"]))
                except (KeyError, ValueError):
                    logger.debug("Skipping log entry without a usable sensing_time: %s", entry)
                    continue
                if after < entry_time <= until:
                    found.append((entry_time, entry))
        return found

    def _mirror(self, payload: Dict[str, Any]) -> None:
        if self.mirror is None:
            return
        result = self.mirror.send(payload)
        if not result.ok:
            self._stats["mirror_failures"] += 1
            logger.warning("TCP client error: %s", result.error)

    def _persist(self, sensing_time: datetime, payload: Dict[str, Any]) -> None:
        try:
            self.daily_log.append(utc_day(sensing_time), payload)
        except OSError as exc:
            logger.error("Failed to append to daily log: %s", exc)

    def stats(self) -> Dict[str, int]:
        return dict(self._stats)
