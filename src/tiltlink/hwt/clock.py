from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Callable

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _truncate_ms(value: datetime) -> datetime:
    return value.replace(microsecond=value.microsecond // 1000 * 1000)


class PreciseClock:
    """
    Absolute timestamps derived from a wall-clock anchor plus monotonic
    elapsed time, so wall-clock steps between samples do not leak into
    sensing times. Resolution is one millisecond.
    """

    def __init__(
        self,
        wall: Callable[[], datetime] = _utc_now,
        monotonic_ns: Callable[[], int] = time.monotonic_ns,
    ):
        self._wall = wall
        self._monotonic_ns = monotonic_ns
        self._anchors = (_truncate_ms(wall()), monotonic_ns())

    def sync(self) -> None:
        self._anchors = (_truncate_ms(self._wall()), self._monotonic_ns())
        logger.info("Time synchronized using system clock (%s)", self._anchors[0].isoformat())

    @property
    def anchor(self) -> datetime:
        return self._anchors[0]

    def now(self) -> datetime:
        wall_anchor, mono_anchor = self._anchors
        elapsed_ms = (self._monotonic_ns() - mono_anchor) // 1_000_000
        return wall_anchor + timedelta(milliseconds=elapsed_ms)


def delay_to_next_boundary_ms(now: datetime, period_ms: int) -> int:
    """Milliseconds until the next multiple of *period_ms* within the minute."""
    if period_ms <= 0:
        raise ValueError("period_ms must be positive")
    into_minute = now.second * 1000 + now.microsecond // 1000
    return period_ms - (into_minute % period_ms)


class PollScheduler(threading.Thread):
    """
    Fire *fire* on the first period boundary, then every *period_ms*
    unconditionally. Drift is not corrected after the initial alignment.
    """

    def __init__(
        self,
        period_ms: int,
        fire: Callable[[], None],
        clock: PreciseClock,
        wall: Callable[[], datetime] = _utc_now,
    ) -> None:
        super().__init__(daemon=True, name="poll-scheduler")
        if period_ms <= 0:
            raise ValueError("period_ms must be positive")
        self.period_ms = period_ms
        self.fire = fire
        self.clock = clock
        self._wall = wall
        self._stop_event = threading.Event()
        self._resync_event = threading.Event()
        self.fired = 0

    def run(self) -> None:
        while not self._stop_event.is_set():
            self._resync_event.clear()
            delay_ms = delay_to_next_boundary_ms(self._wall(), self.period_ms)
            logger.debug("First poll in %d ms", delay_ms)
            if self._wait(delay_ms / 1000.0):
                continue
            self._fire()
            while not self._wait(self.period_ms / 1000.0):
                self._fire()

    def _wait(self, seconds: float) -> bool:
        """Sleep; True when interrupted by stop or resync."""
        deadline = time.monotonic() + seconds
        while True:
            if self._stop_event.is_set() or self._resync_event.is_set():
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            self._resync_event.wait(min(remaining, 0.5))

    def _fire(self) -> None:
        self.fired += 1
        try:
            self.fire()
        except Exception:
            logger.exception("Poll command failed")

    def start(self) -> None:
        self.clock.sync()
        super().start()

    def resync(self) -> None:
        """Re-anchor the clock on the calling thread and realign the timer."""
        self.clock.sync()
        self._resync_event.set()

    def stop(self) -> None:
        self._stop_event.set()
        self._resync_event.set()
