"""Daily log loading and coverage summaries."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Dict, Optional

import numpy as np
import pandas as pd

from .hwt.dailylog import DailyLog, DailyLogError
from .hwt.delivery import day_range

AXES = ("ang_x", "ang_y", "ang_z")
COLUMNS = ["sensing_time", *AXES, "error"]


@dataclass(frozen=True)
class AxisStats:
    minimum: float
    maximum: float
    mean: float


@dataclass(frozen=True)
class LogSummary:
    readings: int
    errors: int
    first: Optional[pd.Timestamp]
    last: Optional[pd.Timestamp]
    gaps: int
    longest_gap_ms: float
    axes: Dict[str, AxisStats]
    missing_days: list[date]


def load_daily_logs(directory: Path | str, start: date, end: date) -> tuple[pd.DataFrame, list[date]]:
    """Load the daily logs for *start*..*end* (inclusive) into one frame.

    Returns
    -------
    (DataFrame, list of date)
        Entries sorted by `sensing_time` (naive UTC), angle columns as
        floats (NaN for error records), and the days that had no readable
        log file.
    """

    log = DailyLog(directory)
    rows: list[dict[str, object]] = []
    missing: list[date] = []
    for day in day_range(start, end):
        try:
            entries = log.read_day(day)
        except DailyLogError:
            missing.append(day)
            continue
        for entry in entries:
            if not isinstance(entry, dict) or "sensing_time" not in entry:
                continue
            rows.append({key: entry.get(key) for key in COLUMNS})

    df = pd.DataFrame(rows, columns=COLUMNS)
    df["sensing_time"] = pd.to_datetime(df["sensing_time"], utc=True).dt.tz_localize(None)
    for axis in AXES:
        df[axis] = pd.to_numeric(df[axis], errors="coerce")
    df = df.sort_values("sensing_time", kind="mergesort").reset_index(drop=True)
    return df, missing


def summarise(
    df: pd.DataFrame,
    sample_rate_ms: int,
    *,
    gap_factor: float = 1.5,
    missing_days: Optional[list[date]] = None,
) -> LogSummary:
    readings = df.dropna(subset=list(AXES))
    errors = int(df["error"].notna().sum())
    threshold_ms = gap_factor * sample_rate_ms

    times = readings["sensing_time"].to_numpy(dtype="datetime64[ns]")
    if times.size >= 2:
        diffs_ms = np.diff(times) / np.timedelta64(1, "ms")
        gap_mask = diffs_ms > threshold_ms
        gaps = int(np.count_nonzero(gap_mask))
        longest = float(diffs_ms[gap_mask].max()) if gaps else 0.0
    else:
        gaps = 0
        longest = 0.0

    axes = {
        axis: AxisStats(
            minimum=float(readings[axis].min()),
            maximum=float(readings[axis].max()),
            mean=float(readings[axis].mean()),
        )
        for axis in AXES
        if not readings.empty
    }
    return LogSummary(
        readings=int(len(readings)),
        errors=errors,
        first=readings["sensing_time"].iloc[0] if not readings.empty else None,
        last=readings["sensing_time"].iloc[-1] if not readings.empty else None,
        gaps=gaps,
        longest_gap_ms=longest,
        axes=axes,
        missing_days=list(missing_days or []),
    )


def format_summary(summary: LogSummary) -> str:
    lines = [
        f"readings: {summary.readings}",
        f"errors: {summary.errors}",
        f"first: {summary.first.isoformat() if summary.first is not None else '-'}",
        f"last: {summary.last.isoformat() if summary.last is not None else '-'}",
        f"gaps: {summary.gaps} (longest {summary.longest_gap_ms:.0f} ms)",
    ]
    for axis, stats in summary.axes.items():
        lines.append(
            f"{axis}: min={stats.minimum:.3f} max={stats.maximum:.3f} mean={stats.mean:.3f}"
        )
    if summary.missing_days:
        lines.append("missing days: " + ", ".join(day.isoformat() for day in summary.missing_days))
    return "\n".join(lines)
