"""Plotting helpers for daily tilt logs."""
from __future__ import annotations

from pathlib import Path
from typing import Any

import pandas as pd

from .logs import AXES


def plot_log(df: pd.DataFrame, out_path: Path) -> Path:
    plt = _require_matplotlib()
    out_path.parent.mkdir(parents=True, exist_ok=True)
    fig, axes = plt.subplots(len(AXES), 1, figsize=(12, 8), sharex=True)

    readings = df.dropna(subset=list(AXES))
    errors = df[df["error"].notna()]
    for ax, axis in zip(axes, AXES):
        ax.plot(readings["sensing_time"], readings[axis], marker=".", linestyle="-", linewidth=0.8)
        for ts in errors["sensing_time"]:
            ax.axvline(ts, color="red", alpha=0.3, linewidth=0.8)
        ax.set_ylabel(f"{axis} [deg]")
        ax.grid(True, alpha=0.3)

    axes[0].set_title(f"Tilt readings ({len(readings)} samples, {len(errors)} errors)")
    axes[-1].set_xlabel("Sensing time (UTC)")
    fig.autofmt_xdate()
    fig.tight_layout()
    fig.savefig(out_path, dpi=150)
    plt.close(fig)
    return out_path


def _require_matplotlib() -> Any:
    try:
        import matplotlib
        matplotlib.use("Agg", force=True)
        import matplotlib.pyplot as plt  # type: ignore
    except ImportError as exc:  # pragma: no cover - optional dependency
        raise RuntimeError("matplotlib is required for plotting; install tiltlink[plot]") from exc
    except Exception as exc:  # pragma: no cover - environment issues
        raise RuntimeError(f"matplotlib initialisation failed: {exc}") from exc
    return plt
