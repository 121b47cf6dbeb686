"""Command line interface for the tiltlink package."""
from __future__ import annotations

import logging
from datetime import date
from pathlib import Path
from typing import Optional

import typer

from .hwt import runner
from .logs import format_summary, load_daily_logs, summarise
from .plotting import plot_log

app = typer.Typer(
    add_completion=False,
    context_settings={"help_option_names": ["-h", "--help"]},
    help="Tilt sensor telemetry agent and log tools.",
)


@app.callback()
def main(
    log_level: str = typer.Option("INFO", "--log-level", help="Logging level (DEBUG, INFO, WARNING...)."),
) -> None:
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


app.command("run")(runner.run)
app.command("check-config")(runner.check_config)


def _parse_day(value: str, hint: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise typer.BadParameter(f"Expected YYYY-MM-DD, got '{value}'", param_hint=hint) from exc


@app.command()
def summary(
    log_dir: Path = typer.Option(Path("sensor_log"), "--log-dir", help="Directory holding sensor_log_*.json."),
    start: str = typer.Option(..., "--from", help="First UTC day (YYYY-MM-DD)."),
    end: Optional[str] = typer.Option(None, "--to", help="Last UTC day, defaults to --from."),
    sample_rate_ms: int = typer.Option(..., "--sample-rate-ms", help="Configured sample period in ms."),
    gap_factor: float = typer.Option(1.5, "--gap-factor", help="Gap threshold as a multiple of the period."),
) -> None:
    """Summarise readings, errors and delivery gaps in the daily logs."""

    first = _parse_day(start, "--from")
    last = _parse_day(end, "--to") if end else first
    if last < first:
        raise typer.BadParameter("--to must not be before --from", param_hint="--to")
    if sample_rate_ms <= 0:
        raise typer.BadParameter("must be positive", param_hint="--sample-rate-ms")
    df, missing = load_daily_logs(log_dir, first, last)
    result = summarise(df, sample_rate_ms, gap_factor=gap_factor, missing_days=missing)
    typer.echo(format_summary(result))


@app.command()
def plot(
    log_dir: Path = typer.Option(Path("sensor_log"), "--log-dir", help="Directory holding sensor_log_*.json."),
    start: str = typer.Option(..., "--from", help="First UTC day (YYYY-MM-DD)."),
    end: Optional[str] = typer.Option(None, "--to", help="Last UTC day, defaults to --from."),
    out: Path = typer.Option(Path("tilt.png"), "--out", help="Output PNG path."),
) -> None:
    """Plot the three angle series with error markers."""

    first = _parse_day(start, "--from")
    last = _parse_day(end, "--to") if end else first
    df, _ = load_daily_logs(log_dir, first, last)
    if df.empty:
        typer.echo("No log entries in range")
        raise typer.Exit(code=1)
    try:
        path = plot_log(df, out)
    except RuntimeError as exc:
        typer.echo(f"[warning] plotting skipped: {exc}")
        raise typer.Exit(code=1) from exc
    typer.echo(f"Plot written to {path}")


def run() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    run()
