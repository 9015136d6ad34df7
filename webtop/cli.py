"""webtop CLI entry point.

Provides command-line interface for running the pipeline, feeding it events,
inspecting the leaderboard and jobs, and managing runtime settings.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from datetime import timedelta
from pathlib import Path
from typing import Any, TypeVar

import typer
from pydantic import ValidationError
from typing_extensions import Annotated

from webtop.config import WebtopConfig, get_config
from webtop.errors import WebtopError
from webtop.ingestion import parse_event_line
from webtop.pipeline import WebtopPipeline

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

T = TypeVar("T")

# Create CLI app
app = typer.Typer(
    name="webtop",
    help="webtop - Top websites tracking from streaming domain-access events",
    add_completion=False,
)
settings_app = typer.Typer(help="Show or change the runtime pipeline settings")
app.add_typer(settings_app, name="settings")

ConfigOption = Annotated[
    str, typer.Option("--config", "-c", help="Path to configuration file")
]
DatabaseOption = Annotated[
    str, typer.Option("--database", "-d", help="DuckDB database path (overrides config)")
]
VerboseOption = Annotated[
    bool, typer.Option("--verbose", "-v", help="Enable verbose output")
]

INGEST_BATCH_SIZE = 10_000


def _setup(config: str, database: str, verbose: bool) -> WebtopConfig:
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
    else:
        logging.getLogger().setLevel(logging.WARNING)

    if config and not Path(config).expanduser().exists():
        typer.echo(f"❌ Configuration file not found: {config}", err=True)
        raise typer.Exit(code=1)

    try:
        cfg = get_config(config or None)
    except (ValueError, ValidationError) as e:
        typer.echo(f"❌ Invalid configuration: {e}", err=True)
        raise typer.Exit(code=1) from e

    if database:
        cfg.storage.path = database
    return cfg


def _run(cfg: WebtopConfig, func: Callable[[WebtopPipeline], Awaitable[T]]) -> T:
    """Run ``func`` against an initialized pipeline, closing it afterwards."""

    async def runner() -> T:
        pipeline = WebtopPipeline(cfg)
        await pipeline.initialize()
        try:
            return await func(pipeline)
        finally:
            await pipeline.close()

    try:
        return asyncio.run(runner())
    except WebtopError as e:
        typer.echo(f"❌ [{e.kind}] {e.message}", err=True)
        raise typer.Exit(code=1) from e


def _echo_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


def _parse_value(value: str) -> Any:
    # JSON numbers and objects as such, anything else as a plain string
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


# ----------------------------------------------------------------------
# Running
# ----------------------------------------------------------------------


@app.command()
def run(
    config: ConfigOption = "",
    database: DatabaseOption = "",
    metrics: Annotated[
        bool, typer.Option("--metrics/--no-metrics", help="Expose Prometheus metrics")
    ] = False,
    verbose: VerboseOption = False,
) -> None:
    """Run every pipeline job on its schedule until interrupted.

    Examples:
        # Run with the default database
        webtop run

        # Run against a specific database with metrics on :9464
        webtop run --database /var/lib/webtop.duckdb --metrics
    """
    cfg = _setup(config, database, verbose)
    if not verbose:
        logging.getLogger().setLevel(logging.INFO)
    if metrics:
        cfg.metrics_enabled = True

    from webtop.main import WebtopApplication

    application = WebtopApplication(cfg)
    try:
        asyncio.run(application.run())
    except WebtopError as e:
        typer.echo(f"❌ [{e.kind}] {e.message}", err=True)
        raise typer.Exit(code=1) from e


@app.command()
def cycle(
    config: ConfigOption = "",
    database: DatabaseOption = "",
    purge: Annotated[bool, typer.Option("--purge", help="Apply retention afterwards")] = False,
    verbose: VerboseOption = False,
) -> None:
    """Refresh all rollup levels, select candidates and run one election."""
    cfg = _setup(config, database, verbose)
    summary = _run(cfg, lambda p: p.run_cycle(purge=purge))

    election = summary["election"]
    typer.echo("Refreshed windows: " + ", ".join(f"{k}={v}" for k, v in summary["refreshed"].items()))
    typer.echo(f"Candidates written: {summary['candidates']}")
    typer.echo(
        f"Election: {election.inserted} new, {election.updated} updated, "
        f"{election.evicted_age + election.evicted_capacity} evicted, "
        f"leaderboard size {election.leaderboard_size}"
    )
    if purge:
        typer.echo(f"Rows purged: {summary['retention'].total_deleted}")


# ----------------------------------------------------------------------
# Ingestion
# ----------------------------------------------------------------------


@app.command()
def ingest(
    source: Annotated[
        str, typer.Argument(help="File of '<iso-timestamp> <entity>' lines, or '-' for stdin")
    ] = "-",
    config: ConfigOption = "",
    database: DatabaseOption = "",
    verbose: VerboseOption = False,
) -> None:
    """Append raw events read from a file or stdin."""
    cfg = _setup(config, database, verbose)

    if source == "-":
        lines = sys.stdin.read().splitlines()
    else:
        path = Path(source)
        if not path.exists():
            typer.echo(f"❌ Input file not found: {source}", err=True)
            raise typer.Exit(code=1)
        lines = path.read_text().splitlines()

    events = []
    unparsable = 0
    for number, line in enumerate(lines, start=1):
        try:
            event = parse_event_line(line)
        except ValueError as e:
            unparsable += 1
            logger.warning(f"Line {number}: {e}")
            continue
        if event is not None:
            events.append(event)

    async def ingest_all(pipeline: WebtopPipeline) -> tuple[int, int]:
        accepted = rejected = 0
        for start in range(0, len(events), INGEST_BATCH_SIZE):
            result = await pipeline.ingestion.ingest_batch(events[start : start + INGEST_BATCH_SIZE])
            accepted += result.accepted
            rejected += result.rejected
        return accepted, rejected

    accepted, rejected = _run(cfg, ingest_all)
    typer.echo(f"Accepted: {accepted}")
    typer.echo(f"Rejected: {rejected + unparsable}")


# ----------------------------------------------------------------------
# Reports
# ----------------------------------------------------------------------


@app.command()
def report(
    limit: Annotated[int, typer.Option("--limit", "-n", help="Rows to show")] = 20,
    as_json: Annotated[bool, typer.Option("--json", help="Emit JSON")] = False,
    config: ConfigOption = "",
    database: DatabaseOption = "",
    verbose: VerboseOption = False,
) -> None:
    """Show the leaderboard ranked by cumulative hits."""
    cfg = _setup(config, database, verbose)
    rows = _run(cfg, lambda p: p.report.top(limit=limit))

    if as_json:
        _echo_json([row.model_dump(mode="json") for row in rows])
        return
    if not rows:
        typer.echo("Leaderboard is empty")
        return

    typer.echo(f"{'RANK':>4}  {'ENTITY':<40} {'HITS':>12} {'ELECTED':>7} {'HITS/H':>10}  LAST SEEN")
    for row in rows:
        typer.echo(
            f"{row.rank:>4}  {row.entity_key:<40} {row.cumulative_hits:>12} "
            f"{row.times_elected:>7} {row.avg_rate_per_hour:>10.1f}  "
            f"{row.last_seen.isoformat(timespec='seconds')}"
        )


@app.command()
def stats(
    config: ConfigOption = "",
    database: DatabaseOption = "",
    verbose: VerboseOption = False,
) -> None:
    """Show raw event, rollup, candidate and leaderboard statistics."""
    cfg = _setup(config, database, verbose)
    _echo_json(_run(cfg, lambda p: p.report.overview()))


@app.command()
def monitor(
    window_minutes: Annotated[
        int, typer.Option("--window", "-w", help="Minutes of recent traffic to inspect")
    ] = 10,
    limit: Annotated[int, typer.Option("--limit", "-n", help="Rows to show")] = 20,
    anomalies: Annotated[
        bool, typer.Option("--anomalies", help="Also list anomalous windows")
    ] = False,
    trend: Annotated[
        str, typer.Option("--trend", help="Show the trend of one entity")
    ] = "",
    level: Annotated[str, typer.Option("--level", "-l", help="Rollup level to read")] = "",
    config: ConfigOption = "",
    database: DatabaseOption = "",
    verbose: VerboseOption = False,
) -> None:
    """Show per-entity traffic patterns over recent windows."""
    cfg = _setup(config, database, verbose)
    window = timedelta(minutes=window_minutes)

    async def gather(pipeline: WebtopPipeline) -> dict[str, Any]:
        lvl = level or None
        out: dict[str, Any] = {
            "patterns": await pipeline.analytics.traffic_monitor(window=window, level=lvl, limit=limit)
        }
        if anomalies:
            out["anomalies"] = await pipeline.analytics.detect_anomalies(level=lvl, time_window=window)
        if trend:
            out["trend"] = await pipeline.analytics.analyze_trend(trend, level=lvl, time_window=window)
        return out

    try:
        out = _run(cfg, gather)
    except KeyError as e:
        typer.echo(f"❌ {e.args[0]}", err=True)
        raise typer.Exit(code=1) from e

    patterns = out["patterns"]
    if not patterns:
        typer.echo("No recent traffic")
    else:
        typer.echo(f"{'ENTITY':<40} {'PATTERN':<10} {'LEVEL':<7} {'STATUS':<10} {'AVG':>10} {'MAX':>8}")
        for p in patterns:
            typer.echo(
                f"{p.entity_key:<40} {p.pattern:<10} {p.traffic_level:<7} "
                f"{p.status:<10} {p.avg_hits:>10.1f} {p.max_hits:>8}"
            )

    if anomalies:
        detection = out["anomalies"]
        if detection is None:
            typer.echo("Anomalies: insufficient data")
        else:
            typer.echo(
                f"Anomalies: {detection.anomaly_count} of {detection.total_points} windows "
                f"({detection.anomaly_rate:.1%})"
            )
            for a in detection.anomalies[:limit]:
                typer.echo(
                    f"  {a['entity_key']} at {a['window_start']}: {a['actual_hits']} hits "
                    f"(expected {a['expected_hits']:.1f}, z={a['z_score']:.2f})"
                )

    if trend:
        analysis = out["trend"]
        if analysis is None:
            typer.echo(f"Trend for {trend}: insufficient data")
        else:
            typer.echo(
                f"Trend for {trend}: {analysis.trend_direction} "
                f"(strength={analysis.trend_strength:.2f}, change={analysis.percent_change:.1f}%)"
            )


@app.command()
def jobs(
    config: ConfigOption = "",
    database: DatabaseOption = "",
    verbose: VerboseOption = False,
) -> None:
    """Show the last recorded status of every scheduled job."""
    cfg = _setup(config, database, verbose)
    statuses = _run(cfg, lambda p: p.store.job_statuses())

    if not statuses:
        typer.echo("No job status recorded yet")
        return

    for status in statuses:
        error = status.get("last_error")
        typer.echo(f"{status['name']}:")
        typer.echo(f"  interval:     {status['interval_seconds']}s")
        typer.echo(f"  last run:     {status.get('last_run') or '-'}")
        typer.echo(f"  last success: {status.get('last_success') or '-'}")
        typer.echo(f"  next run:     {status.get('next_run') or '-'}")
        typer.echo(f"  runs/failed:  {status['runs']}/{status['failures']}")
        if error:
            typer.echo(f"  last error:   [{error['kind']}] {error['message']} at {error['timestamp']}")


# ----------------------------------------------------------------------
# Administration
# ----------------------------------------------------------------------


@settings_app.command("show")
def settings_show(
    config: ConfigOption = "",
    database: DatabaseOption = "",
    verbose: VerboseOption = False,
) -> None:
    """Show the current pipeline settings."""
    cfg = _setup(config, database, verbose)
    settings = _run(cfg, lambda p: p.store.load_settings())
    _echo_json(settings.model_dump(mode="json"))


@settings_app.command("set")
def settings_set(
    assignments: Annotated[
        list[str], typer.Argument(help="KEY=VALUE pairs, e.g. min_hits_threshold=200")
    ],
    config: ConfigOption = "",
    database: DatabaseOption = "",
    verbose: VerboseOption = False,
) -> None:
    """Change pipeline settings; jobs pick them up on their next tick.

    Durations accept seconds, ``HH:MM:SS`` or ISO 8601 (``PT5M``);
    ``level_retention`` takes a JSON object.
    """
    cfg = _setup(config, database, verbose)

    changes: dict[str, Any] = {}
    for assignment in assignments:
        key, sep, value = assignment.partition("=")
        if not sep or not key:
            typer.echo(f"❌ Expected KEY=VALUE, got: {assignment}", err=True)
            raise typer.Exit(code=1)
        changes[key.strip()] = _parse_value(value)

    try:
        settings = _run(cfg, lambda p: p.store.update_settings(**changes))
    except ValidationError as e:
        typer.echo(f"❌ Invalid settings: {e}", err=True)
        raise typer.Exit(code=1) from e
    _echo_json(settings.model_dump(mode="json"))


@app.command()
def prune(
    min_hits: Annotated[int, typer.Option("--min-hits", help="Remove entries with fewer hits")],
    min_elections: Annotated[
        int, typer.Option("--min-elections", help="... and fewer elections")
    ] = 2,
    config: ConfigOption = "",
    database: DatabaseOption = "",
    verbose: VerboseOption = False,
) -> None:
    """Remove low-value leaderboard entries."""
    cfg = _setup(config, database, verbose)
    removed = _run(cfg, lambda p: p.merger.prune(min_hits, min_elections))
    typer.echo(f"Removed {removed} entries")


@app.command()
def reset(
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Do not ask for confirmation")] = False,
    config: ConfigOption = "",
    database: DatabaseOption = "",
    verbose: VerboseOption = False,
) -> None:
    """Delete all pipeline data, keeping the schema and settings."""
    cfg = _setup(config, database, verbose)
    if not yes:
        typer.confirm(f"Delete all data in {cfg.storage.path}?", abort=True)
    _run(cfg, lambda p: p.store.reset())
    typer.echo("All pipeline data deleted")


@app.command()
def version() -> None:
    """Show webtop version information."""
    import importlib.metadata

    try:
        ver = importlib.metadata.version("webtop")
    except importlib.metadata.PackageNotFoundError:
        from webtop import __version__ as ver
    typer.echo(f"webtop version: {ver}")


@app.command()
def info() -> None:
    """Show webtop system information."""
    typer.echo("webtop - Top websites tracking")
    typer.echo("")
    typer.echo("Pipeline: ingestion -> rollup cascade -> candidate selection -> election")
    typer.echo("Storage: DuckDB")
    typer.echo("")
    typer.echo("Default rollup levels: 1m -> 1h -> 1d")
    typer.echo("Jobs: one refresh job per level, select_candidates, elect, retention")


def main() -> None:
    """Main CLI entry point."""
    app()


if __name__ == "__main__":
    main()
