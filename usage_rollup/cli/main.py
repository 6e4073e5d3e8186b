"""
CLI interface for Usage Rollup.

Provides command-line access to usage totals, trends and cost breakdowns.
"""

import sys
from datetime import datetime
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from usage_rollup.config.loader import EngineConfig, load_engine_config
from usage_rollup.core.aggregator import UsageAggregator
from usage_rollup.core.errors import StoreUnavailable, UsageAggregationError
from usage_rollup.core.keys import Dimension
from usage_rollup.core.pricing import format_cost
from usage_rollup.core.ranges import RangeKind, TimeRangeSpec

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

DIMENSION_HELP = "Entity scope: api_key or account"
RANGE_HELP = "Time range: today, 7days, 30days, monthly, all or custom"
FAMILY_HELP = "Product family used to pick the fallback model, e.g. gemini"
TREND_TIME_FORMATS = ["%Y-%m-%d", "%Y-%m-%dT%H:%M", "%Y-%m-%d %H:%M"]


def get_aggregator(config_path: Optional[str]) -> UsageAggregator:
    """Build an aggregator from a config file, or defaults when none is given."""
    config = load_engine_config(config_path) if config_path else EngineConfig()
    return UsageAggregator.from_config(config)


def _range_spec(range_name: str, start: Optional[datetime],
                end: Optional[datetime]) -> TimeRangeSpec:
    if range_name.lower() == RangeKind.CUSTOM.value:
        return TimeRangeSpec.parse(
            range_name,
            start.date() if start else None,
            end.date() if end else None,
        )
    return TimeRangeSpec.parse(range_name)


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/] {message}")
    sys.exit(EXIT_CODE_FAIL)


def _run(action):
    """Run a command body, mapping engine errors to exit codes."""
    try:
        action()
    except StoreUnavailable as e:
        _fail(f"counter store unavailable: {e}")
    except (UsageAggregationError, ValueError, FileNotFoundError) as e:
        _fail(str(e))
    sys.exit(EXIT_CODE_PASS)


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """Usage Rollup CLI."""
    if ctx.invoked_subcommand is None:
        console.print("Usage Rollup - Use --help to see available commands")


@app.command()
def usage(
    entity_id: str = typer.Argument(..., help="API key or account id"),
    dimension: str = typer.Option(Dimension.API_KEY.value, "--dimension", "-d", help=DIMENSION_HELP),
    range_name: str = typer.Option("today", "--range", "-r", help=RANGE_HELP),
    start: Optional[datetime] = typer.Option(None, "--start", formats=["%Y-%m-%d"]),
    end: Optional[datetime] = typer.Option(None, "--end", formats=["%Y-%m-%d"]),
    family: Optional[str] = typer.Option(None, "--family", "-f", help=FAMILY_HELP),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Engine config YAML"),
):
    """Show usage totals and cost of one key or account."""
    def action():
        spec = _range_spec(range_name, start, end)
        result = get_aggregator(config).get_usage(entity_id, dimension, spec, family=family)

        table = Table(title=f"Usage of {entity_id} ({range_name})")
        table.add_column("Metric")
        table.add_column("Value", justify="right")
        for name, value in result.totals.as_dict().items():
            table.add_row(name, f"{value:,}")
        for name, value in result.cost.formatted.items():
            table.add_row(f"cost.{name}", value)
        console.print(table)
        if result.used_fallback_pricing:
            console.print("[yellow]No per-model data; cost estimated with the fallback model[/]")

    _run(action)


@app.command()
def batch(
    entity_ids: List[str] = typer.Argument(..., help="API key or account ids"),
    dimension: str = typer.Option(Dimension.API_KEY.value, "--dimension", "-d", help=DIMENSION_HELP),
    range_name: str = typer.Option("today", "--range", "-r", help=RANGE_HELP),
    start: Optional[datetime] = typer.Option(None, "--start", formats=["%Y-%m-%d"]),
    end: Optional[datetime] = typer.Option(None, "--end", formats=["%Y-%m-%d"]),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Engine config YAML"),
):
    """Show usage totals of many keys or accounts."""
    def action():
        spec = _range_spec(range_name, start, end)
        results = get_aggregator(config).get_usage_batch(entity_ids, dimension, spec)

        table = Table(title=f"Usage ({range_name})")
        table.add_column("Entity")
        table.add_column("Requests", justify="right")
        table.add_column("Input", justify="right")
        table.add_column("Output", justify="right")
        table.add_column("All tokens", justify="right")
        for entity_id, totals in results.items():
            table.add_row(entity_id, f"{totals.requests:,}", f"{totals.input_tokens:,}",
                          f"{totals.output_tokens:,}", f"{totals.all_tokens:,}")
        console.print(table)

    _run(action)


@app.command()
def trend(
    entity_id: str = typer.Argument(..., help="API key or account id"),
    dimension: str = typer.Option(Dimension.API_KEY.value, "--dimension", "-d", help=DIMENSION_HELP),
    days: int = typer.Option(30, "--days", help="Number of days, up to the configured maximum"),
    granularity: str = typer.Option("day", "--granularity", "-g", help="Bucket size: day or hour"),
    start: Optional[datetime] = typer.Option(None, "--start", formats=TREND_TIME_FORMATS,
                                             help="Window start (hour trends read it as UTC)"),
    end: Optional[datetime] = typer.Option(None, "--end", formats=TREND_TIME_FORMATS,
                                           help="Window end (hour trends read it as UTC)"),
    family: Optional[str] = typer.Option(None, "--family", "-f", help=FAMILY_HELP),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Engine config YAML"),
):
    """Show daily or hourly usage and cost of one key or account."""
    def action():
        hourly = granularity.strip().lower() == "hour"
        window_start = start if hourly or start is None else start.date()
        window_end = end if hourly or end is None else end.date()
        result = get_aggregator(config).get_usage_trend(
            entity_id, dimension, days, granularity=granularity,
            start=window_start, end=window_end, family=family,
        )

        table = Table(title=f"{'Hourly' if hourly else 'Daily'} usage of {entity_id}")
        table.add_column("Hour" if hourly else "Date")
        table.add_column("Requests", justify="right")
        table.add_column("Tokens", justify="right")
        table.add_column("Cost", justify="right")
        for point in result.points:
            table.add_row(point.label, f"{point.usage.requests:,}",
                          f"{point.usage.all_tokens:,}", format_cost(point.cost.total))
        console.print(table)

        unit, per_unit = ("hour", "hourly") if hourly else ("day", "daily")
        summary = result.summary
        console.print(f"Total cost: {format_cost(summary.total_cost)}")
        console.print(f"Average {per_unit} cost: {format_cost(summary.avg_daily_cost)}")
        if summary.highest_cost_day is not None:
            console.print(f"Highest cost {unit}: {summary.highest_cost_day.date} "
                          f"({format_cost(summary.highest_cost_day.cost.total)})")

    _run(action)


@app.command()
def models(
    entity_id: str = typer.Argument(..., help="API key or account id"),
    dimension: str = typer.Option(Dimension.API_KEY.value, "--dimension", "-d", help=DIMENSION_HELP),
    range_name: str = typer.Option("monthly", "--range", "-r", help=RANGE_HELP),
    start: Optional[datetime] = typer.Option(None, "--start", formats=["%Y-%m-%d"]),
    end: Optional[datetime] = typer.Option(None, "--end", formats=["%Y-%m-%d"]),
    family: Optional[str] = typer.Option(None, "--family", "-f", help=FAMILY_HELP),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Engine config YAML"),
):
    """Show per-model usage and cost of one key or account."""
    def action():
        spec = _range_spec(range_name, start, end)
        lines = get_aggregator(config).get_model_breakdown(entity_id, dimension, spec, family=family)
        if not lines:
            console.print("\n[dim]No usage found for this range.[/]")
            return

        table = Table(title=f"Models used by {entity_id} ({range_name})")
        table.add_column("Model")
        table.add_column("All tokens", justify="right")
        table.add_column("Cost", justify="right")
        for line in lines:
            label = f"{line.model} (estimated)" if line.is_fallback else line.model
            table.add_row(label, f"{line.usage.all_tokens:,}", format_cost(line.cost.total))
        console.print(table)

    _run(action)


if __name__ == "__main__":
    app()
