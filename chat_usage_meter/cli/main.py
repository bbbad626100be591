"""
CLI interface for Chat Usage Meter.

Provides command-line access to export analysis and pricing.
"""

import json
import logging
import sys
from pathlib import Path
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from chat_usage_meter.config.loader import load_meter_config
from chat_usage_meter.core.aggregator import UNKNOWN_DAY, check_invariants
from chat_usage_meter.core.orchestrator import run_usage_report
from chat_usage_meter.core.pricing import ImagePricing, get_model_category, sort_by_category
from chat_usage_meter.core.summary import format_compact_number, summarize

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show diagnostic logging"),
):
    """Chat Usage Meter CLI."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if ctx.invoked_subcommand is None:
        console.print("Chat Usage Meter - Use --help to see available commands")


def _load_export(path: Path):
    with open(path, 'r', encoding='utf-8') as f:
        data = json.load(f)
    if not isinstance(data, list):
        raise ValueError("This doesn't appear to be a conversations export (expected a JSON array)")
    return data


@app.command()
def analyze(
    export: Path = typer.Argument(..., help="conversations.json from a chat export"),
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="YAML file with pricing overrides and tokenizer settings"
    ),
    node_order: Optional[str] = typer.Option(
        None,
        "--node-order",
        help="Node iteration order: mapping or parent_chain"
    ),
    by_model: bool = typer.Option(
        False,
        "--by-model",
        "-m",
        help="Show per-model totals"
    ),
    verify: bool = typer.Option(
        False,
        "--verify",
        help="Check aggregation invariants and fail if any is broken"
    ),
    as_json: bool = typer.Option(
        False,
        "--json",
        help="Print the full aggregation as JSON"
    )
):
    """
    Compute token usage and cost per day and model for a chat export.
    """
    try:
        meter_config = load_meter_config(str(config) if config else None)
        data = _load_export(export)

        aggregator = run_usage_report(
            data,
            registry=meter_config.build_registry(),
            counter=meter_config.build_counter(),
            node_order=node_order or meter_config.node_order
        )
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if as_json:
        console.print_json(json.dumps(aggregator.to_dict()))
    else:
        _display_daily_usage(aggregator)
        if by_model:
            _display_model_usage(aggregator)
        _display_summary(aggregator)

    if verify:
        violations = check_invariants(aggregator)
        if violations:
            console.print(f"\n[red]{len(violations)} invariant violation(s):[/]")
            for violation in violations:
                console.print(f"  {violation}")
            sys.exit(EXIT_CODE_FAIL)
        console.print("\n[green]✓[/] Aggregation invariants hold")

    sys.exit(EXIT_CODE_PASS)


@app.command()
def models(
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="YAML file with pricing overrides"
    )
):
    """List priced models by category."""
    try:
        registry = load_meter_config(str(config) if config else None).build_registry()
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title="Model Pricing")
    table.add_column("Model")
    table.add_column("Category")
    table.add_column("Input / 1M", justify="right")
    table.add_column("Output / 1M", justify="right")
    table.add_column("Per image", justify="right")

    for slug in sort_by_category(registry.slugs):
        pricing = registry.get_pricing(slug)
        if isinstance(pricing, ImagePricing):
            table.add_row(slug, get_model_category(slug), "-", "-", _format_currency(pricing.per_image, 3))
        else:
            table.add_row(
                slug,
                get_model_category(slug),
                _format_currency(pricing.input_per_million),
                _format_currency(pricing.output_per_million),
                "-"
            )

    console.print(table)


def _format_currency(amount: float, places: int = 2) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${abs(amount):,.{places}f}"


def _display_daily_usage(aggregator):
    table = Table(title="Daily Usage")
    table.add_column("Day")
    table.add_column("Conversations", justify="right")
    table.add_column("Messages", justify="right")
    table.add_column("Input", justify="right")
    table.add_column("Output", justify="right")
    table.add_column("Cost", justify="right")

    days = aggregator.known_days()
    if UNKNOWN_DAY in aggregator.usage_by_day:
        days.append(UNKNOWN_DAY)

    for day in days:
        total = aggregator.usage_by_day[day].total
        table.add_row(
            day,
            str(total.conversation_count),
            str(total.message_count),
            format_compact_number(total.input_tokens),
            format_compact_number(total.output_tokens),
            _format_currency(total.cost)
        )

    console.print(table)


def _display_model_usage(aggregator):
    summary = summarize(aggregator)

    table = Table(title="Usage by Model")
    table.add_column("Model")
    table.add_column("Category")
    table.add_column("Conversations", justify="right")
    table.add_column("Messages", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Cost", justify="right")

    for model in summary.models:
        table.add_row(
            model.model,
            model.category,
            str(model.conversation_count),
            str(model.message_count),
            format_compact_number(model.total_tokens),
            _format_currency(model.cost)
        )

    console.print(table)


def _display_summary(aggregator):
    """Display headline numbers of the run."""
    summary = summarize(aggregator)

    console.print("\n[bold]Chat Usage Summary[/bold]")
    console.print("-" * 40)

    if aggregator.start_date:
        console.print(f"Period: {aggregator.start_date} to {aggregator.end_date} ({summary.active_days} active days)")
    console.print(f"Total cost: {_format_currency(summary.total_cost)}")
    console.print(
        f"Tokens: {format_compact_number(summary.input_tokens)} in / "
        f"{format_compact_number(summary.output_tokens)} out"
    )
    console.print(f"Conversations: {summary.conversation_count}  Messages: {summary.message_count}")
    if summary.top_model_by_cost:
        console.print(f"Most expensive model: {summary.top_model_by_cost}")
    if summary.top_model_by_tokens:
        console.print(f"Most used model: {summary.top_model_by_tokens}")
    if summary.busiest_hour is not None:
        console.print(f"Busiest hour (UTC): {summary.busiest_hour:02d}:00")


if __name__ == "__main__":
    app()
