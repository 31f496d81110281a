"""
CLI interface for prompt-ledger.

Provides command-line access to the prompt history and usage ledger.
"""

import sys
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional, Tuple

import typer
from rich.console import Console
from rich.table import Table

from prompt_ledger.config.loader import LedgerConfig, load_config
from prompt_ledger.storage.db import SQLiteKeyValueStore, initialize_schema
from prompt_ledger.storage.history import HistoryStore
from prompt_ledger.storage.models import UsageFilter
from prompt_ledger.storage.repository import UsageStore
from prompt_ledger.utils.logging import setup_logging

app = typer.Typer()
console = Console()
err_console = Console(stderr=True)

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


def _open_stores(config: LedgerConfig) -> Tuple[HistoryStore, UsageStore]:
    """Open both stores on the configured SQLite file."""
    backend = SQLiteKeyValueStore(config.storage.path)
    history = HistoryStore(
        backend,
        key=config.storage.history_key,
        background_writes=config.storage.background_writes,
        max_entries=config.limits.history_max_entries,
    )
    usage = UsageStore(
        backend,
        rate_table=config.pricing,
        key=config.storage.usage_key,
        background_writes=config.storage.background_writes,
        max_entries=config.limits.usage_max_entries,
    )
    return history, usage


def _format_currency(amount: Decimal) -> str:
    """Two decimals from one cent up, six below so tiny costs stay visible."""
    if amount >= Decimal("0.01"):
        return f"${amount:,.2f}"
    return f"${amount:.6f}"


def _format_time(epoch_ms: int) -> str:
    return datetime.fromtimestamp(epoch_ms / 1000).strftime("%Y-%m-%d %H:%M")


def _parse_bound(value: Optional[str], end_of_day: bool) -> Optional[int]:
    """Convert an ISO date or datetime to epoch milliseconds.

    A bare date used as an upper bound covers the whole day.
    """
    if value is None:
        return None
    try:
        moment = datetime.fromisoformat(value)
    except ValueError:
        raise typer.BadParameter(f"expected an ISO date such as 2024-01-31, got {value!r}")
    if end_of_day and len(value) == 10:
        moment = moment + timedelta(days=1) - timedelta(milliseconds=1)
    return int(moment.timestamp() * 1000)


def _usage_filter(start: Optional[str], end: Optional[str], model: Optional[List[str]]) -> UsageFilter:
    return UsageFilter(
        start=_parse_bound(start, end_of_day=False),
        end=_parse_bound(end, end_of_day=True),
        model_ids=frozenset(model) if model else None,
    )


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        envvar="PROMPT_LEDGER_CONFIG",
        help="Path to YAML configuration file"
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Show informational log messages"
    )
):
    """prompt-ledger CLI."""
    setup_logging("INFO" if verbose else "WARNING", console=err_console)
    ctx.obj = config
    if ctx.invoked_subcommand is None:
        console.print("prompt-ledger - Use --help to see available commands")


@app.command()
def status(ctx: typer.Context):
    """Show where the ledger lives and how much it holds."""
    try:
        config = load_config(ctx.obj)
        history, usage = _open_stores(config)
        console.print(f"[green]✓[/] Ledger database: {config.storage.path}")
        console.print(f"History entries: {len(history.entries)}")
        console.print(f"Usage entries: {len(usage.entries)}")
        if history.filter_model_ids:
            console.print(f"Active model filter: {', '.join(history.filter_model_ids)}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def init(ctx: typer.Context):
    """Initialize the ledger database."""
    try:
        config = load_config(ctx.obj)
        initialize_schema(config.storage.path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def history(
    ctx: typer.Context,
    model: Optional[List[str]] = typer.Option(
        None,
        "--model",
        "-m",
        help="Show only this model id (repeatable); defaults to the saved filter"
    )
):
    """List generated prompts, newest first."""
    try:
        history_store, _ = _open_stores(load_config(ctx.obj))
        entries = history_store.filtered_view(model_ids=model or None)
        if not entries:
            console.print("\n[bold yellow]No prompt history found[/]\n")
            sys.exit(EXIT_CODE_PASS)

        table = Table(title="Prompt History")
        table.add_column("ID", no_wrap=True)
        table.add_column("Created", no_wrap=True)
        table.add_column("Model")
        table.add_column("Chars", justify="right")
        table.add_column("Cost", justify="right", no_wrap=True)
        table.add_column("Prompt", overflow="ellipsis", no_wrap=True, max_width=40)
        for entry in entries:
            table.add_row(
                entry.id[:8],
                _format_time(entry.created_at),
                entry.model_name,
                str(entry.char_count),
                _format_currency(entry.total_cost),
                entry.prompt,
            )
        console.print(table)
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def remove(
    ctx: typer.Context,
    entry_id: str = typer.Argument(..., help="Entry id or unique id prefix")
):
    """Delete one history entry."""
    if not entry_id.strip():
        console.print("[red]Error:[/] Entry id cannot be empty")
        sys.exit(EXIT_CODE_FAIL)
    try:
        history_store, _ = _open_stores(load_config(ctx.obj))
        matches = [entry for entry in history_store.entries if entry.id.startswith(entry_id)]
        if not matches:
            console.print(f"[yellow]No history entry matches {entry_id}[/]")
            sys.exit(EXIT_CODE_PASS)
        if len(matches) > 1:
            console.print(f"[red]Error:[/] {entry_id} matches {len(matches)} entries")
            sys.exit(EXIT_CODE_FAIL)

        history_store.remove(matches[0].id)
        history_store.flush()
        console.print(f"[green]✓[/] Removed {matches[0].id}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command(name="filter")
def filter_models(
    ctx: typer.Context,
    model_ids: Optional[List[str]] = typer.Argument(
        None,
        help="Model ids to show in history; none shows all"
    )
):
    """Save the model filter used by the history view."""
    try:
        history_store, _ = _open_stores(load_config(ctx.obj))
        history_store.set_filter(model_ids or [])
        history_store.flush()
        if history_store.filter_model_ids:
            console.print(f"[green]✓[/] Showing models: {', '.join(history_store.filter_model_ids)}")
        else:
            console.print("[green]✓[/] Showing all models")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def usage(
    ctx: typer.Context,
    start: Optional[str] = typer.Option(None, "--from", help="Earliest date (inclusive)"),
    end: Optional[str] = typer.Option(None, "--to", help="Latest date (inclusive)"),
    model: Optional[List[str]] = typer.Option(None, "--model", "-m", help="Model id (repeatable)")
):
    """List billed generations, oldest first."""
    usage_filter = _usage_filter(start, end, model)
    try:
        _, usage_store = _open_stores(load_config(ctx.obj))
        entries = usage_store.query(usage_filter)
        if not entries:
            console.print("\n[bold yellow]No usage recorded for this filter[/]\n")
            sys.exit(EXIT_CODE_PASS)

        table = Table(title="Usage & Costs")
        table.add_column("Time", no_wrap=True)
        table.add_column("Model")
        table.add_column("In", justify="right")
        table.add_column("Out", justify="right")
        table.add_column("Cost", justify="right", no_wrap=True)
        for entry in entries:
            table.add_row(
                _format_time(entry.timestamp),
                entry.model_name,
                str(entry.input_tokens),
                str(entry.output_tokens),
                _format_currency(entry.total_cost),
            )
        console.print(table)
        total = usage_store.aggregate(usage_filter)
        console.print(f"Total spend: {_format_currency(total.total_cost)}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def summary(
    ctx: typer.Context,
    start: Optional[str] = typer.Option(None, "--from", help="Earliest date (inclusive)"),
    end: Optional[str] = typer.Option(None, "--to", help="Latest date (inclusive)"),
    model: Optional[List[str]] = typer.Option(None, "--model", "-m", help="Model id (repeatable)")
):
    """Show cost and token totals, overall and per model."""
    usage_filter = _usage_filter(start, end, model)
    try:
        _, usage_store = _open_stores(load_config(ctx.obj))
        total = usage_store.aggregate(usage_filter)

        console.print("\n[bold]Usage Summary[/bold]")
        console.print("-" * 40)
        console.print(f"Requests: {total.count}")
        console.print(f"Input tokens: {total.total_input_tokens:,}")
        console.print(f"Output tokens: {total.total_output_tokens:,}")
        console.print(f"Total cost: {_format_currency(total.total_cost)}")

        for model_id in usage_store.model_ids():
            if usage_filter.model_ids and model_id not in usage_filter.model_ids:
                continue
            per_model = usage_store.aggregate(UsageFilter(
                start=usage_filter.start,
                end=usage_filter.end,
                model_ids=frozenset([model_id]),
            ))
            if per_model.count:
                console.print(
                    f"  {model_id}: {per_model.count} requests, "
                    f"{_format_currency(per_model.total_cost)}"
                )
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def clear(
    ctx: typer.Context,
    history: bool = typer.Option(True, "--history/--no-history", help="Clear prompt history"),
    usage: bool = typer.Option(True, "--usage/--no-usage", help="Clear the usage ledger"),
    reset_filter: bool = typer.Option(False, "--reset-filter", help="Also reset the model filter"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation")
):
    """Delete recorded history and/or usage."""
    if not yes:
        typer.confirm("This permanently deletes the selected records. Continue?", abort=True)
    try:
        history_store, usage_store = _open_stores(load_config(ctx.obj))
        if history:
            history_store.clear(reset_filter=reset_filter)
            history_store.flush()
            console.print("[green]✓[/] History cleared")
        if usage:
            usage_store.clear()
            usage_store.flush()
            console.print("[green]✓[/] Usage cleared")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


if __name__ == "__main__":
    app()
