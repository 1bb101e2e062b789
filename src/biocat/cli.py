# biocat/cli.py
"""Command line entry point: ``biocat drugs|historical|stats|scrape|init-db``."""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path
from typing import Optional

import typer
from rich import box
from rich.console import Console
from rich.table import Table
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from .config import MissingApiKeyError, get_config
from .db.session import check_connection, create_all, create_db_engine, session_scope
from .ingest.checkpoint import CheckpointError
from .ingest.client import BpiqClient, FetchError
from .ingest.files import ScrapeFileError
from .load.stats import catalysts_by_year, collect_database_stats
from .load.upsert import ImportStats
from .pipeline import ScrapeOutcome, import_file, scrape_resource, scrape_targets

app = typer.Typer(add_completion=False, help="BPIQ drug pipeline and catalyst ingestion")
console = Console()
logger = logging.getLogger(__name__)

EXIT_INTERRUPTED = 130


class ScrapeTarget(str, Enum):
    drugs = "drugs"
    historical = "historical"
    all = "all"


def setup_logging(verbose: bool = False) -> None:
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )


def _connect() -> Engine:
    engine = create_db_engine()
    try:
        check_connection(engine)
    except SQLAlchemyError as e:
        engine.dispose()
        console.print(f"[red]Database connection failed:[/red] {e}")
        raise typer.Exit(1)
    console.print("[green]Database connected successfully[/green]")
    return engine


def _print_import_summary(title: str, stats: ImportStats) -> None:
    table = Table(title=title, box=box.ROUNDED)
    table.add_column("Entity", style="cyan")
    table.add_column("Inserted", justify="right", style="green")
    table.add_column("Updated", justify="right", style="yellow")
    for name in ImportStats.ENTITIES:
        counts = getattr(stats, name)
        if counts.total:
            table.add_row(name.replace("_", " "), f"{counts.inserted:,}", f"{counts.updated:,}")
    console.print(table)

    if stats.errors:
        console.print(f"[red]Errors encountered: {len(stats.errors)}[/red]")
        for err in stats.errors:
            console.print(f"  - {err}")
    else:
        console.print("[green]Import completed successfully[/green]")


def _print_scrape_summary(outcome: ScrapeOutcome) -> None:
    progress = outcome.progress
    console.print(f"\n[bold green]Scrape complete![/bold green] ({outcome.resource})")
    console.print(f"Total records: {progress.records_fetched:,}")
    console.print(f"Pages processed: {progress.pages_processed}")
    console.print(f"Time taken: {progress.elapsed_seconds():.1f}s")
    console.print(f"Data saved to: {outcome.path}")
    if progress.errors:
        console.print(f"[yellow]Errors encountered: {len(progress.errors)}[/yellow]")
        for err in progress.errors:
            console.print(f"  - {err}")


def _import(kind: str, file: Path) -> None:
    if not file.exists():
        console.print(f"[red]File not found:[/red] {file}")
        raise typer.Exit(1)

    engine = _connect()
    try:
        stats, run_record_id = import_file(engine, kind, file)
    except ScrapeFileError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted; the import was rolled back.[/yellow]")
        raise typer.Exit(EXIT_INTERRUPTED)
    finally:
        engine.dispose()

    _print_import_summary(f"Import Summary ({kind})", stats)
    if run_record_id is not None:
        console.print(f"Run recorded as scrape_history #{run_record_id}")
    if stats.errors:
        raise typer.Exit(1)


@app.callback()
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    config: Optional[Path] = typer.Option(None, "--config", help="Path to a YAML config file"),
):
    setup_logging(verbose)
    ctx.obj = get_config(str(config) if config else None)


@app.command("drugs")
def drugs(file: Path = typer.Argument(..., help="Drugs JSON file")):
    "Import a drugs scrape file"
    _import("drugs", file)


@app.command("historical")
def historical(file: Path = typer.Argument(..., help="Historical catalysts JSON file")):
    "Import a historical catalysts scrape file"
    _import("historical", file)


@app.command("stats")
def stats():
    "Show database statistics"
    engine = _connect()
    try:
        with session_scope(engine) as session:
            metrics = collect_database_stats(session)
            years = catalysts_by_year(session)
    except SQLAlchemyError as e:
        console.print(f"[red]Error fetching stats:[/red] {e}")
        raise typer.Exit(1)
    finally:
        engine.dispose()

    table = Table(title="Database Statistics", box=box.ROUNDED)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right", style="green")
    for metric, value in metrics:
        table.add_row(metric, f"{value:,}")
    console.print(table)

    if years:
        by_year = Table(title="Historical Catalysts by Year", box=box.ROUNDED)
        by_year.add_column("Year", style="cyan")
        by_year.add_column("Events", justify="right", style="green")
        by_year.add_column("Companies", justify="right", style="yellow")
        for year, events, companies in years:
            by_year.add_row(str(year), f"{events:,}", f"{companies:,}")
        console.print(by_year)


@app.command("scrape")
def scrape(
    ctx: typer.Context,
    target: ScrapeTarget = typer.Argument(..., help="drugs, historical or all"),
    resume: bool = typer.Option(False, "--resume", help="Continue from the last checkpoint"),
    load: bool = typer.Option(False, "--load", help="Import into the database after scraping"),
    output_dir: Optional[Path] = typer.Option(None, "--output-dir", help="Where to write scrape files"),
):
    "Scrape the BPIQ API into dated JSON files"
    config = ctx.obj
    try:
        client = BpiqClient.from_config(config)
    except MissingApiKeyError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    logger.info("API Key: Present")

    engine = _connect() if load else None
    failed = False
    try:
        for resource in scrape_targets(target.value):
            outcome = scrape_resource(
                config, resource, client,
                engine=engine, resume=resume, load=load, output_dir=output_dir,
            )
            _print_scrape_summary(outcome)
            if outcome.stats is not None:
                _print_import_summary(f"Import Summary ({resource})", outcome.stats)
                failed = failed or bool(outcome.stats.errors)
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted; progress was checkpointed. Re-run with --resume.[/yellow]")
        raise typer.Exit(EXIT_INTERRUPTED)
    except (FetchError, CheckpointError) as e:
        console.print(f"[red]Fatal error during scrape:[/red] {e}")
        raise typer.Exit(1)
    finally:
        if engine is not None:
            engine.dispose()

    if failed:
        raise typer.Exit(1)


@app.command("init-db")
def init_db():
    "Create all tables (no migrations)"
    engine = _connect()
    try:
        create_all(engine)
    finally:
        engine.dispose()
    typer.echo("Tables created")


if __name__ == "__main__":
    app()
