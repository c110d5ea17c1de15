"""Typer CLI entrypoint for grant-harvester."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

import typer
from rich import box
from rich.console import Console
from rich.table import Table

from .config import ConfigRepository, HarvesterSettings, SourceConfiguration
from .database import AuditLogger, DatabaseWriter
from .engines import default_registry
from .errors import ConfigurationError, HarvesterError
from .logging_conf import configure_logging
from .models import ScrapeJob, ScrapingResult
from .orchestrator import Orchestrator
from .scheduler import APSchedulerAdapter
from .source_manager import SourceManager
from .storage import SQLiteGrantRepository, SQLiteManager, SQLiteSourceRepository, SourceRecord
from .thread_pool import ThreadPoolManager

app = typer.Typer(
    help="Grant harvester command line",
    no_args_is_help=True,
    rich_markup_mode=None,
)
sources_app = typer.Typer(
    name="sources",
    help="Manage harvesting sources",
    no_args_is_help=True,
    rich_markup_mode=None,
)
console = Console()


@dataclass
class AppState:
    config: ConfigRepository
    settings: HarvesterSettings
    source_manager: SourceManager
    writer: DatabaseWriter
    orchestrator: Orchestrator
    scheduler: APSchedulerAdapter


def build_state(verbose: bool) -> AppState:
    config = ConfigRepository()
    settings = config.load_settings()
    configure_logging(verbose=verbose, level=settings.log_level)

    manager = SQLiteManager(config.database_path())
    grants = SQLiteGrantRepository(manager)
    audit = AuditLogger(grants)
    source_manager = SourceManager(
        SQLiteSourceRepository(manager),
        audit_logger=audit,
        health_check_timeout=settings.health_check_timeout,
    )
    writer = DatabaseWriter(grants, settings=settings.writer, audit=audit)
    scheduler = APSchedulerAdapter()
    orchestrator = Orchestrator(
        source_manager,
        default_registry(),
        writer,
        settings=settings.orchestrator,
        thread_pool=ThreadPoolManager(settings.thread_pool_workers),
        scheduler=scheduler,
    )
    return AppState(
        config=config,
        settings=settings,
        source_manager=source_manager,
        writer=writer,
        orchestrator=orchestrator,
        scheduler=scheduler,
    )


def _get_state(ctx: typer.Context) -> AppState:
    state = ctx.obj
    if state is None:
        state = build_state(verbose=False)
        ctx.obj = state
    return state


def _render_sources_table(records: Sequence[SourceRecord]) -> Table:
    table = Table(title=f"Sources ({len(records)})", box=box.SIMPLE_HEAD)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Name")
    table.add_column("Engine", style="magenta")
    table.add_column("Frequency", style="yellow")
    table.add_column("Status", style="green")
    table.add_column("Success rate", justify="right")
    table.add_column("Failures", justify="right")
    for record in records:
        config = record.config
        table.add_row(
            config.id,
            config.display_name,
            config.engine,
            config.frequency.value,
            record.status.value,
            f"{record.metrics.success_rate:.0%}" if record.metrics.total_scrapes else "-",
            str(record.metrics.consecutive_failures),
        )
    return table


def _render_results_table(results: Iterable[ScrapingResult]) -> Table:
    table = Table(title="Scrape results", box=box.SIMPLE_HEAD)
    table.add_column("Source", style="cyan", no_wrap=True)
    table.add_column("Found", justify="right")
    table.add_column("Inserted", justify="right", style="green")
    table.add_column("Updated", justify="right")
    table.add_column("Skipped", justify="right")
    table.add_column("Duplicates", justify="right")
    table.add_column("Errors", justify="right", style="red")
    table.add_column("Duration", justify="right")
    for result in results:
        table.add_row(
            result.source_id,
            str(result.total_found),
            str(result.total_inserted),
            str(result.total_updated),
            str(result.total_skipped),
            str(result.duplicates_found),
            str(len(result.errors)),
            f"{result.duration:.2f}s",
        )
    return table


def _print_errors(result: ScrapingResult) -> None:
    for error in result.errors:
        console.print(f"[red]{error.type.value}[/red] {error.message}")


app.add_typer(sources_app, name="sources", help="Manage harvesting sources (list/import/validate)")


@app.callback()
def main(
    ctx: typer.Context, verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging", is_flag=True)
) -> None:
    ctx.obj = build_state(verbose)


@sources_app.command("list", help="List registered sources with their health.")
def sources_list(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    records = state.source_manager.list_sources()
    if not records:
        console.print("No sources registered. Run `grant-harvester sources import` first.", style="yellow")
        raise typer.Exit(code=0)
    console.print(_render_sources_table(records))


@sources_app.command("import", help="Register or update sources from the source config directory.")
def sources_import(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    try:
        imported = state.config.import_sources(state.source_manager)
    except (ConfigurationError, ValueError) as exc:
        console.print(f"Import failed: {exc}", style="red")
        raise typer.Exit(code=1)
    if not imported:
        console.print("No source files found.", style="yellow")
        return
    console.print(f"Imported {len(imported)} source(s): " + ", ".join(config.id for config in imported), style="green")


@sources_app.command("validate", help="Validate source config files without registering them.")
def sources_validate(
    ctx: typer.Context,
    source_id: Optional[str] = typer.Argument(None, help="Validate only this source."),
) -> None:
    state = _get_state(ctx)
    try:
        configs: list[SourceConfiguration] = (
            [state.config.load_source(source_id)] if source_id else state.config.list_sources()
        )
    except FileNotFoundError as exc:
        console.print(str(exc), style="red")
        raise typer.Exit(code=1)

    table = Table(title="Source validation", box=box.SIMPLE_HEAD)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Valid")
    table.add_column("Score", justify="right")
    table.add_column("Issues", overflow="fold")
    all_valid = True
    for config in configs:
        report = state.source_manager.validate_source_configuration(config)
        all_valid = all_valid and report.is_valid
        issues = [f"{issue.field}: {issue.message}" for issue in report.errors + report.warnings]
        table.add_row(
            config.id,
            "[green]yes[/green]" if report.is_valid else "[red]no[/red]",
            str(report.quality_score),
            "\n".join(issues) or "-",
        )
    console.print(table)
    if not all_valid:
        raise typer.Exit(code=1)


@app.command("run", help="Run one source now as a scrape job.")
def run_source(
    ctx: typer.Context,
    source_id: str = typer.Argument(..., help="Source to scrape."),
    quiet: bool = typer.Option(False, "--quiet", help="Print a one-line summary only.", is_flag=True),
) -> None:
    state = _get_state(ctx)
    job = ScrapeJob(source_id=source_id)
    result = state.orchestrator.execute_scrape_job(job)
    if quiet:
        console.print(
            f"{job.status.value}: inserted {result.total_inserted}, updated {result.total_updated}, "
            f"skipped {result.total_skipped}, errors {len(result.errors)}"
        )
    else:
        console.print(_render_results_table([result]))
        _print_errors(result)
    if result.failed:
        raise typer.Exit(code=1)


@app.command("run-all", help="Run every active source concurrently.")
def run_all(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    sources = state.source_manager.get_active_sources()
    if not sources:
        console.print("No active sources.", style="yellow")
        raise typer.Exit(code=0)
    results = state.orchestrator.process_multiple_sources(sources)
    console.print(_render_results_table(results))
    failed = [result for result in results if result.failed]
    for result in failed:
        _print_errors(result)
    if failed:
        console.print(f"{len(failed)} of {len(results)} source(s) failed.", style="red")
        raise typer.Exit(code=1)


@app.command("serve", help="Schedule every active source by its frequency and run until interrupted.")
def serve(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    sources = state.source_manager.get_active_sources()
    state.orchestrator.register_schedules(sources)
    console.print(f"Scheduled {len(sources)} source(s). Press Ctrl+C to stop.", style="green")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        console.print("Stopping scheduler...", style="dim")
    finally:
        state.orchestrator.shutdown()


@app.command("stats", help="Show database and audit statistics.")
def stats(
    ctx: typer.Context,
    days: int = typer.Option(7, "--days", help="Audit statistics window in days."),
) -> None:
    state = _get_state(ctx)
    try:
        db_stats = state.writer.get_database_stats()
    except HarvesterError as exc:
        console.print(f"Could not read statistics: {exc}", style="red")
        raise typer.Exit(code=1)
    audit_stats = state.writer.audit.get_audit_statistics(days)

    table = Table(title="Database", box=box.SIMPLE_HEAD)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right", style="green")
    table.add_row("Total grants", str(db_stats.total_grants))
    table.add_row("Active grants", str(db_stats.active_grants))
    table.add_row("Expired grants", str(db_stats.expired_grants))
    table.add_row("Funders", str(db_stats.total_funders))
    table.add_row("Scrape jobs (24h)", str(db_stats.recent_scrape_jobs))
    table.add_row("Avg job duration", f"{db_stats.avg_processing_time:.2f}s")
    console.print(table)

    audit_table = Table(title=f"Audit log (last {days} days)", box=box.SIMPLE_HEAD)
    audit_table.add_column("Metric", style="cyan")
    audit_table.add_column("Value", justify="right", style="green")
    for key in ("total_events", "scrape_events", "grant_events", "error_events"):
        audit_table.add_row(key.replace("_", " ").capitalize(), str(audit_stats[key]))
    console.print(audit_table)


@app.command("cleanup-audit", help="Delete audit log entries older than the retention window.")
def cleanup_audit(
    ctx: typer.Context,
    days: Optional[int] = typer.Option(None, "--days", help="Days to keep (defaults to audit_retention_days)."),
) -> None:
    state = _get_state(ctx)
    keep = days if days is not None else state.settings.audit_retention_days
    if keep < 1:
        console.print("--days must be at least 1.", style="red")
        raise typer.Exit(code=1)
    deleted = state.writer.cleanup_old_audit_logs(keep)
    console.print(f"Deleted {deleted} audit entries older than {keep} days.", style="green")


def cli() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    cli()


__all__ = ["AppState", "app", "build_state", "cli"]
