"""
Command-line interface for feed-ingest.

Uses Typer for commands and Rich for summaries. Loads a .env file (proxy
settings, custom config paths) before reading configuration.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from pathlib import Path

from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table
import typer

from .config import AppConfig, load_config
from .core.types import Job, JobStatus, JobStatusReport
from .errors import ConfigurationError, IngestError, JobNotFoundError
from .fetch.extractor import extract as extract_html
from .fetch.fetcher import HttpFetcher
from .logging_utils import setup_logging
from .runner import JobOrchestrator
from .store.files import FileContentStore, FileEventSink, YamlSourceRegistry
from .store.memory import LoggingAlertSink, StaticCandidateFeed

app = typer.Typer(add_completion=False, help="Acquire, extract and deduplicate articles from configured sources.")
console = Console()


def _load(config: Path | None, log_level: str | None = None) -> AppConfig:
    load_dotenv()
    try:
        cfg = load_config(str(config) if config and config.exists() else None)
    except ConfigurationError as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        raise typer.Exit(code=2) from exc
    if log_level:
        cfg.logging.level = log_level
    return cfg


def build_orchestrator(cfg: AppConfig, fetcher: HttpFetcher) -> JobOrchestrator:
    """Wire the file-backed collaborators into an orchestrator."""
    directory = Path(cfg.store.directory)
    return JobOrchestrator(
        cfg,
        store=FileContentStore(directory),
        registry=YamlSourceRegistry(cfg.store.sources_file, directory),
        feed=StaticCandidateFeed(),
        fetcher=fetcher,
        events=FileEventSink(directory),
        alerts=LoggingAlertSink(),
    )


@app.command()
def run(
    config: Path | None = typer.Option(Path("config.yaml"), "--config", "-c"),
    source: list[str] = typer.Option([], "--source", "-s", help="Source id to process (repeatable)."),
    limit: int | None = typer.Option(None, "--limit", "-n", help="Candidates per source."),
    timeout: float | None = typer.Option(None, "--timeout", help="Job wall-clock budget in seconds."),
    log_level: str | None = typer.Option(None, "--log-level", help="Logging level."),
    log_file: bool | None = typer.Option(None, "--log-file/--no-log-file", help="Enable or disable file logging."),
):
    """Run one ingestion job over the configured sources."""
    cfg = _load(config, log_level)
    if log_file is not None:
        cfg.logging.file = log_file
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    setup_logging(cfg.logging, Path(cfg.store.directory) / "logs" / stamp)

    async def _run() -> Job:
        async with HttpFetcher(cfg.fetch) as fetcher:
            orchestrator = build_orchestrator(cfg, fetcher)
            return await orchestrator.run_job(source or None, limit, timeout)

    job = asyncio.run(_run())
    _render_report(JobStatusReport.from_job(job))
    if job.failure_reason:
        console.print(f"[yellow]Reason:[/yellow] {job.failure_reason}")
    raise typer.Exit(code=1 if job.status is JobStatus.FAILED else 0)


@app.command()
def status(
    job_id: str = typer.Argument(..., help="Job id printed by `run`."),
    config: Path | None = typer.Option(Path("config.yaml"), "--config", "-c"),
):
    """Show status, counters and error summary for a job."""
    cfg = _load(config)
    store = FileContentStore(Path(cfg.store.directory))
    job = asyncio.run(store.get_job(job_id))
    if job is None:
        console.print(f"[red]{JobNotFoundError.__name__}:[/red] no job {job_id}")
        raise typer.Exit(code=1)
    _render_report(JobStatusReport.from_job(job))


@app.command()
def extract(
    target: str = typer.Argument(..., help="URL to fetch or path to a saved HTML file."),
    config: Path | None = typer.Option(Path("config.yaml"), "--config", "-c"),
    trace: bool = typer.Option(False, "--trace/--no-trace", help="Show where each field came from."),
):
    """Extract a single page and print the result."""
    cfg = _load(config)
    path = Path(target)
    if path.exists():
        html, url = path.read_text(encoding="utf-8", errors="replace"), path.resolve().as_uri()
    else:
        async def _fetch() -> tuple[str, str]:
            async with HttpFetcher(cfg.fetch) as fetcher:
                result = await fetcher.fetch(target)
                return result.text, result.final_url

        try:
            html, url = asyncio.run(_fetch())
        except (IngestError, OSError) as exc:
            console.print(f"[red]Fetch failed:[/red] {exc}")
            raise typer.Exit(code=1) from exc

    result = extract_html(html, url, trace=trace, cfg=cfg.extract)
    if result.is_empty:
        console.print("[yellow]No article body passed the quality gate.[/yellow]")
    else:
        console.print(f"[bold]{result.title or '(no title)'}[/bold]")
        console.print(f"author={result.author} published_at={result.published_at} "
                      f"quality={result.quality_score} paragraphs={result.paragraphs}")
        console.print(f"hash={result.content_hash}")
        console.print()
        console.print(result.body)

    if trace and result.trace is not None:
        table = Table(title="Extraction trace")
        table.add_column("Field")
        table.add_column("Strategy")
        table.add_column("Selector")
        table.add_column("Value", overflow="fold", max_width=60)
        for item in result.trace:
            value = item.value if len(item.value) <= 120 else item.value[:117] + "..."
            table.add_row(item.field, item.strategy, item.selector, value)
        console.print(table)


@app.command()
def circuits(
    config: Path | None = typer.Option(Path("config.yaml"), "--config", "-c"),
):
    """Show circuit-breaker state for every configured source."""
    cfg = _load(config)
    registry = YamlSourceRegistry(cfg.store.sources_file, Path(cfg.store.directory))
    try:
        states = asyncio.run(registry.list_circuits())
    except ConfigurationError as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        raise typer.Exit(code=2) from exc

    table = Table(title="Circuits")
    table.add_column("Source")
    table.add_column("State")
    table.add_column("Failures", justify="right")
    table.add_column("Opened at")
    for state in states:
        opened = (
            datetime.fromtimestamp(state.opened_at, tz=timezone.utc).isoformat(timespec="seconds")
            if state.opened_at
            else "-"
        )
        table.add_row(state.source_id, state.state.value, str(state.failure_count), opened)
    console.print(table)


def _render_report(report: JobStatusReport) -> None:
    counts = report.counts
    console.print(
        f"[bold]Job {report.job_id}[/bold]: {report.status.value} "
        f"attempted={counts['attempted']}, stored={counts['scraped']}, duplicates={counts['duplicates']}, "
        f"errors={counts['errors']}, skipped={counts['skipped']}"
    )
    if report.sources:
        table = Table()
        for column in ("Source", "Status", "Attempted", "Stored", "Duplicates", "Errors", "Skipped", "Reason"):
            table.add_column(column)
        for item in report.sources:
            table.add_row(
                item.source_id,
                item.status.value,
                str(item.attempted),
                str(item.stored),
                str(item.duplicates),
                str(item.errors),
                str(item.skipped),
                item.reason or "",
            )
        console.print(table)
    if report.error_summary:
        summary = ", ".join(f"{key}={value}" for key, value in sorted(report.error_summary.items()))
        console.print(f"[bold]Errors by category[/bold]: {summary}")


if __name__ == "__main__":
    app()
