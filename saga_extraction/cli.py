"""Command-line interface for extraction jobs, review, and materialization."""

from __future__ import annotations

import time
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.progress import BarColumn, Progress, TextColumn, TimeElapsedColumn
from rich.table import Table

from saga_extraction.curation.batch_materializer import BatchMaterializer
from saga_extraction.curation.review_service import ReviewService
from saga_extraction.errors import ExtractionError
from saga_extraction.pipeline.job_manager import JobManager, JobOptions
from saga_extraction.storage.candidate_store import SqlCandidateStore, open_store
from saga_extraction.storage.schemas import (
    CandidateFilters,
    CandidateStatus,
    Disposition,
    EntityType,
    ExtractedEntityCandidate,
    ReviewDecision,
    SourceType,
)
from saga_extraction.utils.config import Config, load_config
from saga_extraction.utils.logging_setup import setup_logging

app = typer.Typer(help="Extract, review, and materialize saga entities from text.")

console = Console(width=120)


def _load(config_path: Path, verbose: bool = False) -> Config:
    cfg = load_config(config_path)
    setup_logging(cfg.logging, verbose=verbose)
    return cfg


def _read_text(path: Path) -> str:
    if not path.exists():
        console.print(f"[red]File not found: {path}[/red]")
        raise typer.Exit(code=1)
    return path.read_text(encoding="utf-8")


def _fail(exc: Exception) -> None:
    console.print(f"[red]{type(exc).__name__}: {exc}[/red]")
    raise typer.Exit(code=1)


def _render_candidate_table(
    candidates: List[ExtractedEntityCandidate], *, title: str, total_hint: str | None = None
) -> None:
    table_title = title if total_hint is None else f"{title} ({total_hint})"
    table = Table(title=table_title)
    table.add_column("ID", style="magenta", justify="right")
    table.add_column("Name", style="cyan")
    table.add_column("Type")
    table.add_column("Conf", justify="right")
    table.add_column("Level")
    table.add_column("Status")
    table.add_column("Chunk", justify="right")
    table.add_column("Aliases")

    for candidate in candidates:
        table.add_row(
            str(candidate.id),
            candidate.canonical_name,
            candidate.entity_type.value,
            f"{candidate.confidence_score:.1f}",
            candidate.confidence_level,
            candidate.status.value,
            str(candidate.chunk_index),
            ", ".join(candidate.alternative_names[:3]),
        )

    console.print(table)


@app.command("estimate")
def estimate(
    file: Path = typer.Argument(..., help="Text file to estimate."),
    chunk_size: Optional[int] = typer.Option(None, help="Chunk size in characters."),
    provider: Optional[str] = typer.Option(None, help="LLM provider (openai/anthropic)."),
    model: Optional[str] = typer.Option(None, help="Model name."),
    config: Path = typer.Option(Path("config/config.yaml"), help="Path to config file."),
) -> None:
    """Show chunk, token, and cost estimates without running extraction."""
    cfg = _load(config)
    store = open_store(cfg.database)
    try:
        manager = JobManager(store, config=cfg)
        result = manager.estimate(
            _read_text(file), JobOptions(chunk_size=chunk_size, provider=provider, model=model)
        )
    except ExtractionError as exc:
        _fail(exc)
    finally:
        store.dispose()

    console.print("[bold]Extraction estimate[/bold]")
    console.print(f"Provider/model: {result.provider} / {result.model}")
    console.print(f"Chunks: {result.chunks}")
    console.print(f"Tokens: {result.tokens:,}")
    console.print(f"Cost: ${result.cost_usd}")
    console.print(f"Expected entities: ~{result.estimated_entities}")
    console.print(f"Expected time: ~{result.processing_time_seconds}s")


@app.command("run")
def run(
    file: Path = typer.Argument(..., help="Text file to extract entities from."),
    collection: int = typer.Option(..., help="Target collection id."),
    user: int = typer.Option(..., help="Requesting user id."),
    chunk_size: Optional[int] = typer.Option(None, help="Chunk size in characters."),
    provider: Optional[str] = typer.Option(None, help="LLM provider (openai/anthropic)."),
    model: Optional[str] = typer.Option(None, help="Model name."),
    workers: Optional[int] = typer.Option(None, help="Concurrent provider calls.", min=1),
    poll_interval: float = typer.Option(1.0, help="Seconds between progress polls."),
    config: Path = typer.Option(Path("config/config.yaml"), help="Path to config file."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
) -> None:
    """Start an extraction job and follow its progress until it finishes."""
    cfg = _load(config, verbose)
    store = open_store(cfg.database)
    manager = JobManager(store, config=cfg)
    options = JobOptions(
        chunk_size=chunk_size,
        provider=provider,
        model=model,
        max_workers=workers,
        source_type=SourceType.FILE_UPLOAD,
        metadata={"source_file": str(file)},
    )

    try:
        started = manager.start(_read_text(file), collection, user, options)
    except ExtractionError as exc:
        store.dispose()
        _fail(exc)

    console.print(
        f"Job [bold]{started.job_id}[/bold]: {started.estimate.chunks} chunks, "
        f"~{started.estimate.tokens:,} tokens, est. ${started.estimate.cost_usd}"
    )

    try:
        with Progress(
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("{task.completed}/{task.total} chunks"),
            TimeElapsedColumn(),
            console=console,
        ) as progress:
            task = progress.add_task("Extracting", total=started.estimate.chunks)
            while True:
                snapshot = manager.get_progress(started.job_id)
                progress.update(
                    task,
                    completed=snapshot.processed_chunks,
                    description=f"{snapshot.status.value} ({snapshot.candidates_found} candidates)",
                )
                if snapshot.status.is_terminal:
                    break
                time.sleep(poll_interval)
    except KeyboardInterrupt:
        manager.cancel(started.job_id)
        console.print("[yellow]Cancellation requested.[/yellow]")

    final = manager.wait(started.job_id)
    store.dispose()

    colour = "green" if final.status.value == "completed" else "red"
    console.print(f"[{colour}]Job {final.job_id} {final.status.value}[/{colour}]")
    console.print(
        f"Chunks: {final.processed_chunks}/{final.total_chunks} ({final.progress_percent}%) "
        f"| Candidates: {final.candidates_found} | Tokens: {final.actual_tokens:,} "
        f"| Cost: ${final.actual_cost_usd}"
    )
    if final.error_message:
        console.print(f"[red]Error: {final.error_message}[/red]")
        raise typer.Exit(code=1)


@app.command("status")
def status(
    job_id: int = typer.Argument(..., help="Job id."),
    config: Path = typer.Option(Path("config/config.yaml"), help="Path to config file."),
) -> None:
    """Show a job's lifecycle state, accounting, and review breakdown."""
    cfg = _load(config)
    store = open_store(cfg.database)
    try:
        job = store.get_job(job_id)
        stats = ReviewService(store, cfg).job_statistics(job_id)
    except ExtractionError as exc:
        _fail(exc)
    finally:
        store.dispose()

    console.print(f"[bold]Job {job.id}[/bold] ({job.provider} / {job.model}): {job.status.value}")
    console.print(
        f"Chunks: {job.processed_chunks}/{job.total_chunks} ({job.progress_percent}%) "
        f"| Elapsed: {job.elapsed_seconds():.1f}s"
    )
    console.print(
        f"Tokens: {job.actual_tokens:,} (est. {job.estimated_tokens:,}) "
        f"| Cost: ${job.actual_cost_usd} (est. ${job.estimated_cost_usd})"
    )
    if job.cost_per_entity is not None:
        console.print(f"Cost per created entity: ${job.cost_per_entity}")
    console.print(
        f"Candidates: {stats.total_candidates} | pending={stats.pending} approved={stats.approved} "
        f"rejected={stats.rejected} duplicate={stats.duplicate} materialized={stats.materialized}"
    )
    if job.error_message:
        console.print(f"[red]Error: {job.error_message}[/red]")


@app.command("candidates")
def candidates(
    job_id: int = typer.Argument(..., help="Job id."),
    entity_type: Optional[str] = typer.Option(None, help="Filter by entity type."),
    status: Optional[str] = typer.Option(None, help="Filter by review status."),
    min_confidence: Optional[float] = typer.Option(None, help="Minimum confidence (0-100)."),
    search: Optional[str] = typer.Option(None, help="Substring of the canonical name."),
    page: int = typer.Option(1, help="Page number.", min=1),
    per_page: int = typer.Option(25, help="Rows per page.", min=1),
    config: Path = typer.Option(Path("config/config.yaml"), help="Path to config file."),
) -> None:
    """List a job's candidates, most confident first."""
    cfg = _load(config)
    store = open_store(cfg.database)
    try:
        filters = CandidateFilters(
            entity_type=EntityType(entity_type.lower()) if entity_type else None,
            status=CandidateStatus(status.lower()) if status else None,
            min_confidence=min_confidence,
            search=search,
        )
        result = ReviewService(store, cfg).list_candidates(
            job_id, page=page, per_page=per_page, filters=filters
        )
    except (ExtractionError, ValueError) as exc:
        _fail(exc)
    finally:
        store.dispose()

    if not result.candidates:
        console.print("[yellow]No candidates found.[/yellow]")
        return
    _render_candidate_table(
        result.candidates,
        title=f"Job {job_id} candidates",
        total_hint=f"page {result.page}/{result.total_pages}, {result.total_count} total",
    )


@app.command("review")
def review(
    candidate_ids: List[int] = typer.Argument(..., help="Candidate ids."),
    reject: bool = typer.Option(False, "--reject", help="Reject instead of approve."),
    user: int = typer.Option(..., help="Reviewer user id."),
    config: Path = typer.Option(Path("config/config.yaml"), help="Path to config file."),
) -> None:
    """Approve (default) or reject candidates."""
    cfg = _load(config)
    store = open_store(cfg.database)
    decision = ReviewDecision.REJECT if reject else ReviewDecision.APPROVE
    try:
        updated = ReviewService(store, cfg).review_candidates(candidate_ids, decision, user)
    except ExtractionError as exc:
        _fail(exc)
    finally:
        store.dispose()
    console.print(f"[green]{decision.target_status.value.title()} {updated} candidate(s).[/green]")


@app.command("duplicates")
def duplicates(
    candidate_id: int = typer.Argument(..., help="Candidate id."),
    config: Path = typer.Option(Path("config/config.yaml"), help="Path to config file."),
) -> None:
    """Show duplicate matches for a candidate."""
    cfg = _load(config)
    store = open_store(cfg.database)
    try:
        matches = ReviewService(store, cfg).get_duplicates(candidate_id)
    except ExtractionError as exc:
        _fail(exc)
    finally:
        store.dispose()

    if not matches:
        console.print("[yellow]No duplicate matches.[/yellow]")
        return

    table = Table(title=f"Duplicate matches for candidate {candidate_id}")
    table.add_column("Target", style="magenta")
    table.add_column("Name", style="cyan")
    table.add_column("Method")
    table.add_column("Similarity", justify="right")
    table.add_column("Confidence", justify="right")
    table.add_column("Disposition")
    for match in matches:
        target = (
            f"entity {match.existing_entity_id}"
            if match.existing_entity_id is not None
            else f"candidate {match.matched_candidate_id}"
        )
        table.add_row(
            target,
            match.matched_name,
            match.match_method.value,
            f"{match.similarity_score:.2f}",
            f"{match.confidence:.2f}",
            match.disposition.value,
        )
    console.print(table)


@app.command("resolve")
def resolve(
    candidate_id: int = typer.Argument(..., help="Candidate id."),
    entity_id: Optional[int] = typer.Option(None, help="Matched corpus entity id."),
    matched_candidate: Optional[int] = typer.Option(None, help="Matched candidate id (same job)."),
    disposition: str = typer.Option(
        ..., help="confirmed_duplicate / confirmed_unique / merged."
    ),
    user: Optional[int] = typer.Option(None, help="Reviewer user id."),
    config: Path = typer.Option(Path("config/config.yaml"), help="Path to config file."),
) -> None:
    """Record a disposition for one duplicate match."""
    cfg = _load(config)
    store = open_store(cfg.database)
    try:
        match = ReviewService(store, cfg).resolve_duplicate(
            candidate_id,
            entity_id,
            Disposition(disposition),
            matched_candidate_id=matched_candidate,
            reviewer_id=user,
        )
    except (ExtractionError, ValueError) as exc:
        _fail(exc)
    finally:
        store.dispose()
    console.print(f"[green]Match marked {match.disposition.value}.[/green]")


@app.command("materialize")
def materialize(
    job_id: int = typer.Argument(..., help="Completed job id."),
    candidate_ids: List[int] = typer.Argument(..., help="Approved candidate ids."),
    user: int = typer.Option(..., help="Reviewer user id."),
    config: Path = typer.Option(Path("config/config.yaml"), help="Path to config file."),
) -> None:
    """Create corpus entities from approved candidates (all or nothing)."""
    cfg = _load(config)
    store: SqlCandidateStore = open_store(cfg.database)
    try:
        result = BatchMaterializer(store, cfg).materialize(job_id, candidate_ids, user)
    except ExtractionError as exc:
        _fail(exc)
    finally:
        store.dispose()

    if not result.ok:
        console.print(f"[red]Rolled back: {result.error}[/red]")
        raise typer.Exit(code=1)
    console.print(
        f"[green]Created {len(result.created_entity_ids)} entities: "
        f"{', '.join(str(i) for i in result.created_entity_ids)}[/green]"
    )


@app.command("summary")
def summary(
    collection: int = typer.Argument(..., help="Target collection id."),
    config: Path = typer.Option(Path("config/config.yaml"), help="Path to config file."),
) -> None:
    """Show extraction totals for a collection."""
    cfg = _load(config)
    store = open_store(cfg.database)
    try:
        totals = store.collection_summary(collection)
    finally:
        store.dispose()

    console.print(f"[bold]Collection {collection}[/bold]")
    console.print(
        "Jobs: "
        + ", ".join(f"{status}={count}" for status, count in sorted(totals.jobs_by_status.items()))
        + f" (total {totals.total_jobs})"
    )
    console.print(
        f"Entities found: {totals.total_entities_found} | created: {totals.total_entities_created} "
        f"| acceptance: {totals.acceptance_rate}%"
    )
    console.print(f"Duplicates flagged: {totals.total_duplicates_found}")
    console.print(f"Total cost: ${totals.total_cost_usd}")


if __name__ == "__main__":
    app()
