"""CLI commands for ugcpipe using Typer and Rich.

Commands:
- run-job: Create and run a job from a pipeline file
- run-batch: Expand a batch-generate pipeline and run every child job
- resume: Resume an interrupted job at its persisted step
- status: Show one job with its step log
- list: List jobs in a table
- batches: List pipeline batches
- recover: Find and recover stuck jobs
- sweep-scratch: Delete stale scratch files

Pipeline files are YAML or JSON, either a bare list of steps or a mapping
with ``pipeline`` and optional ``name``, ``source_url`` and ``images`` keys.
"""

import asyncio
import logging
import uuid
from pathlib import Path
from typing import Optional

import typer
import yaml
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ugcpipe import validate_dependencies
from ugcpipe.config import settings
from ugcpipe.db import init_database
from ugcpipe.db.repository import PipelineStore
from ugcpipe.errors import ConfigError
from ugcpipe.orchestrator import pipeline as engine_ops
from ugcpipe.orchestrator.recovery import find_stuck_jobs, is_stuck
from ugcpipe.orchestrator.state import (
    BATCH_COMPLETED,
    BATCH_PARTIAL,
    BATCH_PENDING,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_PROCESSING,
    JOB_QUEUED,
)
from ugcpipe.pipeline.batch import create_pipeline_batch
from ugcpipe.schemas.pipeline import BatchImage, JobSpec, parse_pipeline
from ugcpipe.services.media_staging import sweep_scratch
from ugcpipe.services.resolver import describe_source

app = typer.Typer(name="ugcpipe", help="UGC video pipeline execution engine")
console = Console()


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging")):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_pipeline_file(path: Path) -> dict:
    """Read a pipeline file into ``{"pipeline": [...], ...}``."""
    if not path.is_file():
        console.print(f"[red]Error:[/red] Pipeline file not found: {path}")
        raise typer.Exit(code=1)
    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as e:
        console.print(f"[red]Error:[/red] Could not parse {path}: {e}")
        raise typer.Exit(code=1)

    if isinstance(data, list):
        data = {"pipeline": data}
    if not isinstance(data, dict) or "pipeline" not in data:
        console.print(f"[red]Error:[/red] {path} must contain a list of steps or a 'pipeline' key")
        raise typer.Exit(code=1)
    try:
        data["pipeline"] = parse_pipeline(data["pipeline"])
    except ValidationError as e:
        console.print(f"[red]Error:[/red] Invalid pipeline in {path}:\n{e}")
        raise typer.Exit(code=1)
    return data


def _parse_uuid(value: str, what: str = "job") -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        console.print(f"[red]Error:[/red] Invalid {what} UUID: {value}")
        raise typer.Exit(code=1)


def _require_dependencies() -> None:
    try:
        validate_dependencies()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {str(e)}")
        raise typer.Exit(code=1)


# ---------------------------------------------------------------------------
# run-job / resume
# ---------------------------------------------------------------------------

@app.command("run-job")
def run_job(
    pipeline_file: Path = typer.Argument(..., help="YAML/JSON pipeline file"),
    source: Optional[str] = typer.Option(None, "--source", "-s", help="Source video URL (TikTok, Instagram or direct)"),
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Job name"),
):
    """Create a job from a pipeline file and run it to completion."""
    _require_dependencies()
    data = _load_pipeline_file(pipeline_file)
    asyncio.run(_run_job_async(data, source or data.get("source_url"), name or data.get("name")))


async def _run_job_async(data: dict, source_url: Optional[str], name: Optional[str]):
    await init_database()
    source = describe_source(source_url) if source_url else None
    job = await PipelineStore().create_job(JobSpec(pipeline=data["pipeline"], source=source, name=name))
    console.print(f"[green]Created job:[/green] {job.id} ({job.total_steps} enabled steps)")
    console.print()

    try:
        with console.status("[bold green]Starting pipeline...") as status:
            def callback_wrapper(msg: str):
                status.update(f"[bold green]{msg}")

            job = await engine_ops.run_job(job.id, progress_callback=callback_wrapper)
    except KeyboardInterrupt:
        console.print()
        console.print("[yellow]Interrupted. The job can be resumed with:[/yellow]")
        console.print(f"  ugcpipe resume {job.id}")
        console.print(
            f"[dim](once it has been idle for {settings.recovery.stuck_threshold_minutes} minutes)[/dim]"
        )
        raise typer.Exit(code=130)

    _print_outcome(job)


@app.command()
def resume(
    job_id: str = typer.Argument(..., help="Job UUID to resume"),
):
    """Resume an interrupted job at its last persisted step."""
    _require_dependencies()
    asyncio.run(_resume_async(job_id))


async def _resume_async(job_id_str: str):
    job_uuid = _parse_uuid(job_id_str)
    await init_database()

    store = PipelineStore()
    job = await store.get_job(job_uuid)
    if job is None:
        console.print(f"[red]Error:[/red] Job not found: {job_uuid}")
        raise typer.Exit(code=1)
    if job.status == JOB_COMPLETED:
        console.print("[green]Job already complete![/green]")
        console.print(f"[green]Output:[/green] {job.output_url}")
        return
    if job.status != JOB_PROCESSING:
        console.print(f"[red]Error:[/red] Job status '{job.status}' cannot be resumed")
        raise typer.Exit(code=1)
    if not await is_stuck(store, job.id):
        console.print("[red]Error:[/red] Job is still making progress; another worker owns it")
        raise typer.Exit(code=1)

    console.print(f"[yellow]Resuming job:[/yellow] {job.id} at step {len(job.step_results) + 1}/{job.total_steps}")
    with console.status("[bold green]Resuming pipeline...") as status:
        def callback_wrapper(msg: str):
            status.update(f"[bold green]{msg}")

        job = await engine_ops.resume_job(job.id, progress_callback=callback_wrapper)
    _print_outcome(job)


def _print_outcome(job) -> None:
    if job.status == JOB_COMPLETED:
        console.print("[green]✓[/green] Pipeline complete!")
        console.print(f"[green]Output:[/green] {job.output_url}")
        return
    console.print(f"[red]✗ Pipeline failed:[/red] {job.error}")
    if job.step_results:
        console.print(f"[yellow]Last published step:[/yellow] {job.step_results[-1].output_url}")
    raise typer.Exit(code=1)


# ---------------------------------------------------------------------------
# run-batch
# ---------------------------------------------------------------------------

@app.command("run-batch")
def run_batch(
    pipeline_file: Path = typer.Argument(..., help="YAML/JSON pipeline with a batch-generate step"),
    source: Optional[str] = typer.Option(None, "--source", "-s", help="Shared source video URL"),
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Batch name"),
):
    """Expand a batch-generate pipeline into one job per image and run them concurrently."""
    _require_dependencies()
    data = _load_pipeline_file(pipeline_file)
    asyncio.run(_run_batch_async(
        data,
        source or data.get("source_url"),
        name or data.get("name") or pipeline_file.stem,
    ))


async def _run_batch_async(data: dict, source_url: Optional[str], name: str):
    await init_database()
    store = PipelineStore()
    images = [BatchImage.model_validate(i) for i in data["images"]] if data.get("images") else None
    source = describe_source(source_url) if source_url else None
    try:
        batch, jobs = await create_pipeline_batch(store, name, data["pipeline"], source=source, images=images)
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {str(e)}")
        raise typer.Exit(code=1)

    console.print(f"[green]Created batch:[/green] {batch.id} with {len(jobs)} job(s)")
    with console.status(f"[bold green]Running {len(jobs)} job(s)..."):
        batch = await engine_ops.run_pipeline_batch(batch.id)
    if batch is None:
        console.print("[red]Error:[/red] Batch disappeared while running")
        raise typer.Exit(code=1)

    await _print_batch_jobs(store, batch.id)
    color = _get_status_color(batch.status)
    console.print(
        f"Batch [{color}]{batch.status}[/{color}]: "
        f"{batch.completed_jobs} completed, {batch.failed_jobs} failed of {batch.total_jobs}"
    )
    if batch.status != BATCH_COMPLETED:
        raise typer.Exit(code=1)


async def _print_batch_jobs(store: PipelineStore, batch_id: uuid.UUID) -> None:
    table = Table(show_header=True, header_style="bold blue")
    table.add_column("Job", style="dim")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Output / Error")
    for job in await store.list_jobs_by_batch(batch_id):
        color = _get_status_color(job.status)
        detail = job.output_url if job.status == JOB_COMPLETED else (job.error or job.label or "")
        table.add_row(str(job.id)[:8] + "...", job.name or "", f"[{color}]{job.status}[/{color}]", detail)
    console.print(table)


# ---------------------------------------------------------------------------
# status / list / batches
# ---------------------------------------------------------------------------

@app.command()
def status(
    job_id: str = typer.Argument(..., help="Job UUID"),
):
    """Show detailed job status and its step log."""
    asyncio.run(_status_async(job_id))


async def _status_async(job_id_str: str):
    job_uuid = _parse_uuid(job_id_str)
    await init_database()

    job = await PipelineStore().get_job(job_uuid)
    if job is None:
        console.print(f"[red]Error:[/red] Job not found: {job_uuid}")
        raise typer.Exit(code=1)

    status_color = _get_status_color(job.status)
    info_lines = [
        f"[bold]ID:[/bold] {job.id}",
        f"[bold]Name:[/bold] {job.name or '-'}",
        f"[bold]Status:[/bold] [{status_color}]{job.status}[/{status_color}]",
        f"[bold]Progress:[/bold] {job.current_step}/{job.total_steps}",
        f"[bold]Label:[/bold] {job.label or '-'}",
    ]
    if job.source:
        info_lines.append(f"[bold]Source:[/bold] {job.source.kind} {job.source.url}")
    if job.batch_id:
        info_lines.append(f"[bold]Batch:[/bold] {job.batch_id}")
    if job.pending_request:
        info_lines.append(
            f"[bold]Pending request:[/bold] {job.pending_request.endpoint} {job.pending_request.request_id}"
        )
    if job.created_at:
        info_lines.append(f"[bold]Created:[/bold] {job.created_at.strftime('%Y-%m-%d %H:%M:%S')}")
    if job.updated_at:
        info_lines.append(f"[bold]Updated:[/bold] {job.updated_at.strftime('%Y-%m-%d %H:%M:%S')}")
    if job.status == JOB_COMPLETED and job.output_url:
        info_lines.append(f"[bold]Output:[/bold] [green]{job.output_url}[/green]")
    if job.status == JOB_FAILED and job.error:
        info_lines.append(f"[bold]Error:[/bold] [red]{job.error}[/red]")

    console.print(Panel("\n".join(info_lines), title="[bold]Job Status[/bold]", border_style="blue"))

    if job.step_results:
        table = Table(show_header=True, header_style="bold blue")
        table.add_column("#")
        table.add_column("Step")
        table.add_column("Label")
        table.add_column("Output")
        for n, result in enumerate(job.step_results, start=1):
            table.add_row(str(n), result.step_id, result.label, result.output_url)
        console.print(table)


@app.command(name="list")
def list_jobs(
    limit: int = typer.Option(50, "--limit", "-l"),
    status_filter: Optional[str] = typer.Option(None, "--status", help="Only jobs in this status"),
):
    """List jobs, newest first."""
    asyncio.run(_list_async(limit, status_filter))


async def _list_async(limit: int, status_filter: Optional[str]):
    await init_database()
    jobs = await PipelineStore().list_jobs(limit=limit, status=status_filter)
    if not jobs:
        console.print("[yellow]No jobs found[/yellow]")
        return

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("ID", style="dim")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Progress")
    table.add_column("Created")
    for job in jobs:
        color = _get_status_color(job.status)
        created = job.created_at.strftime("%Y-%m-%d %H:%M") if job.created_at else ""
        table.add_row(
            str(job.id)[:8] + "...",
            (job.name or "")[:40],
            f"[{color}]{job.status}[/{color}]",
            f"{job.current_step}/{job.total_steps}",
            created,
        )
    console.print(table)


@app.command()
def batches(limit: int = typer.Option(50, "--limit", "-l")):
    """List pipeline batches."""
    asyncio.run(_batches_async(limit))


async def _batches_async(limit: int):
    await init_database()
    rows = await PipelineStore().list_batches(limit=limit)
    if not rows:
        console.print("[yellow]No batches found[/yellow]")
        return

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("ID", style="dim")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Completed")
    table.add_column("Failed")
    table.add_column("Total")
    for batch in rows:
        color = _get_status_color(batch.status)
        table.add_row(
            str(batch.id)[:8] + "...",
            batch.name[:40],
            f"[{color}]{batch.status}[/{color}]",
            str(batch.completed_jobs),
            str(batch.failed_jobs),
            str(batch.total_jobs),
        )
    console.print(table)


# ---------------------------------------------------------------------------
# recover / sweep-scratch
# ---------------------------------------------------------------------------

@app.command()
def recover(
    threshold: Optional[int] = typer.Option(
        None, "--threshold", "-t", help="Minutes without progress before a job counts as stuck",
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Only list stuck jobs"),
):
    """Recover jobs stuck in processing (resume via stored request handle or fail)."""
    asyncio.run(_recover_async(threshold, dry_run))


async def _recover_async(threshold: Optional[int], dry_run: bool):
    await init_database()
    minutes = threshold if threshold is not None else settings.recovery.stuck_threshold_minutes
    if dry_run:
        stuck = await find_stuck_jobs(PipelineStore(), minutes)
        if not stuck:
            console.print("[green]No stuck jobs[/green]")
        for job in stuck:
            handle = job.pending_request.request_id if job.pending_request else "no handle"
            console.print(f"  {job.id}  step {job.current_step}/{job.total_steps}  {handle}")
        return

    with console.status(f"[bold green]Recovering jobs stuck > {minutes} min..."):
        results = await engine_ops.recover(minutes)
    if not results:
        console.print("[green]No stuck jobs[/green]")
        return

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("Job", style="dim")
    table.add_column("Action")
    table.add_column("Status")
    table.add_column("Detail")
    for r in results:
        color = _get_status_color(r.status or "")
        table.add_row(str(r.job_id), r.action, f"[{color}]{r.status}[/{color}]", r.detail or "")
    console.print(table)


@app.command("sweep-scratch")
def sweep_scratch_command(
    max_age_hours: Optional[float] = typer.Option(None, "--max-age-hours", help="Delete files older than this"),
):
    """Delete scratch files left behind by crashed runs."""
    max_age = max_age_hours * 3600 if max_age_hours is not None else None
    removed = sweep_scratch(settings.storage.scratch_dir, max_age)
    console.print(f"[green]Removed {removed} scratch file(s)[/green]")


def _get_status_color(status: str) -> str:
    """Get Rich color for a job or batch status.

    Color coding:
    - completed: green
    - failed: red
    - processing / partial: yellow
    - queued / pending: dim
    """
    if status == JOB_COMPLETED:
        return "green"
    elif status == JOB_FAILED:
        return "red"
    elif status in (JOB_PROCESSING, BATCH_PARTIAL):
        return "yellow"
    elif status in (JOB_QUEUED, BATCH_PENDING):
        return "dim"
    else:
        return "white"
