"""threatscribe CLI — the presentation layer.

Commands:
    threatscribe run       — Submit a research job and follow it live
    threatscribe show      — Show a job's status and sections
    threatscribe history   — List past jobs, newest first
    threatscribe cancel    — Cancel a job
    threatscribe resume    — Start a new run of a cancelled/failed job and follow it
    threatscribe health    — Store and generator status
    threatscribe version   — Show version
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from threatscribe.utils import setup_logging

# Initialize logging on import
setup_logging()

app = typer.Typer(
    name="threatscribe",
    help="🛡 threatscribe — concurrent cybersecurity research report generator",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
console = Console()

_STATUS_STYLE = {
    "submitted": "cyan",
    "running": "yellow",
    "completed": "green",
    "error": "red",
    "cancelled": "magenta",
    "paused": "blue",
}


async def _open_orchestrator():
    """Connect the configured store and build an orchestrator around it."""
    from threatscribe.jobs import BusRegistry, JobOrchestrator
    from threatscribe.research import build_store
    from threatscribe.tools.openrouter import build_generator

    store = build_store()
    await store.connect()
    return JobOrchestrator(store, BusRegistry(), build_generator())


def _status(value: str) -> str:
    return f"[{_STATUS_STYLE.get(value, 'white')}]{value}[/]"


def _emit_report(report: str, report_path: Path | None) -> None:
    if report_path is not None:
        report_path.write_text(report, encoding="utf-8")
        console.print(f"[dim]Report written to {report_path}[/]")
    else:
        console.print(Markdown(report))


async def _follow(orchestrator, job_id: str, report_path: Path | None) -> None:
    """Render live events, then the outcome once the job's task has finished.

    A fast job can finish before the stream attaches; the outcome is then
    read back from the store instead of the terminal event.
    """
    from threatscribe.models import EventKind, JobStatus
    from threatscribe.research import build_full_report

    finished = False
    async for event in orchestrator.stream(job_id):
        kind = event.kind
        title = event.section_title or ""
        if kind == EventKind.CONNECTED:
            console.print(f"[dim]Following job {job_id}[/]")
        elif kind in (EventKind.STATUS_UPDATE, EventKind.RESUMED):
            console.print(f"[cyan]● {event.text}[/]")
        elif kind == EventKind.OUTLINE:
            console.print(Panel(Markdown(event.text), title="[bold cyan]Outline[/]", border_style="cyan"))
        elif kind == EventKind.WORKER_START:
            console.print(f"  [dim]→ {title}[/]")
        elif kind == EventKind.WORKER_ERROR:
            console.print(f"  [yellow]⚠ {event.text}[/]")
        elif kind == EventKind.WORKER_COMPLETE:
            marker = " [yellow](fallback)[/]" if event.is_fallback else ""
            console.print(f"  [green]✓ {title}[/]{marker}")
        elif kind == EventKind.JOB_COMPLETE:
            finished = True
            console.print(f"\n[bold green]✅ {event.text}[/]")
            if event.full_report:
                _emit_report(event.full_report, report_path)
        elif kind == EventKind.ERROR:
            finished = True
            console.print(f"\n[bold red]✗ {event.text}[/]")
        elif kind == EventKind.CANCELLED:
            finished = True
            console.print(f"\n[magenta]■ {event.text}[/]")

    job = await orchestrator.wait(job_id)
    if finished:
        return
    if job.status == JobStatus.COMPLETED:
        sections = await orchestrator.get_sections(job_id)
        console.print("\n[bold green]✅ Research completed successfully[/]")
        _emit_report(build_full_report(job, sections, orchestrator.descriptors), report_path)
    else:
        detail = f": {job.error}" if job.error else ""
        console.print(f"\nJob {job_id} {_status(job.status.value)}{detail}")


# ── threatscribe run ──────────────────────────────────────────


@app.command()
def run(
    topic: str = typer.Argument(..., help="Cybersecurity research topic"),
    depth: int = typer.Option(3, "--depth", "-d", help="Research depth, 1 (basic) to 5 (expert)"),
    output: Path = typer.Option(None, "--output", "-o", help="Write the final report to this file"),
):
    """🔎 Submit a research job and follow it until it finishes."""
    asyncio.run(_run(topic, depth, output))


async def _run(topic: str, depth: int, output: Path | None):
    from threatscribe.jobs import InvalidJobRequest

    orchestrator = await _open_orchestrator()
    try:
        if orchestrator.generator is None:
            console.print("[yellow]⚠ Generator disabled (no API key): fallback content only[/]")
        try:
            job = await orchestrator.submit(topic, depth)
        except InvalidJobRequest as exc:
            console.print(f"[red]Invalid request:[/] {exc}")
            raise typer.Exit(code=2)

        console.print(f"[bold]Job[/] {job.id} {_status(job.status.value)}  depth {job.depth}/5")
        await _follow(orchestrator, job.id, output)
    finally:
        await orchestrator.shutdown()


# ── threatscribe show ─────────────────────────────────────────


@app.command()
def show(
    job_id: str = typer.Argument(..., help="Job ID"),
    full: bool = typer.Option(False, "--full", "-f", help="Print full section content"),
    all_runs: bool = typer.Option(False, "--all-runs", help="Include sections from earlier runs"),
):
    """📄 Show a job and its sections."""
    asyncio.run(_show(job_id, full=full, all_runs=all_runs))


async def _show(job_id: str, full: bool = False, all_runs: bool = False):
    from threatscribe.jobs import JobNotFound

    orchestrator = await _open_orchestrator()
    try:
        try:
            job = await orchestrator.get_job(job_id)
        except JobNotFound as exc:
            console.print(f"[red]{exc}[/]")
            raise typer.Exit(code=1)
        sections = await orchestrator.get_sections(job_id, all_runs=all_runs)

        info = Table(show_header=False, box=None, padding=(0, 2))
        info.add_column("Field", style="cyan")
        info.add_column("Value", style="white")
        info.add_row("Topic", job.topic)
        info.add_row("Status", _status(job.status.value))
        info.add_row("Depth", f"{job.depth}/5")
        info.add_row("Run", str(job.run_number))
        info.add_row("Created", job.created_at.strftime("%Y-%m-%d %H:%M:%S"))
        if job.completed_at:
            info.add_row("Finished", job.completed_at.strftime("%Y-%m-%d %H:%M:%S"))
        if job.error:
            info.add_row("Error", f"[red]{job.error}[/]")
        console.print(Panel(info, title=f"[bold cyan]Job {job.id}[/]", border_style="cyan"))

        if not sections:
            console.print("[dim]No sections stored.[/]")
            return

        if full:
            for s in sections:
                suffix = " (fallback)" if s.is_fallback else ""
                console.print(Panel(Markdown(s.content), title=f"{s.title}{suffix}", border_style="dim"))
            return

        table = Table(title="Sections", show_lines=True)
        table.add_column("Run", style="dim", width=4)
        table.add_column("Section", style="cyan")
        table.add_column("Fallback", width=8)
        table.add_column("Preview", style="white")
        for s in sections:
            table.add_row(str(s.run_number), s.title, "yes" if s.is_fallback else "", s.preview)
        console.print(table)
    finally:
        await orchestrator.shutdown()


# ── threatscribe history ──────────────────────────────────────


@app.command()
def history(
    limit: int = typer.Option(20, "--limit", "-n", help="Number of jobs to show"),
):
    """📋 List research jobs, newest first."""
    asyncio.run(_history(limit))


async def _history(limit: int):
    orchestrator = await _open_orchestrator()
    try:
        jobs = await orchestrator.get_history(limit)
        if not jobs:
            console.print("[dim]No jobs yet. Try: threatscribe run \"Ransomware trends\"[/]")
            return

        table = Table(title="Research Jobs")
        table.add_column("ID", style="dim")
        table.add_column("Topic", style="white")
        table.add_column("Depth", justify="right")
        table.add_column("Status")
        table.add_column("Run", justify="right")
        table.add_column("Created", style="dim")
        for job in jobs:
            table.add_row(
                job.id,
                job.topic[:60],
                str(job.depth),
                _status(job.status.value),
                str(job.run_number),
                job.created_at.strftime("%Y-%m-%d %H:%M"),
            )
        console.print(table)
    finally:
        await orchestrator.shutdown()


# ── threatscribe cancel / resume ──────────────────────────────


@app.command()
def cancel(job_id: str = typer.Argument(..., help="Job ID")):
    """■ Cancel a job."""
    asyncio.run(_cancel(job_id))


async def _cancel(job_id: str):
    from threatscribe.jobs import JobNotFound

    orchestrator = await _open_orchestrator()
    try:
        try:
            job = await orchestrator.cancel(job_id)
        except JobNotFound as exc:
            console.print(f"[red]{exc}[/]")
            raise typer.Exit(code=1)
        console.print(f"Job {job.id} {_status(job.status.value)}")
    finally:
        await orchestrator.shutdown()


@app.command()
def resume(
    job_id: str = typer.Argument(..., help="Job ID"),
    output: Path = typer.Option(None, "--output", "-o", help="Write the final report to this file"),
):
    """▶ Start a fresh run of a cancelled or failed job and follow it."""
    asyncio.run(_resume(job_id, output))


async def _resume(job_id: str, output: Path | None):
    from threatscribe.jobs import InvalidTransition, JobNotFound

    orchestrator = await _open_orchestrator()
    try:
        try:
            job = await orchestrator.resume(job_id)
        except (JobNotFound, InvalidTransition) as exc:
            console.print(f"[red]{exc}[/]")
            raise typer.Exit(code=1)
        console.print(f"[bold]Job[/] {job.id} run {job.run_number} {_status(job.status.value)}")
        await _follow(orchestrator, job.id, output)
    finally:
        await orchestrator.shutdown()


# ── threatscribe health ───────────────────────────────────────


@app.command()
def health():
    """🩺 Store and content generator status."""
    asyncio.run(_health())


async def _health():
    from threatscribe.config import settings
    from threatscribe.research import StoreError, build_store
    from threatscribe.tools.openrouter import build_generator

    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Component", style="cyan")
    table.add_column("Status", style="white")

    store = build_store()
    try:
        await store.connect()
        jobs = await store.get_job_history(limit=1)
        table.add_row("Store", f"✅ {store.backend} ({'jobs present' if jobs else 'empty'})")
    except StoreError as exc:
        table.add_row("Store", f"[red]⚠ {store.backend}: {exc}[/]")
    finally:
        await store.close()

    generator = build_generator()
    if generator is None:
        table.add_row("Generator", "[yellow]disabled (no API key) — fallback content only[/]")
    else:
        try:
            status = await generator.health()
        finally:
            await generator.close()
        if status.get("status") == "ok":
            table.add_row("Generator", f"✅ {settings.openrouter_model}")
        else:
            table.add_row("Generator", f"[red]⚠ {status.get('error', 'unreachable')}[/]")

    console.print(Panel(table, title="[bold cyan]🩺 threatscribe health[/]", border_style="cyan"))


# ── threatscribe version ──────────────────────────────────────


@app.command()
def version():
    """📦 Show threatscribe version."""
    from threatscribe import __version__
    console.print(f"[bold cyan]🛡 threatscribe[/] v{__version__}")


# ── Entry point ───────────────────────────────────────────────

if __name__ == "__main__":
    app()
