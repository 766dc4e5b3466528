"""CLI entry point for the Codex supervisor.

Commands:
- codex-supervisor start: Start a Codex agent in a tmux session
- codex-supervisor status / jobs / sessions: Inspect jobs and sessions
- codex-supervisor send / control / attach: Steer a running agent
- codex-supervisor capture / output / watch: Read agent output
- codex-supervisor report: Token usage, file changes and detected issues
- codex-supervisor kill / delete / clean: Tear down jobs
- codex-supervisor claims / log / context / health: Coordination helpers
"""

from __future__ import annotations

import json
import logging
import sys
import time
from pathlib import Path
from typing import NoReturn

import click
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from codex_supervisor import __version__
from codex_supervisor.cli_ui.watch import JobWatcher
from codex_supervisor.config import load_config
from codex_supervisor.core.agent_log import generate_context_summary, read_agent_log
from codex_supervisor.core.jobs import JobManager, elapsed_ms
from codex_supervisor.core.models import Job, JobStatus
from codex_supervisor.core.utils import SupervisorError, strip_ansi_codes
from codex_supervisor.sessions.tmux import ALLOWED_CONTROL_KEYS

console = Console()

RETRY_DELAY = 2.0

STATUS_COLORS = {
    "running": "blue",
    "pending": "white",
    "completed": "green",
    "failed": "red",
    "cancelled": "yellow",
}


def get_manager() -> JobManager:
    """JobManager over the configured state directory."""
    return JobManager(load_config())


def fail(message: str) -> NoReturn:
    """Print an error and exit non-zero."""
    console.print(f"[red]Error:[/red] {escape(message)}")
    sys.exit(1)


def format_duration(ms: int) -> str:
    seconds = ms // 1000
    if seconds < 60:
        return f"{seconds}s"
    minutes, seconds = divmod(seconds, 60)
    if minutes < 60:
        return f"{minutes}m {seconds}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m"


def _preview(text: str, limit: int) -> str:
    text = " ".join(text.split())
    return text if len(text) <= limit else text[: limit - 3] + "..."


def _status_markup(status: JobStatus) -> str:
    color = STATUS_COLORS.get(status.value, "white")
    return f"[{color}]{status.value}[/{color}]"


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose: bool) -> None:
    """Codex Supervisor - run Codex agents in tmux and track them.

    State lives in $CODEX_SUPERVISOR_HOME (default ~/.codex-supervisor).
    """
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )


# --- start / steer ---


@main.command()
@click.argument("prompt", nargs=-1, required=True)
@click.option("--model", "-m", default=None, help="Model identifier (default from config)")
@click.option("--reasoning", "-r", default=None, help="Reasoning effort: low, medium, high, xhigh")
@click.option("--sandbox", "-s", default=None, help="Sandbox: read-only, workspace-write, danger-full-access")
@click.option("--dir", "-d", "cwd", type=click.Path(file_okay=False), default=None, help="Working directory")
@click.option("--claim", "-c", "claims", multiple=True, help="File pattern this agent will edit (repeatable)")
@click.option("--parent-session", default=None, help="Session id of the coordinating agent")
@click.option("--retry", type=click.IntRange(min=0), default=0, help="Retry this many times if the start fails")
def start(
    prompt: tuple[str, ...],
    model: str | None,
    reasoning: str | None,
    sandbox: str | None,
    cwd: str | None,
    claims: tuple[str, ...],
    parent_session: str | None,
    retry: int,
) -> None:
    """Start a Codex agent on PROMPT.

    Example:
        codex-supervisor start "Fix the flaky login test" -c "tests/auth/**"
    """
    manager = get_manager()
    if not manager.adapter.is_available():
        fail("tmux is required but not installed")

    for overlap in manager.claim_overlaps(claims):
        console.print(
            f"[yellow]Warning:[/yellow] '{escape(overlap.pattern)}' is claimed by job {overlap.job_id}"
        )

    text = " ".join(prompt)
    attempt = 0
    while True:
        job = manager.start_job(
            text,
            model=model,
            reasoning_effort=reasoning,
            sandbox=sandbox,
            cwd=cwd,
            claims=list(claims),
            parent_session_id=parent_session,
        )
        if job.status != JobStatus.FAILED or attempt >= retry:
            break
        attempt += 1
        console.print(f"[yellow]Attempt {attempt} failed:[/yellow] {escape(job.error or '')}. Retrying...")
        time.sleep(RETRY_DELAY)

    if job.status == JobStatus.FAILED:
        fail(f"Job {job.id} failed to start: {job.error}")

    console.print(f"[green]Job started:[/green] {job.id}")
    console.print(f"Model: {escape(job.model)} ({job.reasoning_effort})")
    console.print(f"Working dir: {escape(job.cwd)}")
    console.print(f"tmux session: {job.tmux_session}")
    if claims:
        console.print(f"Claims: {escape(', '.join(claims))}")
    console.print()
    console.print("[dim]Commands:[/dim]")
    console.print(f"  Capture output:  codex-supervisor capture {job.id}")
    console.print(f"  Send message:    codex-supervisor send {job.id} \"message\"")
    console.print(f"  Full report:     codex-supervisor report {job.id}")
    console.print(f"  Attach session:  {manager.adapter.get_attach_command(job.tmux_session)}")


@main.command()
@click.argument("job_id")
@click.argument("message", nargs=-1, required=True)
def send(job_id: str, message: tuple[str, ...]) -> None:
    """Send MESSAGE to a running agent."""
    manager = get_manager()
    if manager.send_to_job(job_id, " ".join(message)):
        console.print(f"Sent to {job_id}")
    else:
        fail(f"Could not send to job {job_id}")


@main.command()
@click.argument("job_id")
@click.argument("key", type=click.Choice(sorted(ALLOWED_CONTROL_KEYS)))
def control(job_id: str, key: str) -> None:
    """Send a control KEY (C-c, C-z, Enter, Escape) to a running agent."""
    manager = get_manager()
    if manager.send_control_to_job(job_id, key):
        console.print(f"Sent {key} to {job_id}")
    else:
        fail(f"Could not send {key} to job {job_id}")


@main.command()
@click.argument("job_id")
def attach(job_id: str) -> None:
    """Print the command to attach to a job's tmux session."""
    command = get_manager().get_attach_command(job_id)
    if command is None:
        fail(f"Job {job_id} not found or has no tmux session")
    click.echo(command)


# --- output ---


@main.command()
@click.argument("job_id")
@click.option("--lines", "-n", type=click.IntRange(min=1), default=50, help="Number of lines")
@click.option("--strip-ansi", is_flag=True, help="Remove ANSI escape codes from the output")
def capture(job_id: str, lines: int, strip_ansi: bool) -> None:
    """Show the last lines of a job's output."""
    output = get_manager().get_job_output(job_id, lines=lines)
    if output is None:
        fail(f"No output for job {job_id}")
    click.echo(strip_ansi_codes(output) if strip_ansi else output)


@main.command()
@click.argument("job_id")
@click.option("--strip-ansi", is_flag=True, help="Remove ANSI escape codes from the output")
def output(job_id: str, strip_ansi: bool) -> None:
    """Show a job's full output."""
    text = get_manager().get_job_full_output(job_id)
    if text is None:
        fail(f"No output for job {job_id}")
    click.echo(strip_ansi_codes(text) if strip_ansi else text)


@main.command()
@click.argument("job_id")
def watch(job_id: str) -> None:
    """Stream a job's new output until it finishes (Ctrl+C to stop)."""
    manager = get_manager()
    try:
        job = manager.get_job(job_id)
    except SupervisorError as e:
        fail(str(e))
    if not job.tmux_session:
        fail(f"Job {job_id} not found or has no tmux session")

    console.print(f"[dim]Watching {job.tmux_session}... (Ctrl+C to stop)[/dim]")
    console.print(f"[dim]For interactive mode: {manager.adapter.get_attach_command(job.tmux_session)}[/dim]")
    JobWatcher(manager, console=console).watch(job_id)


# --- inspection ---


@main.command()
@click.argument("job_id")
def status(job_id: str) -> None:
    """Refresh and show one job's status."""
    job = get_manager().refresh_job_status(job_id)
    if job is None:
        fail(f"Job {job_id} not found")

    lines = [
        f"[bold]Status:[/] {_status_markup(job.status)}",
        f"[bold]Model:[/] {escape(job.model)} ({job.reasoning_effort})",
        f"[bold]Sandbox:[/] {job.sandbox}",
        f"[bold]Created:[/] {job.created_at.isoformat()}",
    ]
    if job.started_at:
        lines.append(f"[bold]Started:[/] {job.started_at.isoformat()}")
    if job.completed_at:
        lines.append(f"[bold]Completed:[/] {job.completed_at.isoformat()}")
    if job.tmux_session:
        lines.append(f"[bold]tmux session:[/] {job.tmux_session}")
    if job.error:
        # SECURITY: error text comes from agent output
        lines.append(f"[bold]Error:[/] {escape(job.error)}")

    console.print(Panel("\n".join(lines), title=f"Job {job.id}"))
    if job.status == JobStatus.FAILED:
        sys.exit(1)


def _jobs_table(jobs: list[Job]) -> Table:
    table = Table(title="Jobs")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Status", no_wrap=True)
    table.add_column("Elapsed", no_wrap=True)
    table.add_column("Effort")
    table.add_column("Prompt")

    for job in jobs:
        table.add_row(
            job.id,
            _status_markup(job.status),
            format_duration(elapsed_ms(job)),
            job.reasoning_effort,
            escape(_preview(job.prompt, 50)),
        )
    return table


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Machine-readable output")
@click.option("--limit", "-n", type=click.IntRange(min=1), default=None, help="Maximum jobs to show")
@click.option("--all", "show_all", is_flag=True, help="Show every job")
def jobs(as_json: bool, limit: int | None, show_all: bool) -> None:
    """List jobs, running first."""
    manager = get_manager()
    manager.refresh_running_jobs()
    effective = None if show_all else (limit or manager.config.jobs_list_limit)

    if as_json:
        click.echo(json.dumps(manager.get_jobs_json(limit=effective), indent=2))
        return

    listed = manager.list_jobs(limit=effective)
    if not listed:
        console.print("No jobs")
        return
    console.print(_jobs_table(listed))


@main.command()
def sessions() -> None:
    """List tmux sessions owned by the supervisor."""
    found = get_manager().adapter.list_sessions()
    if not found:
        console.print("No active sessions")
        return

    table = Table(title="Sessions")
    table.add_column("Session", style="cyan", no_wrap=True)
    table.add_column("Attached")
    table.add_column("Windows")
    table.add_column("Created")
    for info in found:
        table.add_row(
            info.name,
            "yes" if info.attached else "no",
            str(info.windows),
            info.created.isoformat() if info.created else "-",
        )
    console.print(table)


@main.command()
@click.argument("job_id")
def report(job_id: str) -> None:
    """Token usage, file changes and detected issues for a job."""
    manager = get_manager()
    job = manager.refresh_job_status(job_id)
    if job is None:
        fail(f"Job {job_id} not found")

    console.print(f"[bold]=== Report: {job.id} ===[/bold]")
    console.print(f"Status: {_status_markup(job.status)}")
    console.print(f"Model: {escape(job.model)} ({job.reasoning_effort})")
    console.print(f"Sandbox: {job.sandbox}")
    if job.started_at:
        console.print(f"Duration: {format_duration(elapsed_ms(job))}")
    console.print(f"Prompt: {escape(_preview(job.prompt, 100))}")

    result = manager.build_report(job.id)
    if result is not None:
        if result.tokens:
            tokens = result.tokens
            console.print("\n[bold]Token Usage:[/bold]")
            console.print(f"  Input:   {tokens.input:,}")
            console.print(f"  Output:  {tokens.output:,}")
            console.print(f"  Context: {tokens.context_used_pct}% of {tokens.context_window:,}")

        stats = result.diff_stats
        if stats.total:
            console.print(f"\n[bold]File Changes ({stats.total} files):[/bold]")
            for label, marker, paths in (
                ("Added", "+", stats.files_added),
                ("Updated", "~", stats.files_updated),
                ("Deleted", "-", stats.files_deleted),
            ):
                if paths:
                    console.print(f"  {label} ({len(paths)}):")
                    for path in paths:
                        console.print(f"    {marker} {escape(path)}")

        if result.errors:
            console.print("\n[red bold]Errors Detected:[/red bold]")
            for message in result.errors:
                console.print(f"  ! {escape(message)}")
        if result.warnings:
            console.print("\n[yellow bold]Warnings:[/yellow bold]")
            for message in result.warnings:
                console.print(f"  ? {escape(message)}")
        if result.summary:
            console.print("\n[bold]Summary:[/bold]")
            console.print(f"  {escape(result.summary[:500])}")

    if job.error:
        console.print(f"\n[red]Error:[/red] {escape(job.error)}")


# --- teardown ---


@main.command()
@click.argument("job_id")
def kill(job_id: str) -> None:
    """Cancel a job and kill its session."""
    if get_manager().kill_job(job_id):
        console.print(f"Killed job: {job_id}")
    else:
        fail(f"Could not kill job: {job_id}")


@main.command()
@click.argument("job_id")
def delete(job_id: str) -> None:
    """Delete a job's record, transcript and claims."""
    try:
        deleted = get_manager().delete_job(job_id)
    except SupervisorError as e:
        fail(str(e))
    if not deleted:
        fail(f"Could not delete job: {job_id}")
    console.print(f"Deleted job: {job_id}")


@main.command()
@click.option("--days", type=click.IntRange(min=0), default=None, help="Age threshold (default from config)")
def clean(days: int | None) -> None:
    """Remove finished jobs older than the retention period, and stale claims."""
    removed_jobs, removed_claims = get_manager().cleanup_old_jobs(days)
    console.print(f"Cleaned {removed_jobs} old jobs")
    if removed_claims:
        console.print(f"Cleaned {removed_claims} stale claims")


# --- coordination ---


@main.command()
def claims() -> None:
    """Show active file claims."""
    active = get_manager().claims.list_claims()
    if not active:
        console.print("No active file claims")
        return

    table = Table(title="File Claims")
    table.add_column("Job", style="cyan", no_wrap=True)
    table.add_column("Pattern")
    table.add_column("Claimed At")
    for claim in active:
        table.add_row(claim.job_id, escape(claim.pattern), claim.claimed_at.isoformat())
    console.print(table)


@main.command()
@click.option("--dir", "-d", "cwd", type=click.Path(file_okay=False), default=".", help="Project directory")
def log(cwd: str) -> None:
    """Print the project's agents.log."""
    content = read_agent_log(cwd)
    if content is None:
        console.print(f"No agents.log found in {escape(str(Path(cwd).resolve()))}")
        return
    click.echo(content)


@main.command()
@click.option("--dir", "-d", "cwd", type=click.Path(file_okay=False), default=".", help="Project directory")
def context(cwd: str) -> None:
    """Summarize active and recent work for context recovery."""
    manager = get_manager()
    manager.refresh_running_jobs()
    click.echo(generate_context_summary(str(Path(cwd).resolve()), manager.list_jobs()))


@main.command()
def health() -> None:
    """Check tmux and codex, and heartbeat running agents."""
    result = get_manager().health()

    if not result.tmux_available:
        console.print("[red]tmux: not found[/red]")
    else:
        console.print("tmux: [green]OK[/green]")
    if result.codex_version is None:
        console.print("[red]codex: not found[/red]")
    else:
        console.print(f"codex: {escape(result.codex_version)}")

    if result.agents:
        console.print(f"\nRunning agents: {len(result.agents)}")
        for agent in result.agents:
            state = "[green]alive[/green]" if agent.alive else "[red]dead[/red]"
            console.print(f"  {agent.job_id}: {state} (pid: {agent.pid if agent.pid is not None else '?'})")

    if not result.ready:
        console.print("\nStatus: [red]Not ready[/red]")
        sys.exit(1)
    console.print("\nStatus: [green]Ready[/green]")


if __name__ == "__main__":
    main()
