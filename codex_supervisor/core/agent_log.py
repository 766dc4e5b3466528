"""Project-local agents.log.

A markdown journal in the job's working directory recording when agents were
spawned and how they finished. It outlives the supervisor's own state and lets
a coordinating agent rebuild its picture of the work after its context has
been compacted.
"""

from __future__ import annotations

import os
from datetime import datetime
from pathlib import Path

from codex_supervisor.core.models import Job, JobStatus, utc_now

LOG_FILENAME = "agents.log"
LOG_HEADER = "# Agents Log\n\n"

PROMPT_PREVIEW_CHARS = 100
SUMMARY_PREVIEW_CHARS = 300
CONTEXT_LOG_TAIL_LINES = 30


def get_log_path(cwd: str | Path) -> Path:
    return Path(cwd) / LOG_FILENAME


def read_agent_log(cwd: str | Path) -> str | None:
    """Full agents.log content, or None if it does not exist."""
    try:
        return get_log_path(cwd).read_text(encoding="utf-8")
    except OSError:
        return None


def append_to_agent_log(cwd: str | Path, entry: str) -> None:
    """Append an entry, creating the log (owner-only) with a header if needed."""
    path = get_log_path(cwd)
    # O_CREAT mode only applies when the file is new
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
    with os.fdopen(fd, "a", encoding="utf-8") as f:
        if f.tell() == 0:
            f.write(LOG_HEADER)
        f.write(entry + "\n")


def _clock() -> str:
    return utc_now().strftime("%H:%M")


def _preview(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def log_job_spawn(job: Job) -> None:
    """Record a newly started job."""
    kind = "research" if job.sandbox == "read-only" else "implementation"
    entry = "\n".join(
        [
            f"### Spawned: {job.id} - {_clock()}",
            f"Type: {kind}",
            f"Prompt: {_preview(job.prompt, PROMPT_PREVIEW_CHARS)}",
            f"Reasoning: {job.reasoning_effort}",
            f"Sandbox: {job.sandbox}",
            "",
        ]
    )
    append_to_agent_log(job.cwd, entry)


def log_job_complete(job: Job, summary: str | None = None) -> None:
    """Record a job reaching a terminal state."""
    lines = [f"### Complete: {job.id} - {_clock()}"]
    if summary:
        lines.append(f"Summary: {summary[:SUMMARY_PREVIEW_CHARS]}")
    if job.error:
        lines.append(f"Error: {job.error}")
    lines.append("")
    append_to_agent_log(job.cwd, "\n".join(lines))


def _minutes_since(moment: datetime | None) -> int:
    if moment is None:
        return 0
    return max(0, round((utc_now() - moment).total_seconds() / 60))


def generate_context_summary(cwd: str | Path, jobs: list[Job]) -> str:
    """Markdown recap of running, completed and failed work plus the log tail."""
    lines = [
        "## Context Recovery Summary",
        f"Generated: {utc_now().isoformat()}",
        f"Working directory: {cwd}",
        "",
    ]

    running = [j for j in jobs if j.status == JobStatus.RUNNING]
    completed = [j for j in jobs if j.status == JobStatus.COMPLETED]
    failed = [j for j in jobs if j.status == JobStatus.FAILED]

    if running:
        lines.append(f"### Running Agents ({len(running)})")
        for job in running:
            lines.append(f"- **{job.id}** ({_minutes_since(job.started_at)}m) - {job.prompt[:80]}")
        lines.append("")

    if completed:
        lines.append(f"### Recently Completed ({len(completed)})")
        for job in completed[:10]:
            lines.append(f"- **{job.id}** - {job.prompt[:80]}")
        lines.append("")

    if failed:
        lines.append(f"### Failed ({len(failed)})")
        for job in failed[:5]:
            lines.append(f"- **{job.id}** - {job.error or 'unknown error'}")
        lines.append("")

    log = read_agent_log(cwd)
    if log:
        tail = "\n".join(log.split("\n")[-CONTEXT_LOG_TAIL_LINES:])
        lines.extend(["### Recent agents.log entries", "```", tail, "```"])

    return "\n".join(lines)
