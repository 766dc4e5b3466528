"""Follow a job's terminal output from the command line.

Polls the pane at a fixed interval and prints only what was appended since the
previous poll. Stops when the job reaches a terminal status or on Ctrl+C.
"""

from __future__ import annotations

import time

from rich.console import Console
from rich.markup import escape

from codex_supervisor.core.jobs import JobManager
from codex_supervisor.core.models import JobStatus
from codex_supervisor.sessions.tmux import incremental_diff

WATCH_LINES = 100


class JobWatcher:
    """Single-threaded polling loop over one job's output."""

    def __init__(self, manager: JobManager, console: Console | None = None, interval: float | None = None):
        self.manager = manager
        self.console = console or Console()
        self.interval = manager.config.watch_interval if interval is None else interval

    def poll(self, job_id: str, previous: str) -> tuple[str, str]:
        """Capture once.

        Returns:
            (current snapshot, newly appended text)
        """
        current = self.manager.get_job_output(job_id, lines=WATCH_LINES) or ""
        if current == previous:
            return current, ""
        return current, incremental_diff(previous, current)

    def watch(self, job_id: str) -> JobStatus | None:
        """Stream new output until the job finishes or the user interrupts.

        Returns:
            The final status, or None if the watch was interrupted
        """
        previous = ""
        try:
            while True:
                previous, new_text = self.poll(job_id, previous)
                if new_text.strip():
                    # Pane text may contain square brackets; print it verbatim
                    self.console.print(escape(new_text), highlight=False)

                job = self.manager.refresh_job_status(job_id)
                if job is None or job.status != JobStatus.RUNNING:
                    status = job.status if job is not None else None
                    label = status.value if status is not None else "gone"
                    self.console.print(f"\n[bold]Job {label}[/bold]")
                    return status

                time.sleep(self.interval)
        except KeyboardInterrupt:
            self.console.print("\n[dim]Stopped watching[/dim]")
            return None
