"""Infer job completion from what a tmux session shows.

The agent has no exit-code channel back to the supervisor. A running job is
re-evaluated on demand against its session, first matching rule wins:

1. Session gone: completed, result is the tail of the transcript log.
2. Completion marker on screen: completed, result is the full scrollback.
3. Error signature on screen: failed.
4. Otherwise still running.

Only running jobs are evaluated; terminal states never revert.
"""

from __future__ import annotations

import logging

from codex_supervisor.config import SupervisorConfig
from codex_supervisor.core.claims import ClaimRegistry, ClaimStoreLockedError
from codex_supervisor.core.models import Job, JobStatus, utc_now
from codex_supervisor.core.registry import JobRegistry
from codex_supervisor.core.transcript import detect_issues
from codex_supervisor.core.utils import tail_lines
from codex_supervisor.sessions.tmux import COMPLETION_MARKER, TmuxSessionAdapter

logger = logging.getLogger(__name__)

# Lines of the pane inspected for the marker and error signatures
STATUS_CAPTURE_LINES = 50
RESULT_TAIL_LINES = 500


class StatusRefresher:
    """Apply the completion rules to running jobs and handle cancellation."""

    def __init__(
        self,
        config: SupervisorConfig,
        registry: JobRegistry,
        adapter: TmuxSessionAdapter,
        claims: ClaimRegistry,
    ):
        self.config = config
        self.registry = registry
        self.adapter = adapter
        self.claims = claims

    def read_log_tail(self, job_id: str, lines: int = RESULT_TAIL_LINES) -> str | None:
        """Last lines of a job's transcript log, or None if there is none."""
        path = self.registry.log_path(job_id)
        try:
            content = path.read_text(encoding="utf-8", errors="replace")
        except OSError:
            return None
        return tail_lines(content, lines)

    def _finish(self, job: Job, status: JobStatus, result: str | None = None, error: str | None = None) -> Job:
        job.status = status
        job.completed_at = utc_now()
        if result is not None:
            job.result = result
        if error is not None:
            job.error = error
        self.registry.save(job)
        logger.info(f"Job {job.id} -> {status.value}")
        return job

    def refresh(self, job_id: str) -> Job | None:
        """Re-evaluate one job. Returns the (possibly updated) job, None if unknown."""
        job = self.registry.load(job_id)
        if job is None:
            return None
        if job.status != JobStatus.RUNNING:
            return job

        if not job.tmux_session or not self.adapter.session_exists(job.tmux_session):
            return self._finish(job, JobStatus.COMPLETED, result=self.read_log_tail(job.id))

        output = self.adapter.capture_pane(job.tmux_session, lines=STATUS_CAPTURE_LINES)
        if output is None:
            # Live session, capture failed: no evidence either way
            logger.debug(f"Could not capture {job.tmux_session}, leaving job {job.id} running")
            return job

        if COMPLETION_MARKER in output:
            history = self.adapter.capture_full_history(job.tmux_session)
            return self._finish(job, JobStatus.COMPLETED, result=history if history is not None else output)

        errors, _ = detect_issues(output)
        if errors:
            return self._finish(job, JobStatus.FAILED, error="Detected: " + "; ".join(errors))

        return job

    def kill(self, job_id: str) -> bool:
        """Cancel a job: kill its session and release its claims.

        Returns:
            True if a non-terminal job was cancelled. Unknown and already
            finished jobs give False (finished jobs still lose their claims).
        """
        job = self.registry.load(job_id)
        if job is None:
            return False

        if job.tmux_session and not self.adapter.kill(job.tmux_session):
            logger.debug(f"Session {job.tmux_session} was already gone")

        cancelled = not job.status.is_terminal
        if cancelled:
            self._finish(job, JobStatus.CANCELLED, error="Cancelled by user")

        try:
            released = self.claims.remove_claims(job.id)
        except ClaimStoreLockedError as e:
            logger.warning(f"Could not release claims held by {job.id}: {e}")
            return cancelled
        if released:
            logger.info(f"Released {released} claim(s) held by {job.id}")
        return cancelled
