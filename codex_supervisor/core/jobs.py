"""Job orchestration: the layer the CLI talks to.

JobManager wires the session adapter, job registry, status refresher and claim
registry together. It owns the pending -> running transition, keeps the
project's agents.log up to date, and turns on-disk state into the listings,
reports and health checks the CLI prints.
"""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from codex_supervisor.config import STATUS_RANK, SupervisorConfig, load_config
from codex_supervisor.core.agent_log import log_job_complete, log_job_spawn
from codex_supervisor.core.claims import ClaimRegistry, ClaimStoreLockedError
from codex_supervisor.core.models import (
    AgentHeartbeat,
    Claim,
    HealthReport,
    Job,
    JobStatus,
    TranscriptReport,
    utc_now,
)
from codex_supervisor.core.refresher import StatusRefresher
from codex_supervisor.core.registry import JobRegistry
from codex_supervisor.core.transcript import extract_session_id, find_session_file, generate_report
from codex_supervisor.core.utils import (
    InvalidJobIdError,
    SupervisorError,
    generate_job_id,
    tail_lines,
)
from codex_supervisor.sessions.tmux import SessionValidationError, TmuxSessionAdapter

logger = logging.getLogger(__name__)


class JobNotFoundError(SupervisorError):
    """No job record exists for the given id."""

    pass


def elapsed_ms(job: Job) -> int:
    """Milliseconds from start (or creation) to completion (or now)."""
    start = job.started_at or job.created_at
    end = job.completed_at or utc_now()
    try:
        return max(0, int((end - start).total_seconds() * 1000))
    except TypeError:
        # naive and aware timestamps mixed in a hand-edited record
        return 0


def sort_jobs(jobs: Iterable[Job]) -> list[Job]:
    """Running first, then pending, failed, cancelled, completed; newest first within a status."""
    by_age = sorted(jobs, key=lambda j: j.created_at.timestamp(), reverse=True)
    return sorted(by_age, key=lambda j: STATUS_RANK.get(j.status.value, len(STATUS_RANK)))


class JobManager:
    """Start, observe, steer and tear down supervised Codex jobs."""

    def __init__(
        self,
        config: SupervisorConfig | None = None,
        adapter: TmuxSessionAdapter | None = None,
    ):
        self.config = config or load_config()
        self.registry = JobRegistry(self.config)
        self.claims = ClaimRegistry(self.config)
        self.adapter = adapter or TmuxSessionAdapter(self.config)
        self.refresher = StatusRefresher(self.config, self.registry, self.adapter, self.claims)

    # --- lookup ---

    def get_job(self, job_id: str) -> Job:
        """Load a job or raise JobNotFoundError."""
        job = self.registry.load(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return job

    # --- start ---

    def claim_overlaps(self, patterns: Iterable[str], job_id: str | None = None) -> list[Claim]:
        """Existing claims by other jobs that overlap any of patterns."""
        found: list[Claim] = []
        for pattern in patterns:
            for claim in self.claims.check_overlaps(job_id or "", pattern):
                if claim not in found:
                    found.append(claim)
        return found

    def start_job(
        self,
        prompt: str,
        model: str | None = None,
        reasoning_effort: str | None = None,
        sandbox: str | None = None,
        cwd: str | Path | None = None,
        claims: list[str] | None = None,
        parent_session_id: str | None = None,
    ) -> Job:
        """Create a job and spawn its session.

        Validation and spawn failures do not raise; they produce a job in the
        failed state with the cause in ``error``.
        """
        job = Job(
            id=generate_job_id(),
            prompt=prompt,
            model=model or self.config.model,
            reasoning_effort=reasoning_effort or self.config.default_reasoning_effort,
            sandbox=sandbox or self.config.default_sandbox,
            cwd=str(Path(cwd).resolve()) if cwd else str(Path.cwd()),
            parent_session_id=parent_session_id,
        )
        self.registry.save(job)

        try:
            result = self.adapter.create(
                job.id, job.prompt, job.model, job.reasoning_effort, job.sandbox, job.cwd
            )
        except (SessionValidationError, InvalidJobIdError) as e:
            logger.warning(f"Job {job.id} rejected: {e}")
            job.status = JobStatus.FAILED
            job.error = str(e)
            job.completed_at = utc_now()
            self.registry.save(job)
            return job

        if not result.success:
            job.status = JobStatus.FAILED
            job.error = result.error
            job.completed_at = utc_now()
            self.registry.save(job)
            logger.warning(f"Job {job.id} failed to start: {result.error}")
            return job

        job.status = JobStatus.RUNNING
        job.started_at = utc_now()
        job.tmux_session = result.session_name
        self.registry.save(job)

        try:
            for pattern in claims or []:
                for overlap in self.claims.check_overlaps(job.id, pattern):
                    logger.warning(
                        f"Claim '{pattern}' overlaps '{overlap.pattern}' held by job {overlap.job_id}"
                    )
                self.claims.add_claim(job.id, pattern)
        except ClaimStoreLockedError as e:
            logger.warning(f"Job {job.id} started without all of its claims: {e}")

        try:
            log_job_spawn(job)
        except OSError as e:
            logger.warning(f"Could not write agents.log in {job.cwd}: {e}")

        return job

    # --- interaction ---

    def send_to_job(self, job_id: str, message: str) -> bool:
        job = self.registry.load(job_id)
        if job is None or not job.tmux_session:
            return False
        return self.adapter.send(job.tmux_session, message)

    def send_control_to_job(self, job_id: str, key: str) -> bool:
        job = self.registry.load(job_id)
        if job is None or not job.tmux_session:
            return False
        return self.adapter.send_control(job.tmux_session, key)

    def _read_log(self, job_id: str) -> str | None:
        try:
            return self.registry.log_path(job_id).read_text(encoding="utf-8", errors="replace")
        except OSError:
            return None

    def get_job_output(self, job_id: str, lines: int | None = None) -> str | None:
        """Recent pane output, or the transcript log once the session is gone."""
        job = self.registry.load(job_id)
        if job is None:
            return None

        if job.tmux_session:
            output = self.adapter.capture_pane(job.tmux_session, lines=lines)
            if output is not None:
                return output

        content = self._read_log(job.id)
        if content is None:
            return None
        return tail_lines(content, lines) if lines else content

    def get_job_full_output(self, job_id: str) -> str | None:
        """Full scrollback, or the whole transcript log once the session is gone."""
        job = self.registry.load(job_id)
        if job is None:
            return None

        if job.tmux_session:
            output = self.adapter.capture_full_history(job.tmux_session)
            if output is not None:
                return output
        return self._read_log(job.id)

    def get_attach_command(self, job_id: str) -> str | None:
        job = self.registry.load(job_id)
        if job is None or not job.tmux_session:
            return None
        return self.adapter.get_attach_command(job.tmux_session)

    # --- status ---

    def refresh_job_status(self, job_id: str) -> Job | None:
        """Re-evaluate a job and journal the transition if it just finished."""
        before = self.registry.load(job_id)
        job = self.refresher.refresh(job_id)
        if job is None or before is None:
            return job

        if before.status == JobStatus.RUNNING and job.status.is_terminal:
            summary = None
            report = self.build_report(job.id)
            if report is not None:
                summary = report.summary
            try:
                log_job_complete(job, summary)
            except OSError as e:
                logger.warning(f"Could not write agents.log in {job.cwd}: {e}")
        return job

    def refresh_running_jobs(self) -> list[Job]:
        """Refresh every running job; returns all jobs afterwards."""
        for job in self.registry.list_jobs():
            if job.status == JobStatus.RUNNING:
                self.refresh_job_status(job.id)
        return self.registry.list_jobs()

    def kill_job(self, job_id: str) -> bool:
        return self.refresher.kill(job_id)

    def delete_job(self, job_id: str) -> bool:
        """Kill any live session, release claims and remove the job's files.

        Raises:
            InvalidJobIdError: job_id is malformed
        """
        job = self.registry.load(job_id)
        if job is not None:
            if job.tmux_session:
                self.adapter.kill(job.tmux_session)
            self.claims.remove_claims(job.id)
        return self.registry.delete(job_id)

    # --- listings ---

    def list_jobs(self, limit: int | None = None) -> list[Job]:
        jobs = sort_jobs(self.registry.list_jobs())
        return jobs[:limit] if limit else jobs

    def get_jobs_json(self, limit: int | None = None) -> dict[str, Any]:
        """Machine-readable job listing."""
        jobs = self.list_jobs(limit=limit)
        return {
            "generated_at": utc_now().isoformat(),
            "jobs": [
                {
                    "id": job.id,
                    "status": job.status.value,
                    "prompt": job.prompt,
                    "model": job.model,
                    "reasoning_effort": job.reasoning_effort,
                    "sandbox": job.sandbox,
                    "cwd": job.cwd,
                    "created_at": job.created_at.isoformat(),
                    "started_at": job.started_at.isoformat() if job.started_at else None,
                    "completed_at": job.completed_at.isoformat() if job.completed_at else None,
                    "elapsed_ms": elapsed_ms(job),
                    "tmux_session": job.tmux_session,
                    "error": job.error,
                }
                for job in jobs
            ],
        }

    def cleanup_old_jobs(self, max_age_days: int | None = None) -> tuple[int, int]:
        """Sweep old terminal jobs, then claims no live job holds.

        Returns:
            (jobs removed, claims removed)
        """
        days = self.config.retention_days if max_age_days is None else max_age_days
        removed_jobs = self.registry.cleanup(days)
        live_ids = [job.id for job in self.registry.list_jobs() if not job.status.is_terminal]
        removed_claims = self.claims.clean_stale_claims(live_ids)
        return removed_jobs, removed_claims

    # --- reporting ---

    def build_report(self, job_id: str) -> TranscriptReport | None:
        """Transcript report from the job's log and its Codex session file."""
        if self.registry.load(job_id) is None:
            return None

        raw = self._read_log(job_id)
        session_file = None
        if raw:
            session_id = extract_session_id(raw)
            if session_id:
                session_file = find_session_file(session_id)
        return generate_report(session_file, raw)

    def _codex_version(self) -> str | None:
        try:
            result = subprocess.run(
                [self.config.codex_binary, "--version"],
                capture_output=True,
                text=True,
                timeout=self.config.tmux_command_timeout,
            )
        except (FileNotFoundError, OSError, subprocess.TimeoutExpired) as e:
            logger.debug(f"codex --version failed: {e}")
            return None
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def health(self) -> HealthReport:
        """Check tmux and codex, and heartbeat every running agent."""
        report = HealthReport(
            tmux_available=self.adapter.is_available(),
            codex_version=self._codex_version(),
        )
        for job in self.registry.list_jobs():
            if job.status != JobStatus.RUNNING or not job.tmux_session:
                continue
            beat = self.adapter.heartbeat(job.tmux_session)
            report.agents.append(AgentHeartbeat(job_id=job.id, alive=beat.alive, pid=beat.pid))
        return report
