"""Durable flat-file store for job records.

One JSON file per job under ``<state_dir>/jobs``, next to the job's transcript
(``<id>.log``) and transient prompt file (``<id>.prompt``). Every save replaces
the whole record atomically, so a reader never sees a half-written job; the
last writer wins, which is acceptable because one coordinator normally owns a
job at a time.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime, timedelta
from pathlib import Path

from pydantic import ValidationError

from codex_supervisor.config import SupervisorConfig
from codex_supervisor.core.models import Job
from codex_supervisor.core.utils import assert_valid_job_id, atomic_write_text, is_valid_job_id

logger = logging.getLogger(__name__)

ARTIFACT_SUFFIXES = (".json", ".log", ".prompt")


def _as_utc(value: datetime) -> datetime:
    """Treat naive timestamps as UTC so comparisons never raise."""
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


class JobRegistry:
    """CRUD over job record files."""

    def __init__(self, config: SupervisorConfig):
        self.config = config

    @property
    def jobs_dir(self) -> Path:
        return self.config.jobs_dir

    def record_path(self, job_id: str) -> Path:
        assert_valid_job_id(job_id)
        return self.jobs_dir / f"{job_id}.json"

    def log_path(self, job_id: str) -> Path:
        assert_valid_job_id(job_id)
        return self.jobs_dir / f"{job_id}.log"

    def save(self, job: Job) -> None:
        """Write the full record, replacing any previous version."""
        path = self.record_path(job.id)
        atomic_write_text(path, job.model_dump_json(indent=2))

    def load(self, job_id: str) -> Job | None:
        """Load a job. Missing, invalid or unreadable records give None."""
        if not is_valid_job_id(job_id):
            logger.debug(f"Refusing to load invalid job id {job_id!r}")
            return None

        path = self.jobs_dir / f"{job_id}.json"
        try:
            return Job.model_validate_json(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValidationError, json.JSONDecodeError) as e:
            logger.warning(f"Unreadable job record {path}: {e}")
            return None

    def list_jobs(self) -> list[Job]:
        """All readable job records; malformed ones are skipped."""
        if not self.jobs_dir.exists():
            return []

        jobs: list[Job] = []
        for path in sorted(self.jobs_dir.glob("*.json")):
            if not is_valid_job_id(path.stem):
                continue
            try:
                jobs.append(Job.model_validate_json(path.read_text(encoding="utf-8")))
            except (OSError, ValidationError, json.JSONDecodeError) as e:
                logger.warning(f"Skipping malformed job record {path.name}: {e}")
        return jobs

    def delete(self, job_id: str) -> bool:
        """Remove a job's record and artifacts.

        Raises:
            InvalidJobIdError: job_id is malformed

        Returns:
            True if anything was removed, False if nothing existed
        """
        assert_valid_job_id(job_id)

        removed = False
        for suffix in ARTIFACT_SUFFIXES:
            path = self.jobs_dir / f"{job_id}{suffix}"
            try:
                path.unlink()
                removed = True
            except FileNotFoundError:
                continue
        return removed

    def cleanup(self, max_age_days: int) -> int:
        """Delete terminal jobs older than max_age_days.

        Age is measured from completed_at, falling back to created_at. Running
        and pending jobs are never swept.

        Returns:
            Number of jobs removed
        """
        cutoff = datetime.now(UTC) - timedelta(days=max_age_days)
        cleaned = 0

        for job in self.list_jobs():
            if not job.status.is_terminal:
                continue
            reference = _as_utc(job.completed_at or job.created_at)
            if reference < cutoff and self.delete(job.id):
                logger.info(f"Cleaned up job {job.id} ({job.status.value}, {reference.isoformat()})")
                cleaned += 1

        return cleaned
