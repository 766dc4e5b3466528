"""Data models for the Codex supervisor.

Uses Pydantic for the persisted job and claim records and for derived reports.
"""

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


class JobStatus(str, Enum):
    """Lifecycle status of a supervised job."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Completed, failed and cancelled never revert."""
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


# --- Persisted records ---


class Job(BaseModel):
    """Durable record of one supervised agent run."""

    id: str = Field(..., pattern=r"^[0-9a-fA-F]{8}$")
    status: JobStatus = JobStatus.PENDING
    prompt: str
    model: str
    reasoning_effort: str
    sandbox: str
    cwd: str
    created_at: datetime = Field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    tmux_session: str | None = None
    result: str | None = None
    error: str | None = None
    parent_session_id: str | None = None


class Claim(BaseModel):
    """Advisory declaration that a job intends to edit files matching a pattern."""

    job_id: str
    pattern: str
    claimed_at: datetime = Field(default_factory=utc_now)


class ClaimsData(BaseModel):
    """On-disk layout of the shared claim store."""

    claims: list[Claim] = Field(default_factory=list)


# --- Session adapter results ---


class SessionInfo(BaseModel):
    """A tmux session owned by the supervisor."""

    name: str
    attached: bool
    windows: int
    created: datetime | None = None


class Heartbeat(BaseModel):
    """Liveness of the agent process inside a session."""

    alive: bool
    pid: int | None = None


class CreateSessionResult(BaseModel):
    """Outcome of spawning a session."""

    session_name: str
    success: bool
    error: str | None = None


# --- Derived transcript report (never persisted) ---


class TokenUsage(BaseModel):
    """Token accounting from the structured event log."""

    input: int = 0
    output: int = 0
    context_window: int = 0
    context_used_pct: int = 0


class DiffStats(BaseModel):
    """Files touched by applied patches, in first-seen order."""

    files_added: list[str] = Field(default_factory=list)
    files_updated: list[str] = Field(default_factory=list)
    files_deleted: list[str] = Field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.files_added) + len(self.files_updated) + len(self.files_deleted)


class SessionData(BaseModel):
    """What the structured event log contributes to a report."""

    tokens: TokenUsage | None = None
    summary: str | None = None
    diff_stats: DiffStats = Field(default_factory=DiffStats)

    @property
    def files_modified(self) -> list[str]:
        stats = self.diff_stats
        return stats.files_added + stats.files_updated + stats.files_deleted


class TranscriptReport(BaseModel):
    """Usage, diff and diagnostics reconciled from a job's logs."""

    tokens: TokenUsage | None = None
    diff_stats: DiffStats = Field(default_factory=DiffStats)
    summary: str | None = None
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    session_id: str | None = None
    session_file: str | None = None


# --- Health ---


class AgentHeartbeat(BaseModel):
    """Heartbeat of one running job's agent."""

    job_id: str
    alive: bool
    pid: int | None = None


class HealthReport(BaseModel):
    """Availability of the external tools plus liveness of running agents."""

    tmux_available: bool
    codex_version: str | None = None
    agents: list[AgentHeartbeat] = Field(default_factory=list)

    @property
    def ready(self) -> bool:
        return self.tmux_available and self.codex_version is not None
