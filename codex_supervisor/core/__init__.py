"""Core modules for the Codex supervisor."""

from codex_supervisor.core.claims import ClaimRegistry
from codex_supervisor.core.models import (
    Claim,
    Job,
    JobStatus,
    TranscriptReport,
)
from codex_supervisor.core.registry import JobRegistry
from codex_supervisor.core.utils import InvalidJobIdError, SupervisorError

__all__ = [
    "Claim",
    "ClaimRegistry",
    "InvalidJobIdError",
    "Job",
    "JobRegistry",
    "JobStatus",
    "SupervisorError",
    "TranscriptReport",
]
