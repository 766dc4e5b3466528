"""Session adapters for hosting interactive agents."""

from codex_supervisor.sessions.tmux import (
    COMPLETION_MARKER,
    SessionError,
    SessionValidationError,
    TmuxSessionAdapter,
    incremental_diff,
)

__all__ = [
    "COMPLETION_MARKER",
    "SessionError",
    "SessionValidationError",
    "TmuxSessionAdapter",
    "incremental_diff",
]
