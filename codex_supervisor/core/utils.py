"""Shared utility functions for supervisor core modules.

Identifier validation, ANSI stripping and atomic file replacement are used by
the session adapter, the registries and the transcript parser alike.
"""

import os
import re
import tempfile
import uuid
from pathlib import Path

JOB_ID_LENGTH = 8
JOB_ID_PATTERN = re.compile(r"^[0-9a-fA-F]{8}$")

# Model identifiers are passed to codex as a -c value; nothing that a shell or
# the TOML parser could interpret is allowed through.
MODEL_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:-]{0,127}$")

ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)|\x1b[()][A-Za-z0-9]|\x1b[=>]")


class SupervisorError(Exception):
    """Base error for the supervisor."""

    pass


class InvalidJobIdError(SupervisorError, ValueError):
    """Job identifier is not an 8-character hex token."""

    pass


def generate_job_id() -> str:
    """Generate a new 8-character hex job identifier."""
    return uuid.uuid4().hex[:JOB_ID_LENGTH]


def is_valid_job_id(job_id: str) -> bool:
    """Check a job id without raising.

    SECURITY: the id becomes part of file paths and tmux target names, so
    anything but a fixed-length hex token is refused.
    """
    return isinstance(job_id, str) and JOB_ID_PATTERN.fullmatch(job_id) is not None


def assert_valid_job_id(job_id: str) -> str:
    """Return job_id unchanged or raise InvalidJobIdError."""
    if not is_valid_job_id(job_id):
        raise InvalidJobIdError(f"Invalid job ID: {job_id!r}")
    return job_id


def is_valid_model(model: str) -> bool:
    """Check a model identifier against the restricted character set."""
    return isinstance(model, str) and MODEL_PATTERN.fullmatch(model) is not None


def strip_ansi_codes(text: str) -> str:
    """Remove ANSI color and cursor control sequences."""
    return ANSI_RE.sub("", text)


def tail_lines(text: str, lines: int) -> str:
    """Return the last ``lines`` lines of text, ignoring trailing newlines."""
    if lines <= 0:
        return ""
    return "\n".join(text.rstrip("\n").split("\n")[-lines:])


def atomic_write_text(path: Path, content: str) -> None:
    """Write content to path via temp file + replace.

    Readers never observe a partially written file; concurrent writers each
    replace the whole file (last write wins).
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(
        prefix=f".{path.name}.",
        suffix=".tmp",
        dir=str(path.parent),
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(temp_path, str(path))
    except Exception:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise
