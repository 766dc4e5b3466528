"""Advisory file-ownership claims shared by concurrently running agents.

Claims are a warning system, not a lock: a job declares the path patterns it
intends to edit, and a new job whose patterns overlap someone else's gets told
about it. Nothing is ever blocked.

All claims live in one JSON file. Each read-modify-write holds a filelock and
finishes with an atomic replace, so independent supervisor processes never
lose each other's writes or observe a partial file.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable
from pathlib import Path

from filelock import FileLock
from filelock import Timeout as FileLockTimeout
from pydantic import ValidationError

from codex_supervisor.config import SupervisorConfig
from codex_supervisor.core.models import Claim, ClaimsData
from codex_supervisor.core.utils import SupervisorError, atomic_write_text

logger = logging.getLogger(__name__)

# Everything from the first wildcard or brace expansion onwards
_WILDCARD_TAIL = re.compile(r"[*?\[{].*$", re.DOTALL)


class ClaimStoreLockedError(SupervisorError):
    """Claim store lock could not be acquired in time."""

    pass


def literal_prefix(pattern: str) -> str:
    """Text of a glob pattern before its first wildcard."""
    return _WILDCARD_TAIL.sub("", pattern)


def patterns_overlap(a: str, b: str) -> bool:
    """Conservative overlap test between two glob-like patterns.

    Overlap when one literal prefix is a string prefix of the other, or the
    patterns are identical. Sibling paths sharing a name stem also match
    ("src/api" vs "src/api_v2/**"); that is acceptable for an advisory check.
    """
    if a == b:
        return True
    prefix_a = literal_prefix(a)
    prefix_b = literal_prefix(b)
    return prefix_a.startswith(prefix_b) or prefix_b.startswith(prefix_a)


class ClaimRegistry:
    """Shared claim store backed by a single JSON file."""

    LOCK_TIMEOUT: int = 10

    def __init__(self, config: SupervisorConfig):
        self.config = config

    @property
    def path(self) -> Path:
        return self.config.claims_file

    def _lock(self) -> FileLock:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        return FileLock(str(self.path) + ".lock", timeout=self.LOCK_TIMEOUT)

    def _load(self) -> ClaimsData:
        try:
            return ClaimsData.model_validate_json(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return ClaimsData()
        except (OSError, ValidationError, json.JSONDecodeError) as e:
            logger.warning(f"Claim store {self.path} unreadable, treating as empty: {e}")
            return ClaimsData()

    def _save(self, data: ClaimsData) -> None:
        atomic_write_text(self.path, data.model_dump_json(indent=2))

    def _update(self, mutate) -> int:
        """Apply mutate(data) under the store lock and persist the result."""
        try:
            with self._lock():
                data = self._load()
                result = mutate(data)
                self._save(data)
                return result
        except FileLockTimeout as e:
            raise ClaimStoreLockedError(
                f"Claim store busy: could not lock {self.path} within {self.LOCK_TIMEOUT}s"
            ) from e

    def add_claim(self, job_id: str, pattern: str) -> Claim:
        """Register a pattern for a job."""
        claim = Claim(job_id=job_id, pattern=pattern)

        def append(data: ClaimsData) -> int:
            data.claims.append(claim)
            return 1

        self._update(append)
        return claim

    def remove_claims(self, job_id: str) -> int:
        """Drop every claim held by a job. Returns how many were removed."""

        def drop(data: ClaimsData) -> int:
            before = len(data.claims)
            data.claims = [c for c in data.claims if c.job_id != job_id]
            return before - len(data.claims)

        return self._update(drop)

    def list_claims(self) -> list[Claim]:
        return self._load().claims

    def check_overlaps(self, job_id: str, pattern: str) -> list[Claim]:
        """Other jobs' claims that may touch the same files as pattern."""
        return [
            claim
            for claim in self._load().claims
            if claim.job_id != job_id and patterns_overlap(pattern, claim.pattern)
        ]

    def clean_stale_claims(self, active_job_ids: Iterable[str]) -> int:
        """Remove claims whose job is not in active_job_ids. Returns the count."""
        active = set(active_job_ids)

        def keep_active(data: ClaimsData) -> int:
            before = len(data.claims)
            data.claims = [c for c in data.claims if c.job_id in active]
            return before - len(data.claims)

        return self._update(keep_active)
