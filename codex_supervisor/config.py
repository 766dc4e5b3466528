"""Configuration for the Codex supervisor.

Defaults live on SupervisorConfig. A project may override any field through
``<state_dir>/config.yaml``; the state directory itself comes from
``$CODEX_SUPERVISOR_HOME`` or ``~/.codex-supervisor``.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

STATE_DIR_ENV = "CODEX_SUPERVISOR_HOME"
CONFIG_FILENAME = "config.yaml"

# Sort order for listings: live jobs first.
STATUS_RANK: dict[str, int] = {
    "running": 0,
    "pending": 1,
    "failed": 2,
    "cancelled": 3,
    "completed": 4,
}


def default_state_dir() -> Path:
    """Resolve the supervisor state directory."""
    override = os.environ.get(STATE_DIR_ENV, "").strip()
    if override:
        return Path(override).expanduser()
    return Path.home() / ".codex-supervisor"


@dataclass
class SupervisorConfig:
    """Runtime settings for sessions, storage and polling."""

    state_dir: Path = field(default_factory=default_state_dir)

    # Agent defaults
    model: str = "gpt-5.3-codex"
    reasoning_efforts: tuple[str, ...] = ("low", "medium", "high", "xhigh")
    default_reasoning_effort: str = "xhigh"
    sandbox_modes: tuple[str, ...] = ("read-only", "workspace-write", "danger-full-access")
    default_sandbox: str = "workspace-write"
    codex_binary: str = "codex"

    # tmux
    tmux_prefix: str = "codex-agent"
    tmux_poll_interval: float = 0.1  # seconds between readiness checks
    tmux_poll_timeout: float = 10.0  # give up waiting and proceed anyway
    tmux_command_timeout: float = 10.0
    max_history_bytes: int = 50 * 1024 * 1024

    # Listings and retention
    jobs_list_limit: int = 20
    retention_days: int = 7
    inactivity_timeout_minutes: int = 60

    # Live watch
    watch_interval: float = 1.0

    @property
    def jobs_dir(self) -> Path:
        return self.state_dir / "jobs"

    @property
    def claims_file(self) -> Path:
        return self.state_dir / "claims.json"

    def ensure_dirs(self) -> None:
        """Create the state and jobs directories if missing."""
        self.jobs_dir.mkdir(parents=True, exist_ok=True)


def _coerce(name: str, value: Any) -> Any:
    if name == "state_dir":
        return Path(str(value)).expanduser()
    if name in ("reasoning_efforts", "sandbox_modes") and isinstance(value, list):
        return tuple(str(v) for v in value)
    return value


def load_config(state_dir: Path | None = None) -> SupervisorConfig:
    """Load configuration, applying overrides from config.yaml when present.

    Args:
        state_dir: Explicit state directory (defaults to the env/home lookup)

    Returns:
        Populated SupervisorConfig
    """
    base = state_dir if state_dir is not None else default_state_dir()
    config = SupervisorConfig(state_dir=base)

    config_path = base / CONFIG_FILENAME
    if not config_path.exists():
        return config

    try:
        with open(config_path) as f:
            overrides = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Ignoring unreadable config {config_path}: {e}")
        return config

    if not isinstance(overrides, dict):
        logger.warning(f"Ignoring config {config_path}: expected a mapping")
        return config

    known = {f.name for f in fields(SupervisorConfig)}
    for key, value in overrides.items():
        if key not in known:
            logger.warning(f"Unknown config key '{key}' in {config_path}")
            continue
        setattr(config, key, _coerce(key, value))

    return config
