# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the codex-supervisor test suite.

This module provides the fixtures used across test modules:
- An isolated supervisor state directory and configuration
- A scriptable stand-in for the tmux binary (and pgrep / codex)
- Job factories over a real on-disk registry

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
    Nothing here talks to a real tmux server.
"""

from __future__ import annotations

import os
import subprocess
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from codex_supervisor.config import SupervisorConfig
from codex_supervisor.core.claims import ClaimRegistry
from codex_supervisor.core.models import Job, JobStatus
from codex_supervisor.core.registry import JobRegistry
from codex_supervisor.sessions.tmux import TmuxSessionAdapter

# =============================================================================
# Fake external tools
# =============================================================================


class FakeTmux:
    """Scriptable replacement for ``subprocess.run`` covering tmux, pgrep and codex.

    Sessions are kept in memory as name -> visible pane text. Tests mutate
    ``sessions`` / ``history`` directly to simulate agent output.
    """

    def __init__(self) -> None:
        self.sessions: dict[str, str] = {}
        self.history: dict[str, str] = {}
        self.buffers: dict[str, str] = {}
        self.calls: list[list[str]] = []
        self.pasted: list[tuple[str, str]] = []
        self.keys: list[tuple[str, str]] = []
        self.commands: dict[str, str] = {}
        self.fail_commands: set[str] = set()
        self.initial_pane = "OpenAI Codex\n>"
        self.pane_pid = os.getpid()
        self.has_children = True
        self.codex_version: str | None = "codex-cli 0.42.0"

    @staticmethod
    def _result(args: list[str], returncode: int = 0, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess:
        return subprocess.CompletedProcess(args, returncode, stdout=stdout, stderr=stderr)

    def tmux_calls(self, subcommand: str) -> list[list[str]]:
        """Recorded tmux invocations of one subcommand (without the leading 'tmux')."""
        return [call[1:] for call in self.calls if call[:2] == ["tmux", subcommand]]

    def __call__(self, args: list[str], **kwargs: Any) -> subprocess.CompletedProcess:
        args = list(args)
        self.calls.append(args)
        program = args[0]

        if program == "tmux":
            return self._tmux(args)
        if program == "pgrep":
            if self.has_children:
                return self._result(args, 0, "99999\n")
            return self._result(args, 1)
        if program == "codex":
            if self.codex_version is None:
                raise FileNotFoundError(program)
            return self._result(args, 0, self.codex_version + "\n")
        raise FileNotFoundError(program)

    def _target(self, args: list[str]) -> str:
        return args[args.index("-t") + 1]

    def _tmux(self, args: list[str]) -> subprocess.CompletedProcess:
        sub = args[1]
        if sub in self.fail_commands:
            return self._result(args, 1, stderr=f"{sub}: simulated failure")

        if sub == "has-session":
            return self._result(args, 0 if self._target(args) in self.sessions else 1)

        if sub == "new-session":
            name = args[args.index("-s") + 1]
            if name in self.sessions:
                return self._result(args, 1, stderr=f"duplicate session: {name}")
            self.sessions[name] = self.initial_pane
            self.commands[name] = args[-1]
            return self._result(args)

        if sub == "send-keys":
            name = self._target(args)
            if name not in self.sessions:
                return self._result(args, 1, stderr="can't find session")
            self.keys.append((name, args[-1]))
            return self._result(args)

        if sub == "load-buffer":
            buffer_name = args[args.index("-b") + 1]
            self.buffers[buffer_name] = Path(args[-1]).read_text(encoding="utf-8")
            return self._result(args)

        if sub == "paste-buffer":
            name = self._target(args)
            buffer_name = args[args.index("-b") + 1]
            self.pasted.append((name, self.buffers.pop(buffer_name)))
            return self._result(args)

        if sub == "capture-pane":
            name = self._target(args)
            if name not in self.sessions:
                return self._result(args, 1, stderr="can't find session")
            if "-S" in args and args[args.index("-S") + 1] == "-":
                return self._result(args, 0, self.history.get(name, self.sessions[name]))
            return self._result(args, 0, self.sessions[name])

        if sub == "kill-session":
            name = self._target(args)
            if self.sessions.pop(name, None) is None:
                return self._result(args, 1, stderr="can't find session")
            return self._result(args)

        if sub == "list-sessions":
            lines = [f"{name}|0|1|1767225600" for name in self.sessions]
            return self._result(args, 0, "\n".join(lines) + "\n")

        if sub == "list-panes":
            if self._target(args) not in self.sessions:
                return self._result(args, 1)
            return self._result(args, 0, f"{self.pane_pid}\n")

        return self._result(args, 1, stderr=f"unknown command: {sub}")


# =============================================================================
# Configuration and Storage Fixtures
# =============================================================================


@pytest.fixture
def config(tmp_path: Path) -> SupervisorConfig:
    """Supervisor configuration rooted in a temporary state directory.

    The readiness poll ceiling is shortened so tests that exercise the
    timeout path finish quickly.
    """
    cfg = SupervisorConfig(state_dir=tmp_path / "state", tmux_poll_timeout=0.05)
    cfg.ensure_dirs()
    return cfg


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """Working directory for jobs (receives agents.log)."""
    path = tmp_path / "project"
    path.mkdir()
    return path


@pytest.fixture
def registry(config: SupervisorConfig) -> JobRegistry:
    return JobRegistry(config)


@pytest.fixture
def claims(config: SupervisorConfig) -> ClaimRegistry:
    return ClaimRegistry(config)


@pytest.fixture
def make_job(project_dir: Path) -> Callable[..., Job]:
    """Factory for Job records with sensible defaults.

    Example:
        def test_something(make_job, registry):
            registry.save(make_job("abcd1234", status=JobStatus.RUNNING))
    """

    def _make(job_id: str, **overrides: Any) -> Job:
        fields: dict[str, Any] = {
            "id": job_id,
            "status": JobStatus.PENDING,
            "prompt": "Test prompt",
            "model": "gpt-5.3-codex",
            "reasoning_effort": "xhigh",
            "sandbox": "workspace-write",
            "cwd": str(project_dir),
        }
        fields.update(overrides)
        return Job(**fields)

    return _make


# =============================================================================
# tmux Fixtures
# =============================================================================


@pytest.fixture
def fake_tmux(mocker) -> FakeTmux:
    """Route every subprocess.run call through a FakeTmux.

    Also disables sleeping and reports tmux as installed.

    Example:
        def test_capture(fake_tmux, adapter):
            fake_tmux.sessions["codex-agent-abcd1234"] = "hello"
            assert adapter.capture_pane("codex-agent-abcd1234") == "hello"
    """
    fake = FakeTmux()
    mocker.patch("subprocess.run", side_effect=fake)
    mocker.patch("time.sleep")
    mocker.patch("shutil.which", return_value="/usr/bin/tmux")
    return fake


@pytest.fixture
def adapter(config: SupervisorConfig) -> TmuxSessionAdapter:
    return TmuxSessionAdapter(config)
