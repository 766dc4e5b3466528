"""tmux session adapter for interactive Codex agents.

One tmux session per job. The agent runs under ``script`` so everything it
draws is appended to ``<jobs_dir>/<id>.log``; when it exits the wrapper prints
COMPLETION_MARKER and waits, which is how the supervisor learns the agent is
done without an exit-code channel.

SECURITY:
- Job ids, models, reasoning efforts and sandbox modes are validated before
  any tmux call. Invalid input is rejected, never escaped.
- Prompt and message text is delivered through a tmux paste buffer loaded from
  a file, so it never appears on a command line.
- Control keys are limited to ALLOWED_CONTROL_KEYS.

Every tmux call is a blocking subprocess with a timeout. Non-zero exits,
timeouts and a missing binary become soft failures (False / None / []).
"""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
import sys
import tempfile
import time
import uuid
from datetime import UTC, datetime
from pathlib import Path

from codex_supervisor.config import SupervisorConfig
from codex_supervisor.core.models import CreateSessionResult, Heartbeat, SessionInfo
from codex_supervisor.core.utils import (
    SupervisorError,
    assert_valid_job_id,
    is_valid_model,
    tail_lines,
)

logger = logging.getLogger(__name__)

COMPLETION_MARKER = "[codex-supervisor: Session complete. Press Enter to close.]"

ALLOWED_CONTROL_KEYS = frozenset({"C-c", "C-z", "Enter", "Escape"})

# Codex shows an "update available" menu on start; option 3 skips it until the
# next release, Enter clears anything left over.
UPDATE_PROMPT_KEYS = ("3", "Enter")
UPDATE_PROMPT_DELAYS = (0.5, 1.0)
SUBMIT_DELAY = 0.3


class SessionError(SupervisorError):
    """Error while driving a tmux session."""

    pass


class SessionValidationError(SessionError, ValueError):
    """Launch parameters failed pre-flight validation."""

    pass


def incremental_diff(prev: str, curr: str) -> str:
    """Return the part of ``curr`` that was appended since ``prev``.

    Finds the longest suffix of prev's lines that equals a prefix of curr's
    lines and returns whatever follows it. With no previous snapshot or no
    overlap, curr is returned unchanged. This tolerates a sliding capture
    window without tracking offsets.
    """
    if not prev:
        return curr

    prev_lines = prev.split("\n")
    curr_lines = curr.split("\n")

    for overlap in range(min(len(prev_lines), len(curr_lines)), 0, -1):
        if prev_lines[-overlap:] == curr_lines[:overlap]:
            return "\n".join(curr_lines[overlap:])

    return curr


def _truncate_history(output: str, max_bytes: int) -> str:
    """Keep at most max_bytes of the most recent output.

    Prevents unbounded scrollback from exhausting memory downstream.
    """
    encoded = output.encode("utf-8", errors="replace")
    if len(encoded) <= max_bytes:
        return output

    # Cut from the front; drop any partial UTF-8 sequence at the boundary
    tail = encoded[-max_bytes:].decode("utf-8", errors="ignore")
    return f"[HISTORY TRUNCATED - kept last {max_bytes} bytes]\n" + tail


class TmuxSessionAdapter:
    """Create, drive, observe and destroy per-job tmux sessions."""

    def __init__(self, config: SupervisorConfig):
        self.config = config

    # --- low-level tmux plumbing ---

    def _run(self, args: list[str], timeout: float | None = None) -> subprocess.CompletedProcess | None:
        """Run a tmux subcommand. Returns None if tmux could not be run at all."""
        try:
            return subprocess.run(
                ["tmux", *args],
                capture_output=True,
                text=True,
                timeout=timeout or self.config.tmux_command_timeout,
            )
        except subprocess.TimeoutExpired:
            logger.warning(f"tmux {args[0]} timed out")
        except (FileNotFoundError, OSError) as e:
            logger.debug(f"tmux {args[0]} could not run: {e}")
        return None

    def _ok(self, args: list[str]) -> bool:
        result = self._run(args)
        if result is None:
            return False
        if result.returncode != 0:
            logger.debug(f"tmux {args[0]} exited {result.returncode}: {(result.stderr or '').strip()}")
            return False
        return True

    def _send_keys(self, session_name: str, key: str) -> bool:
        return self._ok(["send-keys", "-t", session_name, key])

    def _paste_file(self, session_name: str, path: Path) -> bool:
        """Load a file into a named paste buffer and paste it into the session."""
        buffer_name = f"{session_name}-{uuid.uuid4().hex[:8]}"
        if not self._ok(["load-buffer", "-b", buffer_name, str(path)]):
            return False
        # -d deletes the buffer after pasting
        return self._ok(["paste-buffer", "-d", "-b", buffer_name, "-t", session_name])

    def _paste_text(self, session_name: str, text: str) -> bool:
        self.config.ensure_dirs()
        fd, temp_path = tempfile.mkstemp(prefix=".tmux-buf-", dir=str(self.config.jobs_dir))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(text)
            return self._paste_file(session_name, Path(temp_path))
        finally:
            try:
                os.unlink(temp_path)
            except OSError:
                pass

    # --- naming and discovery ---

    def get_session_name(self, job_id: str) -> str:
        """Session name for a job. Raises InvalidJobIdError on a bad id."""
        assert_valid_job_id(job_id)
        return f"{self.config.tmux_prefix}-{job_id}"

    def is_available(self) -> bool:
        """Check if the tmux binary is on PATH."""
        return shutil.which("tmux") is not None

    def session_exists(self, session_name: str) -> bool:
        return self._ok(["has-session", "-t", session_name])

    def get_attach_command(self, session_name: str) -> str:
        """Command a human can run to attach to the session."""
        return f"tmux attach -t {shlex.quote(session_name)}"

    # --- lifecycle ---

    def _validate_launch(self, model: str, reasoning_effort: str, sandbox: str) -> None:
        if not is_valid_model(model):
            raise SessionValidationError(f"Invalid model: {model!r}")
        if reasoning_effort not in self.config.reasoning_efforts:
            raise SessionValidationError(
                f"Invalid reasoning effort: {reasoning_effort!r} "
                f"(expected one of {', '.join(self.config.reasoning_efforts)})"
            )
        if sandbox not in self.config.sandbox_modes:
            raise SessionValidationError(
                f"Invalid sandbox mode: {sandbox!r} "
                f"(expected one of {', '.join(self.config.sandbox_modes)})"
            )

    def _build_shell_command(self, log_file: Path, model: str, reasoning_effort: str, sandbox: str) -> str:
        """Shell command tmux runs: codex under script, then the completion marker."""
        codex_cmd = shlex.join(
            [
                self.config.codex_binary,
                "-c", f'model="{model}"',
                "-c", f'model_reasoning_effort="{reasoning_effort}"',
                "-c", "skip_update_check=true",
                "-a", "never",
                "-s", sandbox,
            ]
        )
        if sys.platform == "darwin":
            # BSD script: script [-q] file command...
            recorder = f"script -q {shlex.quote(str(log_file))} {codex_cmd}"
        else:
            # util-linux script: -f flushes after each write so the log is live
            recorder = f"script -q -f -c {shlex.quote(codex_cmd)} {shlex.quote(str(log_file))}"

        return f"{recorder}; printf '\\n\\n%s\\n' {shlex.quote(COMPLETION_MARKER)}; read _"

    def _wait_for_content(self, session_name: str) -> bool:
        """Poll until the pane shows something, giving up after the timeout.

        Fails open: returns False at the ceiling and the caller proceeds.
        """
        deadline = time.monotonic() + self.config.tmux_poll_timeout
        while time.monotonic() < deadline:
            output = self.capture_pane(session_name)
            if output and output.strip():
                return True
            time.sleep(self.config.tmux_poll_interval)
        logger.debug(f"No output from {session_name} after {self.config.tmux_poll_timeout}s; proceeding")
        return False

    def _dismiss_update_prompt(self, session_name: str) -> None:
        for key, delay in zip(UPDATE_PROMPT_KEYS, UPDATE_PROMPT_DELAYS):
            if not self._send_keys(session_name, key):
                logger.debug(f"Could not send {key!r} to {session_name}")
            time.sleep(delay)

    def create(
        self,
        job_id: str,
        prompt: str,
        model: str,
        reasoning_effort: str,
        sandbox: str,
        cwd: str,
    ) -> CreateSessionResult:
        """Spawn a session running codex and deliver the initial prompt.

        Raises:
            InvalidJobIdError: job_id is not an 8-char hex token
            SessionValidationError: model, effort or sandbox rejected

        Returns:
            CreateSessionResult; on failure no session is left behind.
        """
        session_name = self.get_session_name(job_id)
        self._validate_launch(model, reasoning_effort, sandbox)

        self.config.ensure_dirs()
        log_file = self.config.jobs_dir / f"{job_id}.log"
        prompt_file = self.config.jobs_dir / f"{job_id}.prompt"
        prompt_file.write_text(prompt, encoding="utf-8")

        try:
            shell_cmd = self._build_shell_command(log_file, model, reasoning_effort, sandbox)
            result = self._run(["new-session", "-d", "-s", session_name, "-c", cwd, shell_cmd])
            if result is None or result.returncode != 0:
                detail = (result.stderr or "").strip() if result is not None else "tmux not available"
                return CreateSessionResult(
                    session_name=session_name,
                    success=False,
                    error=f"Failed to create tmux session: {detail or 'unknown error'}",
                )

            try:
                self._wait_for_content(session_name)
                self._dismiss_update_prompt(session_name)

                if not self._paste_file(session_name, prompt_file):
                    raise SessionError("Failed to deliver prompt to session")
                time.sleep(SUBMIT_DELAY)
                if not self._send_keys(session_name, "Enter"):
                    raise SessionError("Failed to submit prompt")
            except SessionError as e:
                self.kill(session_name)
                return CreateSessionResult(session_name=session_name, success=False, error=str(e))

            logger.info(f"Started session {session_name} (model={model}, sandbox={sandbox})")
            return CreateSessionResult(session_name=session_name, success=True)
        finally:
            try:
                prompt_file.unlink()
            except OSError:
                pass

    def send(self, session_name: str, message: str) -> bool:
        """Deliver a message to a running session and submit it."""
        if not self.session_exists(session_name):
            return False

        if not self._paste_text(session_name, message):
            return False
        # Give the TUI a moment before submitting
        time.sleep(SUBMIT_DELAY)
        return self._send_keys(session_name, "Enter")

    def send_control(self, session_name: str, key: str) -> bool:
        """Send an allow-listed control key (C-c, C-z, Enter, Escape)."""
        if key not in ALLOWED_CONTROL_KEYS:
            logger.warning(f"Rejected control key {key!r}")
            return False
        if not self.session_exists(session_name):
            return False
        return self._send_keys(session_name, key)

    def capture_pane(self, session_name: str, lines: int | None = None, start: int | None = None) -> str | None:
        """Capture the visible pane (or from ``start`` in history)."""
        if not self.session_exists(session_name):
            return None

        args = ["capture-pane", "-t", session_name, "-p"]
        if start is not None:
            args += ["-S", str(start)]

        result = self._run(args)
        if result is None or result.returncode != 0:
            return None

        output = result.stdout
        if lines:
            return tail_lines(output, lines)
        return output

    def capture_full_history(self, session_name: str) -> str | None:
        """Capture the whole scrollback, bounded by max_history_bytes."""
        if not self.session_exists(session_name):
            return None

        result = self._run(["capture-pane", "-t", session_name, "-p", "-S", "-"])
        if result is None or result.returncode != 0:
            return None
        return _truncate_history(result.stdout, self.config.max_history_bytes)

    def kill(self, session_name: str) -> bool:
        if not self.session_exists(session_name):
            return False
        return self._ok(["kill-session", "-t", session_name])

    def list_sessions(self) -> list[SessionInfo]:
        """List sessions whose name carries the supervisor prefix."""
        result = self._run(
            [
                "list-sessions",
                "-F",
                "#{session_name}|#{session_attached}|#{session_windows}|#{session_created}",
            ]
        )
        if result is None or result.returncode != 0:
            return []

        sessions: list[SessionInfo] = []
        prefix = f"{self.config.tmux_prefix}-"
        for line in result.stdout.strip().splitlines():
            if not line.startswith(prefix):
                continue
            parts = line.split("|")
            if len(parts) != 4:
                continue
            name, attached, windows, created = parts
            try:
                created_at = datetime.fromtimestamp(int(created), UTC)
            except ValueError:
                created_at = None
            sessions.append(
                SessionInfo(
                    name=name,
                    attached=attached not in ("", "0"),
                    windows=int(windows) if windows.isdigit() else 0,
                    created=created_at,
                )
            )
        return sessions

    # --- liveness ---

    def _pane_pid(self, session_name: str) -> int | None:
        result = self._run(["list-panes", "-t", session_name, "-F", "#{pane_pid}"])
        if result is None or result.returncode != 0:
            return None
        first = result.stdout.strip().splitlines()[:1]
        if not first or not first[0].strip().isdigit():
            return None
        return int(first[0].strip())

    @staticmethod
    def _pid_alive(pid: int) -> bool:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # Exists, owned by someone else
            return True
        return True

    def _has_children(self, pid: int) -> bool:
        """pgrep exits 1 when the process has no children."""
        try:
            result = subprocess.run(
                ["pgrep", "-P", str(pid)],
                capture_output=True,
                text=True,
                timeout=self.config.tmux_command_timeout,
            )
        except (FileNotFoundError, OSError, subprocess.TimeoutExpired) as e:
            # Cannot tell without pgrep; the root process is alive
            logger.debug(f"pgrep unavailable for pid {pid}: {e}")
            return True
        return result.returncode == 0 and bool(result.stdout.strip())

    def is_session_active(self, session_name: str) -> bool:
        """True if the session's pane root process is still running."""
        if not self.session_exists(session_name):
            return False
        pid = self._pane_pid(session_name)
        return pid is not None and self._pid_alive(pid)

    def heartbeat(self, session_name: str) -> Heartbeat:
        """Check that the agent itself is alive, not just the shell wrapper.

        The pane root is the wrapper shell; the agent runs as its child. A
        parent with no children means the agent has exited.
        """
        if not self.session_exists(session_name):
            return Heartbeat(alive=False, pid=None)

        pid = self._pane_pid(session_name)
        if pid is None:
            return Heartbeat(alive=False, pid=None)
        if not self._pid_alive(pid):
            return Heartbeat(alive=False, pid=pid)
        return Heartbeat(alive=self._has_children(pid), pid=pid)
