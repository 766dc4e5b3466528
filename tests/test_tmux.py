"""Tests for the tmux session adapter and incremental output diffing.

Tests cover:
- Pre-flight validation (nothing reaches tmux on bad input)
- Session creation, prompt delivery and cleanup on failure
- Messaging and the control-key allow-list
- Pane capture, history truncation and session listing
- Heartbeat liveness (root process plus children)
- Soft failure when tmux is missing or hangs

All tests use the FakeTmux stand-in from conftest.py.
"""

from __future__ import annotations

import subprocess

import pytest

from codex_supervisor.core.utils import InvalidJobIdError
from codex_supervisor.sessions.tmux import (
    COMPLETION_MARKER,
    SessionValidationError,
    TmuxSessionAdapter,
    incremental_diff,
)

JOB_ID = "abcd1234"
SESSION = "codex-agent-abcd1234"


# =============================================================================
# Incremental Diff Tests
# =============================================================================


class TestIncrementalDiff:
    """Tests for incremental_diff."""

    def test_sliding_window(self):
        assert incremental_diff("a\nb\nc", "b\nc\nd\ne") == "d\ne"

    def test_empty_previous_returns_current(self):
        assert incremental_diff("", "x\ny") == "x\ny"

    def test_identical_snapshots_give_empty(self):
        assert incremental_diff("a\nb", "a\nb") == ""

    def test_no_overlap_returns_current(self):
        assert incremental_diff("a\nb", "c\nd") == "c\nd"

    def test_prefers_longest_overlap(self):
        """Repeated lines resolve to the longest matching suffix/prefix."""
        assert incremental_diff("x\na\na", "a\na\nb") == "b"

    def test_pure_append(self):
        assert incremental_diff("one\ntwo", "one\ntwo\nthree") == "three"


# =============================================================================
# Validation Tests
# =============================================================================


class TestValidation:
    """Pre-flight validation rejects bad input before any tmux call."""

    def test_invalid_job_id_raises(self, fake_tmux, adapter):
        with pytest.raises(InvalidJobIdError):
            adapter.create("../evil", "prompt", "gpt-5.3-codex", "xhigh", "workspace-write", "/tmp")
        assert fake_tmux.calls == []

    def test_invalid_model_raises(self, fake_tmux, adapter):
        with pytest.raises(SessionValidationError, match="Invalid model"):
            adapter.create(JOB_ID, "prompt", "gpt-5.3-codex;rm -rf /", "xhigh", "workspace-write", "/tmp")
        assert fake_tmux.calls == []

    def test_invalid_reasoning_effort_raises(self, fake_tmux, adapter):
        with pytest.raises(SessionValidationError, match="reasoning effort"):
            adapter.create(JOB_ID, "prompt", "gpt-5.3-codex", "maximum", "workspace-write", "/tmp")
        assert fake_tmux.calls == []

    def test_invalid_sandbox_raises(self, fake_tmux, adapter):
        with pytest.raises(SessionValidationError, match="sandbox"):
            adapter.create(JOB_ID, "prompt", "gpt-5.3-codex", "xhigh", "root", "/tmp")
        assert fake_tmux.calls == []

    def test_session_name_uses_prefix(self, adapter):
        assert adapter.get_session_name(JOB_ID) == SESSION

    def test_session_name_rejects_bad_id(self, adapter):
        with pytest.raises(InvalidJobIdError):
            adapter.get_session_name("abc")


# =============================================================================
# Session Creation Tests
# =============================================================================


class TestCreate:
    """Tests for TmuxSessionAdapter.create."""

    def test_create_success_delivers_prompt(self, fake_tmux, adapter, config, tmp_path):
        result = adapter.create(JOB_ID, "Fix the bug; rm -rf / $(x)", "gpt-5.3-codex", "high", "read-only", str(tmp_path))

        assert result.success
        assert result.session_name == SESSION
        assert result.error is None
        assert SESSION in fake_tmux.sessions
        # Prompt arrives verbatim through the paste buffer
        assert fake_tmux.pasted == [(SESSION, "Fix the bug; rm -rf / $(x)")]
        # Update prompt dismissed, then prompt submitted
        assert fake_tmux.keys == [(SESSION, "3"), (SESSION, "Enter"), (SESSION, "Enter")]

    def test_prompt_never_on_command_line(self, fake_tmux, adapter, tmp_path):
        adapter.create(JOB_ID, "SECRET-PROMPT-TEXT", "gpt-5.3-codex", "high", "read-only", str(tmp_path))
        assert not any("SECRET-PROMPT-TEXT" in " ".join(call) for call in fake_tmux.calls)

    def test_shell_command_runs_codex_under_script(self, fake_tmux, adapter, config, tmp_path):
        adapter.create(JOB_ID, "p", "gpt-5.3-codex", "low", "workspace-write", str(tmp_path))
        command = fake_tmux.commands[SESSION]

        assert "script" in command
        assert str(config.jobs_dir / f"{JOB_ID}.log") in command
        assert 'model="gpt-5.3-codex"' in command
        assert 'model_reasoning_effort="low"' in command
        assert "workspace-write" in command
        assert COMPLETION_MARKER in command

    def test_new_session_runs_in_cwd(self, fake_tmux, adapter, tmp_path):
        adapter.create(JOB_ID, "p", "gpt-5.3-codex", "low", "workspace-write", str(tmp_path))
        (call,) = fake_tmux.tmux_calls("new-session")
        assert call[call.index("-c") + 1] == str(tmp_path)

    def test_prompt_file_removed(self, fake_tmux, adapter, config, tmp_path):
        adapter.create(JOB_ID, "p", "gpt-5.3-codex", "low", "workspace-write", str(tmp_path))
        assert not (config.jobs_dir / f"{JOB_ID}.prompt").exists()

    def test_spawn_failure_returns_error(self, fake_tmux, adapter, config, tmp_path):
        fake_tmux.fail_commands.add("new-session")

        result = adapter.create(JOB_ID, "p", "gpt-5.3-codex", "low", "workspace-write", str(tmp_path))

        assert not result.success
        assert "Failed to create tmux session" in result.error
        assert not (config.jobs_dir / f"{JOB_ID}.prompt").exists()

    def test_delivery_failure_kills_session(self, fake_tmux, adapter, tmp_path):
        """A failure after the spawn leaves no orphaned session."""
        fake_tmux.fail_commands.add("paste-buffer")

        result = adapter.create(JOB_ID, "p", "gpt-5.3-codex", "low", "workspace-write", str(tmp_path))

        assert not result.success
        assert "deliver prompt" in result.error
        assert SESSION not in fake_tmux.sessions
        assert fake_tmux.tmux_calls("kill-session")

    def test_readiness_poll_is_bounded(self, fake_tmux, adapter, tmp_path):
        """An empty pane does not block creation past the poll ceiling."""
        fake_tmux.initial_pane = ""

        result = adapter.create(JOB_ID, "p", "gpt-5.3-codex", "low", "workspace-write", str(tmp_path))

        assert result.success
        assert len(fake_tmux.tmux_calls("capture-pane")) >= 1

    def test_tmux_missing_is_soft_failure(self, mocker, adapter, tmp_path):
        mocker.patch("subprocess.run", side_effect=FileNotFoundError("tmux"))
        mocker.patch("time.sleep")

        result = adapter.create(JOB_ID, "p", "gpt-5.3-codex", "low", "workspace-write", str(tmp_path))

        assert not result.success
        assert "tmux not available" in result.error


# =============================================================================
# Interaction Tests
# =============================================================================


class TestSendAndControl:
    """Tests for send and send_control."""

    def test_send_pastes_and_submits(self, fake_tmux, adapter):
        fake_tmux.sessions[SESSION] = ">"
        assert adapter.send(SESSION, "continue with step 2")
        assert fake_tmux.pasted == [(SESSION, "continue with step 2")]
        assert fake_tmux.keys == [(SESSION, "Enter")]

    def test_send_to_missing_session(self, fake_tmux, adapter):
        assert not adapter.send(SESSION, "hello")
        assert fake_tmux.pasted == []

    def test_send_leaves_no_buffer_files(self, fake_tmux, adapter, config):
        fake_tmux.sessions[SESSION] = ">"
        adapter.send(SESSION, "hello")
        assert list(config.jobs_dir.glob(".tmux-buf-*")) == []

    @pytest.mark.parametrize("key", ["C-c", "C-z", "Enter", "Escape"])
    def test_allowed_control_keys(self, fake_tmux, adapter, key):
        fake_tmux.sessions[SESSION] = ">"
        assert adapter.send_control(SESSION, key)
        assert fake_tmux.keys == [(SESSION, key)]

    @pytest.mark.parametrize("key", ["C-d", "q", "Enter; rm -rf /", ""])
    def test_disallowed_control_keys_never_reach_tmux(self, fake_tmux, adapter, key):
        fake_tmux.sessions[SESSION] = ">"
        assert not adapter.send_control(SESSION, key)
        assert fake_tmux.calls == []

    def test_control_to_missing_session(self, fake_tmux, adapter):
        assert not adapter.send_control(SESSION, "C-c")


# =============================================================================
# Capture and Listing Tests
# =============================================================================


class TestCapture:
    """Tests for pane capture and session listing."""

    def test_capture_pane_tail(self, fake_tmux, adapter):
        fake_tmux.sessions[SESSION] = "one\ntwo\nthree\n"
        assert adapter.capture_pane(SESSION, lines=2) == "two\nthree"

    def test_capture_pane_with_start(self, fake_tmux, adapter):
        fake_tmux.sessions[SESSION] = "x"
        adapter.capture_pane(SESSION, start=-100)
        (call,) = fake_tmux.tmux_calls("capture-pane")
        assert call[-2:] == ["-S", "-100"]

    def test_capture_missing_session(self, fake_tmux, adapter):
        assert adapter.capture_pane(SESSION) is None
        assert adapter.capture_full_history(SESSION) is None

    def test_full_history_uses_whole_scrollback(self, fake_tmux, adapter):
        fake_tmux.sessions[SESSION] = "visible"
        fake_tmux.history[SESSION] = "everything"
        assert adapter.capture_full_history(SESSION) == "everything"

    def test_full_history_truncated(self, fake_tmux, config):
        config.max_history_bytes = 10
        fake_tmux.sessions[SESSION] = "x"
        fake_tmux.history[SESSION] = "0123456789abcdefghij"

        output = TmuxSessionAdapter(config).capture_full_history(SESSION)

        assert output.startswith("[HISTORY TRUNCATED")
        assert output.endswith("abcdefghij")

    def test_kill(self, fake_tmux, adapter):
        fake_tmux.sessions[SESSION] = ">"
        assert adapter.kill(SESSION)
        assert SESSION not in fake_tmux.sessions
        assert not adapter.kill(SESSION)

    def test_list_sessions_filters_prefix(self, fake_tmux, adapter):
        fake_tmux.sessions[SESSION] = ">"
        fake_tmux.sessions["unrelated"] = ">"

        sessions = adapter.list_sessions()

        assert [s.name for s in sessions] == [SESSION]
        assert sessions[0].attached is False
        assert sessions[0].windows == 1
        assert sessions[0].created is not None

    def test_list_sessions_without_server(self, fake_tmux, adapter):
        fake_tmux.fail_commands.add("list-sessions")
        assert adapter.list_sessions() == []

    def test_timeout_is_soft_failure(self, mocker, adapter):
        mocker.patch("subprocess.run", side_effect=subprocess.TimeoutExpired("tmux", 10))
        assert adapter.session_exists(SESSION) is False
        assert adapter.capture_pane(SESSION) is None
        assert adapter.list_sessions() == []

    def test_attach_command(self, adapter):
        assert adapter.get_attach_command(SESSION) == f"tmux attach -t {SESSION}"

    def test_is_available(self, mocker, adapter):
        mocker.patch("shutil.which", return_value=None)
        assert not adapter.is_available()


# =============================================================================
# Liveness Tests
# =============================================================================


class TestHeartbeat:
    """Tests for heartbeat and is_session_active."""

    def test_alive_with_children(self, fake_tmux, adapter):
        fake_tmux.sessions[SESSION] = ">"
        beat = adapter.heartbeat(SESSION)
        assert beat.alive
        assert beat.pid == fake_tmux.pane_pid

    def test_not_alive_without_children(self, fake_tmux, adapter):
        """The wrapper shell alone does not count as a live agent."""
        fake_tmux.sessions[SESSION] = ">"
        fake_tmux.has_children = False

        beat = adapter.heartbeat(SESSION)

        assert not beat.alive
        assert beat.pid == fake_tmux.pane_pid
        assert adapter.is_session_active(SESSION)

    def test_dead_root_process(self, fake_tmux, adapter, mocker):
        fake_tmux.sessions[SESSION] = ">"
        mocker.patch("os.kill", side_effect=ProcessLookupError)
        assert not adapter.heartbeat(SESSION).alive
        assert not adapter.is_session_active(SESSION)

    def test_missing_session(self, fake_tmux, adapter):
        beat = adapter.heartbeat(SESSION)
        assert not beat.alive
        assert beat.pid is None
