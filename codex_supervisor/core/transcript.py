"""Transcript parsing: raw terminal logs and Codex structured session logs.

Two sources describe the same run:

- The raw transcript written by ``script`` inside the tmux session. It is
  noisy but always present, and it is the only place process-level
  diagnostics (non-zero exits, disk full) show up.
- The structured session log Codex writes under ``$CODEX_HOME/sessions``,
  found via the session id printed in the raw transcript. It carries token
  accounting, agent messages and apply_patch calls.

generate_report() reconciles both into one TranscriptReport.

Issue detection is deliberately operational: only line-anchored prefixes and
known exit-code phrases count. A sentence that merely talks about errors is
not an error.
"""

from __future__ import annotations

import json
import logging
import math
import os
import re
from collections.abc import Callable
from pathlib import Path
from typing import Any

from codex_supervisor.core.models import DiffStats, SessionData, TokenUsage, TranscriptReport
from codex_supervisor.core.utils import strip_ansi_codes

logger = logging.getLogger(__name__)

CODEX_HOME_ENV = "CODEX_HOME"

# Tried in order; first match wins.
SESSION_ID_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"session id:\s*([0-9A-Za-z][0-9A-Za-z-]*)", re.IGNORECASE),
    re.compile(r"session_id=([0-9A-Za-z][0-9A-Za-z-]*)", re.IGNORECASE),
    re.compile(r"session_id:\s*([0-9A-Za-z][0-9A-Za-z-]*)", re.IGNORECASE),
    re.compile(r'"session_id"\s*:\s*"([0-9A-Za-z][0-9A-Za-z-]*)"'),
)

PATCH_MARKER = re.compile(r"^(?:\*\*\*\s*)?(Add|Update|Delete) File:\s*(.+?)\s*$")

# (label, pattern) - every pattern is anchored to an operational signature.
ERROR_RULES: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("Error line detected", re.compile(r"^\s*(?:fatal\s+)?error(?:\[[^\]]*\])?:\s*\S", re.IGNORECASE)),
    (
        "Non-zero process exit",
        re.compile(
            r"\b(?:exited|exit(?:ed)? with)\s+(?:exit\s+)?(?:code|status)\s*[:=]?\s*[1-9]\d*\b"
            r"|\bexit (?:code|status)[:=]\s*[1-9]\d*\b",
            re.IGNORECASE,
        ),
    ),
    ("Disk full", re.compile(r"\bENOSPC\b|No space left on device", re.IGNORECASE)),
    ("Out of memory", re.compile(r"\bENOMEM\b|Cannot allocate memory|heap out of memory|\bOOM[- ]killed\b")),
    ("Process panic", re.compile(r"^\s*thread '[^']*' panicked at")),
    ("Python traceback", re.compile(r"^\s*Traceback \(most recent call last\):")),
    ("Permission denied", re.compile(r"^\s*(?:\S+:\s+)?(?:EACCES\b|Permission denied\b)")),
)

WARNING_RULES: tuple[tuple[str, re.Pattern[str]], ...] = (
    (
        "Deprecation warning",
        re.compile(r"^\s*(?:warn(?:ing)?:.*\bdeprecat|\S*DeprecationWarning:)", re.IGNORECASE),
    ),
    ("Warning line detected", re.compile(r"^\s*warn(?:ing)?(?:\[[^\]]*\])?:\s*\S", re.IGNORECASE)),
    ("Rate limited", re.compile(r"\b429 Too Many Requests\b|^\s*rate limit(?:ed| exceeded| reached)\b", re.IGNORECASE)),
    ("Retry/reconnect", re.compile(r"^\s*(?:Re-?connecting|Retrying)\b.*\d", re.IGNORECASE)),
)

MAX_ISSUE_LINE = 200


# --- raw transcript ---


def extract_session_id(raw: str) -> str | None:
    """Find the Codex session id printed in a raw transcript."""
    text = strip_ansi_codes(raw)
    for pattern in SESSION_ID_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(1)
    return None


def _scan(lines: list[str], rules: tuple[tuple[str, re.Pattern[str]], ...]) -> list[str]:
    found: list[str] = []
    for line in lines:
        for label, pattern in rules:
            if pattern.search(line):
                message = f"{label}: {line.strip()[:MAX_ISSUE_LINE]}"
                if message not in found:
                    found.append(message)
                break
    return found


def detect_issues(raw: str) -> tuple[list[str], list[str]]:
    """Scan a transcript for error and warning signatures.

    Returns:
        (errors, warnings), each a de-duplicated list of "<label>: <line>"
    """
    lines = strip_ansi_codes(raw).replace("\r\n", "\n").replace("\r", "\n").split("\n")
    return _scan(lines, ERROR_RULES), _scan(lines, WARNING_RULES)


# --- structured session log discovery ---


def codex_home() -> Path:
    override = os.environ.get(CODEX_HOME_ENV, "").strip()
    if override:
        return Path(override).expanduser()
    return Path.home() / ".codex"


def find_session_file(session_id: str) -> str | None:
    """Locate the structured log for a session id, newest first."""
    if not re.fullmatch(r"[0-9A-Za-z][0-9A-Za-z-]*", session_id or ""):
        return None

    sessions_dir = codex_home() / "sessions"
    if not sessions_dir.is_dir():
        return None

    candidates = [
        path
        for pattern in (f"*{session_id}*.jsonl", f"*{session_id}*.json")
        for path in sessions_dir.rglob(pattern)
        if path.is_file()
    ]
    if not candidates:
        return None

    newest = max(candidates, key=lambda p: p.stat().st_mtime)
    return str(newest)


# --- structured session log parsing ---


def parse_patch_body(body: str, stats: DiffStats) -> None:
    """Append paths named by Add/Update/Delete File markers to stats."""
    targets = {
        "Add": stats.files_added,
        "Update": stats.files_updated,
        "Delete": stats.files_deleted,
    }
    for line in body.splitlines():
        match = PATCH_MARKER.match(line.strip())
        if not match:
            continue
        bucket = targets[match.group(1)]
        path = match.group(2)
        if path not in bucket:
            bucket.append(path)


def _patch_text(arguments: Any) -> str | None:
    """Extract the patch body from an apply_patch call's arguments.

    Codex has shipped the body raw, as {"input": ...} and as
    {"command": ["apply_patch", body]}.
    """
    if isinstance(arguments, str):
        stripped = arguments.lstrip()
        if stripped.startswith("{"):
            try:
                return _patch_text(json.loads(stripped))
            except json.JSONDecodeError:
                return arguments
        return arguments
    if isinstance(arguments, dict):
        if isinstance(arguments.get("input"), str):
            return arguments["input"]
        command = arguments.get("command")
        if isinstance(command, list):
            strings = [c for c in command if isinstance(c, str)]
            return strings[-1] if strings else None
    return None


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _message_text(content: Any) -> str | None:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            part.get("text")
            for part in content
            if isinstance(part, dict) and isinstance(part.get("text"), str)
        ]
        text = "\n".join(p for p in parts if p)
        return text or None
    return None


def _count(value: Any) -> int | None:
    """A token count as int, or None for anything that is not a non-negative number."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value) or value < 0:
        return None
    return int(value)


def _on_token_count(payload: dict[str, Any], data: SessionData) -> None:
    info = payload.get("info")
    if not isinstance(info, dict):
        return
    usage = info.get("total_token_usage")
    if not isinstance(usage, dict):
        usage = {}

    tokens = data.tokens or TokenUsage()
    input_tokens = _count(usage.get("input_tokens"))
    output_tokens = _count(usage.get("output_tokens"))
    window = _count(info.get("model_context_window"))
    if input_tokens is not None:
        tokens.input = input_tokens
    if output_tokens is not None:
        tokens.output = output_tokens
    if window is not None:
        tokens.context_window = window
    if tokens.context_window > 0:
        # Input tokens already include the replayed conversation, so they alone
        # measure how full the context window is.
        tokens.context_used_pct = _round_half_up(100 * tokens.input / tokens.context_window)
    data.tokens = tokens


def _on_agent_message(payload: dict[str, Any], data: SessionData) -> None:
    message = payload.get("message")
    if isinstance(message, str) and message.strip():
        data.summary = message


def _on_response_message(payload: dict[str, Any], data: SessionData) -> None:
    if payload.get("role") != "assistant":
        return
    text = _message_text(payload.get("content"))
    if text and text.strip():
        data.summary = text


def _on_tool_call(payload: dict[str, Any], data: SessionData) -> None:
    if payload.get("name") != "apply_patch":
        return
    body = _patch_text(payload.get("arguments", payload.get("input")))
    if body:
        parse_patch_body(body, data.diff_stats)


RecordHandler = Callable[[dict[str, Any], SessionData], None]

# (record type, payload type) -> handler. Unlisted kinds are ignored.
RECORD_HANDLERS: dict[tuple[str, str], RecordHandler] = {
    ("event_msg", "token_count"): _on_token_count,
    ("event_msg", "agent_message"): _on_agent_message,
    ("response_item", "message"): _on_response_message,
    ("response_item", "function_call"): _on_tool_call,
    ("response_item", "custom_tool_call"): _on_tool_call,
}


def parse_jsonl_session(text: str) -> SessionData:
    """Fold newline-delimited session records into SessionData."""
    data = SessionData()
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(record, dict):
            continue
        payload = record.get("payload")
        if not isinstance(payload, dict):
            continue

        handler = RECORD_HANDLERS.get((str(record.get("type")), str(payload.get("type"))))
        if handler is not None:
            handler(payload, data)
    return data


def parse_json_session(text: str) -> SessionData:
    """Parse the older single-document session format ({"items": [...]})."""
    data = SessionData()
    try:
        document = json.loads(text)
    except json.JSONDecodeError:
        return data
    if not isinstance(document, dict):
        return data

    items = document.get("items")
    if not isinstance(items, list):
        return data

    for item in items:
        if not isinstance(item, dict):
            continue
        if item.get("type") in ("function_call", "custom_tool_call"):
            _on_tool_call(item, data)
        elif item.get("role") == "assistant":
            _on_response_message(item, data)
    return data


def parse_session_file(path: str) -> SessionData | None:
    """Parse a structured session log by extension. None if unreadable."""
    try:
        text = Path(path).read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        logger.debug(f"Cannot read session file {path}: {e}")
        return None

    if path.endswith(".jsonl"):
        return parse_jsonl_session(text)
    return parse_json_session(text)


# --- report ---


def generate_report(session_file_path: str | None, raw_log_text: str | None) -> TranscriptReport:
    """Reconcile the structured log and the raw transcript into one report.

    Diff stats, summary and tokens come from the structured log when it can be
    read; otherwise diff stats fall back to patch markers echoed in the raw
    transcript. Errors and warnings always come from the raw transcript.
    """
    raw = raw_log_text or ""
    report = TranscriptReport(
        session_id=extract_session_id(raw) if raw else None,
        session_file=session_file_path,
    )

    session = parse_session_file(session_file_path) if session_file_path else None
    if session is not None:
        report.tokens = session.tokens
        report.summary = session.summary
        report.diff_stats = session.diff_stats
    elif raw:
        parse_patch_body(strip_ansi_codes(raw), report.diff_stats)

    report.errors, report.warnings = detect_issues(raw)
    return report
