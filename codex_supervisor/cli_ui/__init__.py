"""Terminal UI helpers for the CLI."""

from codex_supervisor.cli_ui.watch import JobWatcher

__all__ = ["JobWatcher"]
