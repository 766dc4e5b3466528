"""Codex Supervisor - tmux-hosted agent orchestrator.

Runs interactive Codex agents inside tmux sessions and infers their outcome
from captured terminal output.
"""

__version__ = "0.1.0"
