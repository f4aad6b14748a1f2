"""Session log backends."""

from ..provider import SessionLogProvider
from .claude_code import ClaudeCodeLogReader


def get_log_provider() -> SessionLogProvider:
    """Return the log reader for the installed assistant."""
    return ClaudeCodeLogReader()
