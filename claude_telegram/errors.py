"""Error types for claude-telegram.

Errors that belong to a single user's request (the CLI failing to start,
a timeout) never escape the orchestrator; they are folded into a
``ClaudeResult``. The types here are for the startup path and for the
few internal seams where raising is the clearest signal.
"""

from __future__ import annotations


class ClaudeTelegramError(Exception):
    """Base exception for all claude-telegram errors."""

    def __init__(self, message: str, *, component: str = "claude_telegram", detail: str = ""):
        super().__init__(message)
        self.component = component
        self.detail = detail


class ConfigError(ClaudeTelegramError):
    """Configuration errors (missing file, bad YAML, unset ${VAR}, etc.)."""

    def __init__(self, message: str, *, detail: str = ""):
        super().__init__(message, component="config", detail=detail)


class SpawnError(ClaudeTelegramError):
    """The Claude CLI could not be started (missing or not executable)."""

    def __init__(self, message: str, *, detail: str = ""):
        super().__init__(message, component="runner", detail=detail)


class HookError(ClaudeTelegramError):
    """A configured hook could not be imported or instantiated."""

    def __init__(self, message: str, *, detail: str = ""):
        super().__init__(message, component="hooks", detail=detail)
