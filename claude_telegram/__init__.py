"""claude-telegram: a Telegram front end for the Claude Code CLI."""

__version__ = "0.1.0"
