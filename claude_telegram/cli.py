"""CLI entry point: `claude-telegram start`, `check`, `whoami`."""

from __future__ import annotations

import asyncio
import logging
import os
import subprocess
import sys
import time
from logging.handlers import RotatingFileHandler
from pathlib import Path

import click

from . import __version__
from .config import Config, DEFAULT_CONFIG_FILE
from .errors import ClaudeTelegramError

REQUIRED_CLI_FLAGS = (
    "--output-format",
    "stream-json",
    "--permission-mode",
    "--resume",
    "--session-id",
)


def _setup_logging(log_dir: Path, verbose: bool = False):
    log_dir.mkdir(parents=True, exist_ok=True)
    log = logging.getLogger("claude_telegram")
    log.setLevel(logging.DEBUG if verbose else logging.INFO)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    fh = RotatingFileHandler(
        log_dir / "claude-telegram.log", maxBytes=5_000_000, backupCount=2
    )
    fh.setFormatter(fmt)
    sh = logging.StreamHandler()
    sh.setFormatter(fmt)
    log.addHandler(fh)
    log.addHandler(sh)


def _load_config(config_path: str | None) -> Config:
    try:
        return Config(config_path)
    except ClaudeTelegramError as exc:
        click.echo(f"Config error: {exc}", err=True)
        if exc.detail:
            click.echo(f"  {exc.detail}", err=True)
        sys.exit(1)


config_option = click.option(
    "-c", "--config", "config_path", default=None,
    help=f"Config file path (default: ./{DEFAULT_CONFIG_FILE})",
)


@click.group()
@click.version_option(__version__, prog_name="claude-telegram")
def main():
    """claude-telegram: chat with the Claude Code CLI from Telegram."""
    pass


@main.command()
@config_option
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
def start(config_path, verbose):
    """Start the bot (foreground)."""
    cfg = _load_config(config_path)
    errors = cfg.validate()
    if errors:
        click.echo("Configuration errors:", err=True)
        for e in errors:
            click.echo(f"  - {e}", err=True)
        sys.exit(1)

    cfg.data_dir.mkdir(parents=True, exist_ok=True)
    _setup_logging(cfg.log_dir, verbose)

    from .bot import Bot
    try:
        bot = Bot(cfg)
    except ClaudeTelegramError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    asyncio.run(bot.run())


@main.command()
@config_option
def check(config_path):
    """Validate config and the Claude CLI installation."""
    click.echo("[check] Validating config...")
    cfg = _load_config(config_path)
    errors = cfg.validate()
    if errors:
        for e in errors:
            click.echo(f"  ✗ Config error: {e}", err=True)
        sys.exit(1)
    click.echo("  ✓ Config loaded")
    click.echo(f"  ✓ Workspace: {cfg.workspace}")
    click.echo(f"  ✓ Whitelist: {len(cfg.whitelist)} user(s)")
    click.echo(f"  ✓ Permission mode: {cfg.permission_mode}")

    try:
        version = subprocess.run(
            [cfg.claude_path, "--version"],
            capture_output=True, text=True, check=True, timeout=30,
        ).stdout.strip()
        click.echo(f"  ✓ Claude CLI: {version}")
    except (OSError, subprocess.SubprocessError):
        click.echo(f"  ✗ Claude CLI not found or not executable: {cfg.claude_path}", err=True)
        sys.exit(1)

    # Flags this package relies on; no API calls are made.
    try:
        help_text = subprocess.run(
            [cfg.claude_path, "--help"],
            capture_output=True, text=True, check=True, timeout=30,
        ).stdout
    except (OSError, subprocess.SubprocessError):
        click.echo("  ✗ Failed to validate Claude CLI help output", err=True)
        sys.exit(1)
    missing = [flag for flag in REQUIRED_CLI_FLAGS if flag not in help_text]
    if missing:
        click.echo(f"  ✗ Claude CLI is missing required flags: {', '.join(missing)}", err=True)
        sys.exit(1)
    click.echo("  ✓ Claude CLI flags look compatible")

    click.echo("\nAll checks passed.")


@main.command()
@config_option
def whoami(config_path):
    """Reply to any private message with the sender's Telegram user id."""
    token = None
    path = Path(config_path) if config_path else DEFAULT_CONFIG_FILE
    if path.exists():
        token = _load_config(config_path).token
    token = token or os.environ.get("TELEGRAM_BOT_TOKEN")
    if not token:
        click.echo(
            "No bot token found. Provide a config file or set TELEGRAM_BOT_TOKEN.", err=True
        )
        sys.exit(1)

    from .telegram import TelegramClient
    tg = TelegramClient(token)
    click.echo("[whoami] Bot started. Send any message to get your user ID.")
    click.echo("[whoami] Press Ctrl+C to stop.\n")

    offset = 0
    try:
        while True:
            updates = tg.poll(offset)
            if not updates:
                time.sleep(1)
            for u in updates:
                offset = u["update_id"] + 1
                msg = u.get("message") or {}
                chat = msg.get("chat") or {}
                if not chat.get("id"):
                    continue
                if chat.get("type") != "private":
                    tg.send(chat["id"], "Please message me in a private chat.")
                    continue
                tg.send(chat["id"], whoami_text(msg.get("from") or {}))
    except KeyboardInterrupt:
        click.echo("\nStopped.")


def whoami_text(sender: dict) -> str:
    username = sender.get("username") or "(no username)"
    name = " ".join(
        p for p in (sender.get("first_name"), sender.get("last_name")) if p
    ) or "(no name)"
    user_id = sender.get("id")
    return (
        "Your Telegram info:\n\n"
        f"User ID: {user_id}\n"
        f"Username: @{username}\n"
        f"Name: {name}\n\n"
        f"Add {user_id} to your whitelist config."
    )
