"""Telegram bot: poll updates, gate access, route commands, deliver replies."""

from __future__ import annotations

import asyncio
import logging

from .config import Config
from .hooks import HookChain, HookContext, load_hooks
from .orchestrator import CancelStatus, DispatchOutcome, DispatchStatus, Orchestrator
from .runner import ClaudeRunner
from .session import SessionStore
from .shutdown import ShutdownCoordinator
from .telegram import MAX_MESSAGE_LENGTH, TelegramClient
from .tracker import ProcessTracker

log = logging.getLogger("claude_telegram")

_CANCEL_REPLIES = {
    CancelStatus.NOTHING: "Nothing to cancel.",
    CancelStatus.ALREADY: "Already cancelling...",
    CancelStatus.CANCELLING: "Cancelling... (may take a few seconds)",
}

_BOT_COMMANDS = [
    {"command": "cancel", "description": "Stop the current request"},
    {"command": "clear", "description": "Start a new conversation"},
    {"command": "help", "description": "Usage help"},
]


def split_message(text: str, limit: int = MAX_MESSAGE_LENGTH) -> list[str]:
    """Split text into Telegram-sized chunks, preferring line boundaries."""
    if len(text) <= limit:
        return [text]
    chunks: list[str] = []
    current = ""
    for line in text.splitlines(keepends=True):
        while len(line) > limit:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(line[:limit])
            line = line[limit:]
        if len(current) + len(line) > limit:
            chunks.append(current)
            current = ""
        current += line
    if current:
        chunks.append(current)
    return [c for c in chunks if c.strip()] or [text[:limit]]


class Bot:
    """Main event loop: poll Telegram, hand text to the orchestrator."""

    def __init__(self, config: Config, hooks: list | None = None, tg: TelegramClient | None = None):
        self.cfg = config
        self.tg = tg or TelegramClient(config.token)
        self.tracker = ProcessTracker()
        self.sessions = SessionStore(config.sessions_file)
        self.hooks = HookChain(load_hooks(config.hooks) if hooks is None else hooks)
        self.orchestrator = Orchestrator(
            runner=ClaudeRunner.from_config(config),
            sessions=self.sessions,
            tg=self.tg,
            tracker=self.tracker,
            hooks=self.hooks,
            kill_grace=config.kill_grace,
        )
        self.shutdown = ShutdownCoordinator(
            self.tracker,
            stop_intake=self.stop,
            teardown=self.hooks.dispose,
            timeout=config.shutdown_timeout,
        )
        self.offset = 0
        self.alive = True
        self._tasks: set[asyncio.Task] = set()
        self._commands = {
            "start": self._cmd_start,
            "help": self._cmd_help,
            "cancel": self._cmd_cancel,
            "clear": self._cmd_clear,
        }

    # -- Lifecycle --

    def stop(self):
        self.alive = False

    async def run(self):
        log.info("Starting bot")
        log.info("Workspace: %s", self.cfg.workspace)
        log.info("Permission mode: %s", self.cfg.permission_mode)
        log.info(
            "Whitelist: %s",
            ", ".join(map(str, self.cfg.whitelist)) or "(empty, no one can access)",
        )
        log.info("Hooks: %d", len(self.hooks))

        self.shutdown.install()
        me = await asyncio.to_thread(self.tg.get_me)
        if me:
            log.info("Bot: @%s", me.get("username"))
        await asyncio.to_thread(self.tg.set_my_commands, self._menu())
        await self.hooks.init(self.hook_context())

        finished = asyncio.ensure_future(self.shutdown.finished.wait())
        try:
            while self.alive:
                poll = asyncio.ensure_future(
                    asyncio.to_thread(self.tg.poll, self.offset, self.cfg.poll_timeout)
                )
                done, _ = await asyncio.wait({poll, finished}, return_when=asyncio.FIRST_COMPLETED)
                if poll not in done:
                    poll.cancel()
                    break
                try:
                    updates = poll.result()
                except Exception:
                    log.exception("poll loop error")
                    await asyncio.sleep(5)
                    continue
                for u in updates:
                    self.offset = u["update_id"] + 1
                    msg = u.get("message")
                    if msg and self.alive:
                        await self.handle_message(msg)
            await self.shutdown.finished.wait()
        finally:
            finished.cancel()

        if self._tasks:
            # Processes are gone by now; let the handlers post their last replies.
            await asyncio.wait(set(self._tasks), timeout=5)
        log.info("Bot stopped")

    def hook_context(self) -> HookContext:
        return HookContext(
            reply=self.reply,
            dispatch=self.orchestrator.dispatch,
            deliver=self.deliver,
            sessions=self.sessions,
        )

    def _menu(self) -> list[dict]:
        menu = list(_BOT_COMMANDS)
        for command, description in self.hooks.commands:
            menu.append({"command": command.lstrip("/"), "description": description})
        return menu

    # -- Message routing --

    def is_allowed(self, user_id: int) -> bool:
        # Empty whitelist means no one can use the bot.
        return user_id in self.cfg.whitelist

    async def handle_message(self, msg: dict):
        chat = msg.get("chat") or {}
        sender = msg.get("from") or {}
        chat_id = chat.get("id")
        user_id = sender.get("id")
        if not chat_id or not user_id:
            return

        if chat.get("type") != "private":
            await self.reply(chat_id, "Please message me in a private chat.")
            return
        if not self.is_allowed(user_id):
            log.info("denied user %d", user_id)
            await self.reply(chat_id, "Access denied.")
            return

        text = (msg.get("text") or "").strip()
        if not text:
            return

        if text.startswith("/"):
            head, *rest = text.split(maxsplit=1)
            args = rest[0] if rest else ""
            cmd = head.lstrip("/").split("@")[0].lower()
            handler = self._commands.get(cmd)
            if handler:
                await handler(user_id, chat_id)
                return
            hook = self.hooks.owner(cmd)
            if hook is not None:
                # Hook commands may dispatch to Claude; keep the poll loop free.
                self._spawn(self._hook_command(hook, user_id, chat_id, cmd, args))
            # Unknown commands are never sent to Claude.
            return

        log.info("[%d] '%s'", user_id, text[:80])
        self._spawn(self._handle_text(user_id, chat_id, text))

    async def _handle_text(self, user_id: int, chat_id: int, text: str):
        if not self.orchestrator.is_busy(user_id):
            await asyncio.to_thread(self.tg.typing, chat_id)
        try:
            outcome = await self.orchestrator.dispatch(user_id, chat_id, text)
        except Exception as exc:
            log.exception("[%d] dispatch failed", user_id)
            await self.reply(chat_id, f"Error: {str(exc)[:300]}")
            return
        await self.deliver(chat_id, outcome)

    async def _hook_command(self, hook, user_id: int, chat_id: int, cmd: str, args: str):
        reply = await self.hooks.run_command(hook, user_id, chat_id, cmd, args)
        if reply:
            await self.reply(chat_id, reply)

    async def deliver(self, chat_id: int, outcome: DispatchOutcome):
        """Send the one terminal reply for a dispatch."""
        if outcome.status is DispatchStatus.CANCELED:
            # /cancel or /clear already acknowledged it.
            return
        if outcome.status is not DispatchStatus.COMPLETED:
            await self.reply(chat_id, outcome.reply or "")
            return

        result = outcome.result
        if result.success and result.output.strip():
            await self.reply(chat_id, result.output)
        elif result.success:
            await self.reply(chat_id, "(empty response)")
        elif result.timed_out:
            await self.reply(chat_id, f"\u23f1 {result.error}.")
        elif result.error:
            await self.reply(chat_id, f"Error: {result.error[:300]}")
        else:
            await self.reply(chat_id, "Unknown error occurred.")

    # -- Commands --

    def help_text(self) -> str:
        lines = [
            "Send me any text message to chat with Claude.\n",
            "/cancel - stop current request",
            "/clear - start a new conversation",
            "/help - show this message",
        ]
        extra = self.hooks.commands
        if extra:
            lines.append("\nExtra commands:")
            for command, description in extra:
                lines.append(f"{command} - {description}")
        return "\n".join(lines)

    async def _cmd_start(self, user_id: int, chat_id: int):
        await self.reply(chat_id, "Hello!\n\n" + self.help_text())

    async def _cmd_help(self, user_id: int, chat_id: int):
        await self.reply(chat_id, self.help_text())

    async def _cmd_cancel(self, user_id: int, chat_id: int):
        status = await self.orchestrator.cancel(user_id)
        await self.reply(chat_id, _CANCEL_REPLIES[status])

    async def _cmd_clear(self, user_id: int, chat_id: int):
        await self.orchestrator.reset_session(user_id)
        await self.reply(chat_id, "Session cleared. Starting fresh.")

    # -- Helpers --

    async def reply(self, chat_id: int, text: str):
        """Send text, split to Telegram's length limit. Failures are logged only."""
        for chunk in split_message(text):
            try:
                sent = await asyncio.to_thread(self.tg.send, chat_id, chunk)
            except Exception as exc:
                log.warning("reply to %d failed: %s", chat_id, exc)
                return
            if not sent:
                log.warning("reply to %d was not delivered", chat_id)
                return

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task):
        """Handle completed background tasks: cleanup and log exceptions."""
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            log.error("background task failed: %s", exc, exc_info=exc)
