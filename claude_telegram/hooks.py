"""Extension hooks around each Claude run.

A hook is any object with some of these methods (sync or async)::

    name: str
    commands: list[tuple[str, str]]             # shown in /help
    init(ctx: HookContext) -> None              # once, before polling starts
    handle_command(user_id, chat_id, command, args) -> str | None
    before_claude(user_id, message) -> HookDecision | None
    after_claude(user_id, result) -> ClaudeResult | None
    dispose() -> None

Hooks run in registration order. The first ``deny`` stops the chain and
the request never reaches Claude. Returning None keeps the current value.
A hook that raises is logged and skipped.

A ``/command`` listed in a hook's ``commands`` is routed to that hook's
``handle_command``; a returned string is sent back as the reply.
"""

from __future__ import annotations

import importlib
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from .errors import HookError
from .runner import ClaudeResult

log = logging.getLogger("claude_telegram")


@dataclass
class HookDecision:
    action: str = "continue"  # continue | deny
    message: str | None = None
    reply: str | None = None

    @classmethod
    def proceed(cls, message: str | None = None) -> "HookDecision":
        return cls("continue", message=message)

    @classmethod
    def deny(cls, reply: str) -> "HookDecision":
        return cls("deny", reply=reply)


@dataclass
class HookContext:
    """Handed to ``init()``: ways for a hook to reach users and Claude."""

    reply: Callable[[int, str], Awaitable[None]]
    dispatch: Callable[[int, int, str], Awaitable[Any]]
    deliver: Callable[[int, Any], Awaitable[None]]
    sessions: Any


async def _call(fn, *args):
    value = fn(*args)
    if inspect.isawaitable(value):
        value = await value
    return value


def _name(hook) -> str:
    return getattr(hook, "name", None) or type(hook).__name__


class HookChain:
    """Ordered list of hooks applied before and after every run."""

    def __init__(self, hooks: list | None = None):
        self.hooks: list = list(hooks or [])

    def add(self, hook):
        self.hooks.append(hook)

    def __len__(self) -> int:
        return len(self.hooks)

    @property
    def commands(self) -> list[tuple[str, str]]:
        out = []
        for hook in self.hooks:
            for cmd in getattr(hook, "commands", None) or []:
                command, description = cmd
                if command.startswith("/"):
                    out.append((command, description))
        return out

    def owner(self, command: str):
        """The hook that declared ``command`` (without the slash), or None."""
        command = command.lstrip("/").lower()
        for hook in self.hooks:
            for declared, _ in getattr(hook, "commands", None) or []:
                if declared.startswith("/") and declared[1:].lower() == command:
                    return hook
        return None

    async def init(self, ctx: HookContext):
        for hook in self.hooks:
            fn = getattr(hook, "init", None)
            if fn is None:
                continue
            try:
                await _call(fn, ctx)
            except Exception:
                log.exception("hook %s init() failed", _name(hook))

    async def run_command(
        self, hook, user_id: int, chat_id: int, command: str, args: str,
    ) -> str | None:
        """Invoke ``hook.handle_command``. Returns the reply text, if any."""
        fn = getattr(hook, "handle_command", None)
        if fn is None:
            log.warning("hook %s declares /%s but has no handle_command", _name(hook), command)
            return None
        try:
            reply = await _call(fn, user_id, chat_id, command, args)
        except Exception:
            log.exception("hook %s failed on /%s", _name(hook), command)
            return f"Command /{command} failed."
        return reply if isinstance(reply, str) and reply else None

    async def before(self, user_id: int, message: str) -> tuple[str, str | None]:
        """Returns (message, denial_reply). A non-None reply means denied."""
        for hook in self.hooks:
            fn = getattr(hook, "before_claude", None)
            if fn is None:
                continue
            try:
                decision = await _call(fn, user_id, message)
            except Exception:
                log.exception("hook %s before_claude failed", _name(hook))
                continue
            if decision is None:
                continue
            if decision.action == "deny":
                log.info("hook %s denied message from %d", _name(hook), user_id)
                return message, decision.reply or "Request denied."
            if decision.message is not None:
                message = decision.message
        return message, None

    async def after(self, user_id: int, result: ClaudeResult) -> ClaudeResult:
        for hook in self.hooks:
            fn = getattr(hook, "after_claude", None)
            if fn is None:
                continue
            try:
                replaced = await _call(fn, user_id, result)
            except Exception:
                log.exception("hook %s after_claude failed", _name(hook))
                continue
            if replaced is not None:
                result = replaced
        return result

    async def dispose(self):
        """Dispose hooks in reverse order. Failures are logged, never raised."""
        for hook in reversed(self.hooks):
            fn = getattr(hook, "dispose", None)
            if fn is None:
                continue
            try:
                await _call(fn)
            except Exception as exc:
                log.error("hook %s dispose() failed: %s", _name(hook), exc)


def load_hooks(specs: list[Any]) -> list:
    """Instantiate hooks from config entries.

    Each entry is ``"package.module:attr"`` or a mapping with ``import``,
    optional ``enabled`` (default true) and ``options``. A callable attr
    (class or factory) is called with ``options``; anything else is used
    as the hook object itself.
    """
    hooks = []
    seen: set[str] = set()
    for spec in specs:
        if isinstance(spec, str):
            target, options = spec, None
        elif isinstance(spec, dict):
            if spec.get("enabled") is False:
                continue
            target, options = spec.get("import"), spec.get("options")
        else:
            raise HookError(f"Invalid hook entry: {spec!r}")
        if not target:
            raise HookError("hooks[].import is required")

        module_name, _, attr = str(target).partition(":")
        try:
            module = importlib.import_module(module_name)
            obj = getattr(module, attr or "hook")
        except (ImportError, AttributeError) as exc:
            raise HookError(f"Failed to load hook {target!r}: {exc}") from exc

        if callable(obj):
            obj = obj(**options) if options else obj()
        if obj is None:
            raise HookError(f"Hook factory {target!r} returned None")

        name = _name(obj)
        if name in seen:
            raise HookError(f"Duplicate hook name: {name!r}")
        seen.add(name)
        hooks.append(obj)
    return hooks
