"""Activity status: map stream events to a label and keep a status message fresh.

The status message shows what Claude is doing right now and how long the
request has been running, e.g. ``📖 Reading  ⏱ 1:07``. Telegram rate-limits
edits, so the text is refreshed on a fixed interval and only sent when it
actually changed.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

from .runner import StreamEvent

log = logging.getLogger("claude_telegram")

UPDATE_INTERVAL = 3.0

MCP_PREFIX = "mcp__"

TOOL_ACTIVITIES = {
    "Read": "reading",
    "NotebookRead": "reading",
    "Edit": "editing",
    "MultiEdit": "editing",
    "NotebookEdit": "editing",
    "Write": "writing",
    "Grep": "searching",
    "Glob": "searching",
    "LS": "searching",
    "Bash": "command",
    "WebFetch": "web",
    "WebSearch": "web",
    "Task": "subagent",
}

ACTIVITY_LABELS = {
    "thinking": "\U0001f4ad Thinking",
    "reading": "\U0001f4d6 Reading",
    "editing": "\u270f\ufe0f Editing",
    "writing": "\U0001f4dd Writing",
    "searching": "\U0001f50d Searching",
    "command": "\U0001f527 Running command",
    "web": "\U0001f310 Web lookup",
    "subagent": "\U0001f9e9 Sub-agent",
    "mcp": "\U0001f50c MCP tool",
}

EditFunc = Callable[[str], Awaitable[Any]]


def classify(event: StreamEvent) -> str | None:
    """Return the activity key for an event, or None if it says nothing new."""
    if event.type != "assistant":
        return None
    for block in event.content:
        if block.get("type") != "tool_use":
            continue
        name = block.get("name")
        if not isinstance(name, str) or not name:
            continue
        key = TOOL_ACTIVITIES.get(name)
        if key:
            return key
        if name.startswith(MCP_PREFIX):
            return "mcp"
    return None


def format_elapsed(seconds: float) -> str:
    total = max(0, int(seconds))
    return f"{total // 60}:{total % 60:02d}"


def status_text(activity: str, elapsed: float) -> str:
    return f"{ACTIVITY_LABELS[activity]}  \u23f1 {format_elapsed(elapsed)}"


class ActivityStatus:
    """Throttled editor for one status message.

    ``edit`` is a coroutine function taking the new text; raising or
    returning False counts as a failed edit. ``start()``
    sends the first edit right away and then one per ``interval``.
    ``stop()`` is idempotent and guarantees no further edits are issued.
    """

    def __init__(
        self,
        edit: EditFunc,
        interval: float = UPDATE_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._edit = edit
        self.interval = interval
        self._clock = clock
        self.started = clock()
        self.activity = "thinking"
        self.last_sent = ""
        self.stopped = False
        self._task: asyncio.Task | None = None

    def start(self) -> "ActivityStatus":
        if self._task is None and not self.stopped:
            self._task = asyncio.ensure_future(self._loop())
        return self

    async def _loop(self):
        while not self.stopped:
            await self.update()
            await asyncio.sleep(self.interval)

    def on_event(self, event: StreamEvent):
        if self.stopped:
            return
        key = classify(event)
        if key:
            self.activity = key

    def current_text(self) -> str:
        return status_text(self.activity, self._clock() - self.started)

    async def update(self) -> bool:
        """Send the status text if it changed. Returns True if an edit was made."""
        if self.stopped:
            return False
        text = self.current_text()
        if text == self.last_sent:
            return False
        try:
            ok = await self._edit(text)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            # Message deleted or rate-limited; the job carries on regardless.
            log.debug("status edit failed: %s", exc)
            return False
        if ok is False:
            return False
        self.last_sent = text
        return True

    def stop(self):
        if self.stopped:
            return
        self.stopped = True
        if self._task and not self._task.done():
            self._task.cancel()
