"""Graceful shutdown: stop intake, drain Claude processes, tear down."""

from __future__ import annotations

import asyncio
import inspect
import logging
import signal
from typing import Awaitable, Callable

from .tracker import ProcessTracker

log = logging.getLogger("claude_telegram")

SHUTDOWN_TIMEOUT = 30.0


class ShutdownCoordinator:
    """Run the shutdown sequence exactly once, however many signals arrive.

    Sequence: ``stop_intake()``, wait up to ``timeout`` for tracked
    processes, SIGKILL stragglers, ``teardown()``, then set ``finished``
    so the host can return and exit 0.
    """

    def __init__(
        self,
        tracker: ProcessTracker,
        stop_intake: Callable[[], None],
        teardown: Callable[[], Awaitable[None] | None] | None = None,
        timeout: float = SHUTDOWN_TIMEOUT,
    ):
        self.tracker = tracker
        self.stop_intake = stop_intake
        self.teardown = teardown
        self.timeout = timeout
        self.finished = asyncio.Event()
        self.started = False
        self._task: asyncio.Task | None = None

    def install(self, loop: asyncio.AbstractEventLoop | None = None):
        loop = loop or asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._on_signal, sig)

    def _on_signal(self, sig: int):
        if self._task is None:
            self._task = asyncio.ensure_future(self.shutdown(signal.Signals(sig).name))

    async def shutdown(self, reason: str = "shutdown") -> bool:
        """Returns True if every process exited within the deadline."""
        if self.started:
            await self.finished.wait()
            return self.tracker.count == 0
        self.started = True
        log.info("%s received, shutting down", reason)

        try:
            self.stop_intake()
        except Exception:
            log.exception("stop_intake failed")

        all_done = True
        count = self.tracker.count
        if count:
            log.info("Waiting for %d Claude process(es)...", count)
            all_done = await self.tracker.wait_for_all(self.timeout)
            if all_done:
                log.info("All processes completed")
            else:
                log.warning("Timeout, killing %d remaining process(es)", self.tracker.count)
                self.tracker.kill_all(signal.SIGKILL)

        if self.teardown:
            try:
                value = self.teardown()
                if inspect.isawaitable(value):
                    await value
            except Exception as exc:
                log.error("Shutdown hook error: %s", exc)

        log.info("Shutdown complete")
        self.finished.set()
        return all_done
