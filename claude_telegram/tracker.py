"""Registry of live Claude CLI processes, used to drain them at shutdown."""

from __future__ import annotations

import asyncio
import logging
import signal

log = logging.getLogger("claude_telegram")


class ProcessTracker:
    """Track spawned subprocesses by pid until they exit.

    Independent of the orchestrator's job table: a job can be settled
    (e.g. timed out) while its process is still winding down, and the
    tracker keeps counting it until the OS reports the exit.
    """

    def __init__(self, poll_interval: float = 0.5):
        self.poll_interval = poll_interval
        self._processes: dict[int, asyncio.subprocess.Process] = {}
        self._observers: set[asyncio.Task] = set()

    def register(self, proc) -> None:
        pid = getattr(proc, "pid", None)
        if not pid or pid in self._processes:
            return
        self._processes[pid] = proc
        observer = asyncio.ensure_future(self._observe_exit(pid, proc))
        self._observers.add(observer)
        observer.add_done_callback(self._observers.discard)

    async def _observe_exit(self, pid: int, proc):
        try:
            await proc.wait()
        except Exception:
            log.exception("exit observer failed for pid %d", pid)
        finally:
            if self._processes.get(pid) is proc:
                del self._processes[pid]

    @property
    def count(self) -> int:
        return len(self._processes)

    def pids(self) -> list[int]:
        return list(self._processes)

    async def wait_for_all(self, timeout: float) -> bool:
        """Poll until every tracked process exited or timeout elapses."""
        if not self._processes:
            return True
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while self._processes and loop.time() < deadline:
            await asyncio.sleep(self.poll_interval)
        return not self._processes

    def kill_all(self, sig: int = signal.SIGKILL) -> int:
        """Signal every tracked process. Returns how many were signalled."""
        sent = 0
        for pid, proc in list(self._processes.items()):
            try:
                proc.send_signal(sig)
                sent += 1
            except ProcessLookupError:
                pass
            except OSError as exc:
                log.warning("failed to signal pid %d: %s", pid, exc)
        return sent
