"""Job orchestration: one Claude process per user at a time.

``Orchestrator.dispatch`` is the only way a message reaches Claude. It
owns the per-user job table (the single-flight guard), runs extension
hooks, keeps the status message alive while the CLI works, persists the
session id afterwards and hands a ``DispatchOutcome`` back to the caller,
which delivers exactly one reply.

All job-table mutations happen in synchronous stretches of the event
loop, so no locking is needed as long as everything runs on one loop.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass
from enum import Enum

from .activity import ActivityStatus, UPDATE_INTERVAL, status_text
from .hooks import HookChain
from .runner import ClaudeResult, ClaudeRunner
from .session import SessionStore
from .tracker import ProcessTracker

log = logging.getLogger("claude_telegram")

KILL_GRACE = 5.0

BUSY_REPLY = "Still working on previous message... Send /cancel to stop."
CANCELLING_TEXT = "Cancelling..."

# The CLI's wording when --resume points at a conversation it no longer has.
_STALE_SESSION_MARKERS = ("no conversation found",)


class DispatchStatus(str, Enum):
    COMPLETED = "completed"
    BUSY = "busy"
    DENIED = "denied"
    CANCELED = "canceled"


class CancelStatus(str, Enum):
    NOTHING = "nothing"
    ALREADY = "already"
    CANCELLING = "cancelling"


@dataclass
class DispatchOutcome:
    status: DispatchStatus
    result: ClaudeResult | None = None
    reply: str | None = None


class Job:
    """The in-flight request of one user."""

    __slots__ = (
        "user_id", "chat_id", "generation", "process", "status_message_id",
        "reporter", "canceled", "cancel_reason", "kill_task",
    )

    def __init__(self, user_id: int, chat_id: int, generation: int):
        self.user_id = user_id
        self.chat_id = chat_id
        self.generation = generation
        self.process = None  # asyncio.subprocess.Process once spawned
        self.status_message_id: int | None = None
        self.reporter: ActivityStatus | None = None
        self.canceled = False
        self.cancel_reason: str | None = None  # user | timeout
        self.kill_task: asyncio.Task | None = None


class Orchestrator:
    """Dispatch messages to Claude with a per-user single-flight guard."""

    def __init__(
        self,
        runner: ClaudeRunner,
        sessions: SessionStore,
        tg,
        tracker: ProcessTracker,
        hooks: HookChain | None = None,
        kill_grace: float = KILL_GRACE,
        status_interval: float = UPDATE_INTERVAL,
    ):
        self.runner = runner
        self.sessions = sessions
        self.tg = tg
        self.tracker = tracker
        self.hooks = hooks or HookChain()
        self.kill_grace = kill_grace
        self.status_interval = status_interval
        self._jobs: dict[int, Job] = {}
        self._generations = itertools.count(1)

    # -- Job table --

    def job(self, user_id: int) -> Job | None:
        return self._jobs.get(user_id)

    def is_busy(self, user_id: int) -> bool:
        return user_id in self._jobs

    def active(self) -> list[Job]:
        return list(self._jobs.values())

    def _is_current(self, job: Job) -> bool:
        current = self._jobs.get(job.user_id)
        return current is not None and current.generation == job.generation

    def _release(self, job: Job):
        if job.reporter:
            job.reporter.stop()
        if job.kill_task and not job.kill_task.done():
            job.kill_task.cancel()
        if self._is_current(job):
            del self._jobs[job.user_id]

    # -- Dispatch --

    async def dispatch(self, user_id: int, chat_id: int, text: str) -> DispatchOutcome:
        if user_id in self._jobs:
            return DispatchOutcome(DispatchStatus.BUSY, reply=BUSY_REPLY)

        job = Job(user_id, chat_id, next(self._generations))
        self._jobs[user_id] = job
        try:
            text, denial = await self.hooks.before(user_id, text)
            if denial is not None:
                return DispatchOutcome(DispatchStatus.DENIED, reply=denial)
            if job.canceled:
                return DispatchOutcome(DispatchStatus.CANCELED)

            await self._open_status(job)
            if job.canceled:
                # /cancel arrived while the status message was being sent.
                result = None
            else:
                result = await self._run(job, text)
                if job.cancel_reason != "user" and result.success and result.session_id:
                    self._persist(user_id, result.session_id)
        finally:
            self._release(job)

        await self._close_status(job)

        if job.cancel_reason == "user":
            log.info("[%d] run canceled", user_id)
            return DispatchOutcome(DispatchStatus.CANCELED, result=result)

        log.info(
            "[%d] run done success=%s cost=%s duration=%dms",
            user_id, result.success, result.cost_usd, result.duration_ms,
        )
        result = await self.hooks.after(user_id, result)
        return DispatchOutcome(DispatchStatus.COMPLETED, result=result)

    async def _run(self, job: Job, text: str) -> ClaudeResult:
        session_id = self.sessions.get(job.user_id)
        result = await self._invoke(job, text, session_id)

        # A resumed session the CLI no longer knows about: start over once.
        if (
            session_id
            and not result.success
            and not job.canceled
            and _is_stale_session(result.error)
        ):
            log.info("[%d] session %s is gone, retrying fresh", job.user_id, session_id[:8])
            self.sessions.reset(job.user_id)
            job.process = None
            result = await self._invoke(job, text, None)
        return result

    def _invoke(self, job: Job, text: str, session_id: str | None):
        return self.runner.run(
            text,
            session_id=session_id,
            on_event=job.reporter.on_event if job.reporter else None,
            on_spawn=lambda proc: self._on_spawn(job, proc),
            on_timeout=lambda: self._on_timeout(job),
        )

    def _on_spawn(self, job: Job, proc):
        job.process = proc
        self.tracker.register(proc)
        if job.canceled:
            # /cancel arrived while the process was still being created.
            self._terminate(job)
            self._schedule_kill(job)

    def _on_timeout(self, job: Job):
        job.canceled = True
        if job.cancel_reason is None:
            job.cancel_reason = "timeout"
        if job.reporter:
            job.reporter.stop()

    def _persist(self, user_id: int, session_id: str):
        try:
            self.sessions.set(user_id, session_id)
        except OSError:
            log.exception("[%d] failed to persist session id", user_id)

    # -- Cancellation --

    async def cancel(self, user_id: int) -> CancelStatus:
        job = self._jobs.get(user_id)
        if job is None:
            return CancelStatus.NOTHING
        if job.canceled:
            return CancelStatus.ALREADY

        job.canceled = True
        job.cancel_reason = "user"
        if job.reporter:
            job.reporter.stop()
        if job.process is not None:
            self._terminate(job)
            self._schedule_kill(job)
        log.info("[%d] cancel requested", user_id)

        await self._edit_status(job, CANCELLING_TEXT)
        return CancelStatus.CANCELLING

    async def reset_session(self, user_id: int) -> CancelStatus:
        """Cancel any live job and forget the stored session id."""
        status = await self.cancel(user_id)
        self.sessions.reset(user_id)
        log.info("[%d] session reset", user_id)
        return status

    def _terminate(self, job: Job):
        try:
            job.process.terminate()
        except ProcessLookupError:
            pass

    def _schedule_kill(self, job: Job):
        if job.kill_task is None or job.kill_task.done():
            job.kill_task = asyncio.ensure_future(self._kill_after_grace(job))

    async def _kill_after_grace(self, job: Job):
        await asyncio.sleep(self.kill_grace)
        proc = job.process
        if proc is None or proc.returncode is not None:
            return
        log.warning("[%d] pid %s still alive after %ss, killing", job.user_id, proc.pid, self.kill_grace)
        try:
            proc.kill()
        except ProcessLookupError:
            pass

    # -- Status message --

    async def _open_status(self, job: Job):
        initial = status_text("thinking", 0)
        try:
            job.status_message_id = await asyncio.to_thread(self.tg.send, job.chat_id, initial)
        except Exception as exc:
            log.warning("[%d] could not send status message: %s", job.user_id, exc)
            return
        if not job.status_message_id or job.canceled:
            return

        async def edit(text: str):
            return await asyncio.to_thread(self.tg.edit, job.chat_id, job.status_message_id, text)

        job.reporter = ActivityStatus(edit, interval=self.status_interval)
        # The message already shows the initial text; the first tick would be a no-op edit.
        job.reporter.last_sent = initial
        job.reporter.start()

    async def _edit_status(self, job: Job, text: str):
        if not job.status_message_id:
            return
        try:
            await asyncio.to_thread(self.tg.edit, job.chat_id, job.status_message_id, text)
        except Exception as exc:
            log.debug("[%d] status edit failed: %s", job.user_id, exc)

    async def _close_status(self, job: Job):
        if not job.status_message_id:
            return
        try:
            await asyncio.to_thread(self.tg.delete_message, job.chat_id, job.status_message_id)
        except Exception as exc:
            log.debug("[%d] status delete failed: %s", job.user_id, exc)


def _is_stale_session(error: str | None) -> bool:
    low = (error or "").lower()
    return any(marker in low for marker in _STALE_SESSION_MARKERS)
