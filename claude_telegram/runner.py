"""Claude CLI runner: one subprocess per request, stream-json output.

The prompt goes in on stdin (never argv: no length limits, no shell
escaping, and it stays out of ``ps``). stdout is newline-delimited JSON;
each line is decoded on its own and anything that is not a JSON object
is skipped, since the CLI occasionally prints plain diagnostics.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Sequence

from .errors import SpawnError

log = logging.getLogger("claude_telegram")

# asyncio's default 64 KiB line limit is too small for tool results.
STREAM_LIMIT = 16 * 1024 * 1024
STDERR_TAIL = 1000

# Inherited from a parent Claude session these make the CLI refuse to start.
_SCRUBBED_ENV = ("CLAUDECODE", "CLAUDE_CODE", "CLAUDE_CODE_ENTRYPOINT")


@dataclass
class StreamEvent:
    """One decoded stream-json record."""

    type: str
    subtype: str | None = None
    session_id: str | None = None
    result: str | None = None
    total_cost_usd: float | None = None
    content: list[dict] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "StreamEvent":
        message = data.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, list):
            content = []
        cost = data.get("total_cost_usd")
        if isinstance(cost, bool) or not isinstance(cost, (int, float)):
            cost = None
        result = data.get("result")
        sid = data.get("session_id")
        return cls(
            type=str(data.get("type") or ""),
            subtype=data.get("subtype"),
            session_id=sid if isinstance(sid, str) and sid else None,
            result=result if isinstance(result, str) else None,
            total_cost_usd=cost,
            content=[b for b in content if isinstance(b, dict)],
        )


def decode_line(raw: bytes | str) -> StreamEvent | None:
    """Decode one stdout line. Returns None for blank or malformed lines."""
    if isinstance(raw, bytes):
        raw = raw.decode(errors="replace")
    line = raw.strip()
    if not line:
        return None
    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    return StreamEvent.from_dict(data)


@dataclass
class ClaudeResult:
    """Terminal value of one Claude CLI run."""

    success: bool
    output: str = ""
    error: str | None = None
    session_id: str | None = None
    cost_usd: float | None = None
    duration_ms: int = 0
    timed_out: bool = False


class _StreamState:
    __slots__ = ("output", "session_id", "cost_usd", "got_result", "stderr", "returncode")

    def __init__(self):
        self.output = ""
        self.session_id: str | None = None
        self.cost_usd: float | None = None
        self.got_result = False
        self.stderr = ""
        self.returncode: int | None = None

    def apply_result(self, event: StreamEvent):
        # Only one result record is expected; if several arrive the last wins.
        self.got_result = True
        self.output = event.result or ""
        self.cost_usd = event.total_cost_usd
        if event.session_id:
            self.session_id = event.session_id

    def stderr_tail(self) -> str | None:
        text = self.stderr.strip()
        if not text:
            return None
        return text[-STDERR_TAIL:]


class ClaudeRunner:
    """Spawn the Claude CLI for a single message and collect its result."""

    def __init__(
        self,
        claude_path: str = "claude",
        workspace: str | Path = ".",
        permission_mode: str = "acceptEdits",
        timeout: float = 300,
        model: str | None = None,
        system_prompt: str | None = None,
        add_dirs: Sequence[str | Path] | None = None,
        kill_grace: float = 5.0,
    ):
        self.claude_path = shutil.which(claude_path) or claude_path
        self.workspace = Path(workspace)
        self.permission_mode = permission_mode
        self.timeout = timeout
        self.model = model
        self.system_prompt = system_prompt
        self.add_dirs = [str(d) for d in add_dirs or []]
        self.kill_grace = kill_grace

    @classmethod
    def from_config(cls, cfg) -> "ClaudeRunner":
        return cls(
            claude_path=cfg.claude_path,
            workspace=cfg.workspace,
            permission_mode=cfg.permission_mode,
            timeout=cfg.timeout,
            model=cfg.model,
            system_prompt=cfg.system_prompt,
            add_dirs=cfg.add_dirs,
            kill_grace=cfg.kill_grace,
        )

    def build_command(self, session_id: str | None = None) -> list[str]:
        """Build argv. Resumes ``session_id`` if given, else starts a fresh session."""
        cmd = [
            self.claude_path,
            "-p",
            "--output-format", "stream-json",
            "--verbose",
            "--permission-mode", self.permission_mode,
        ]
        if session_id:
            cmd += ["--resume", session_id]
        else:
            cmd += ["--session-id", str(uuid.uuid4())]
        if self.model:
            cmd += ["--model", self.model]
        if self.system_prompt:
            cmd += ["--append-system-prompt", self.system_prompt]
        for d in self.add_dirs:
            cmd += ["--add-dir", d]
        return cmd

    async def _spawn(self, cmd: list[str]):
        env = os.environ.copy()
        for key in _SCRUBBED_ENV:
            env.pop(key, None)
        try:
            return await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self.workspace),
                env=env,
                limit=STREAM_LIMIT,
            )
        except OSError as exc:
            raise SpawnError(
                f"Failed to start Claude CLI ({cmd[0]}): {exc.strerror or exc}",
                detail=str(exc),
            ) from exc

    async def run(
        self,
        message: str,
        session_id: str | None = None,
        on_event: Callable[[StreamEvent], None] | None = None,
        on_spawn: Callable[[object], None] | None = None,
        on_timeout: Callable[[], None] | None = None,
    ) -> ClaudeResult:
        """Run one request to completion, timeout or spawn failure.

        ``on_spawn`` is called with the process as soon as it exists,
        ``on_timeout`` right before a timed-out process is terminated.
        Never raises for per-request failures.
        """
        started = time.monotonic()
        cmd = self.build_command(session_id)
        sid = session_id or cmd[cmd.index("--session-id") + 1]
        log.info(
            "claude  resume=%s  cwd=%s  sid=%s",
            bool(session_id), self.workspace, sid[:8],
        )

        try:
            proc = await self._spawn(cmd)
        except SpawnError as exc:
            log.error("%s", exc)
            return ClaudeResult(success=False, error=str(exc), duration_ms=_ms_since(started))

        if on_spawn:
            on_spawn(proc)

        state = _StreamState()
        try:
            await asyncio.wait_for(
                self._communicate(proc, message, state, on_event),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            log.warning("claude pid %s timed out after %ss", proc.pid, self.timeout)
            if on_timeout:
                on_timeout()
            await self.terminate(proc)
            return ClaudeResult(
                success=False,
                output=state.output,
                error=f"Timed out after {_fmt_seconds(self.timeout)} seconds",
                session_id=state.session_id,
                cost_usd=state.cost_usd,
                duration_ms=_ms_since(started),
                timed_out=True,
            )
        except asyncio.CancelledError:
            _kill_quietly(proc)
            raise

        success = state.returncode == 0 and state.got_result
        error = None if success else state.stderr_tail()
        if not success:
            log.info(
                "claude pid %s exited rc=%s result=%s", proc.pid, state.returncode, state.got_result,
            )
        return ClaudeResult(
            success=success,
            output=state.output,
            error=error,
            session_id=state.session_id,
            cost_usd=state.cost_usd,
            duration_ms=_ms_since(started),
        )

    async def _communicate(
        self, proc, message: str, state: _StreamState,
        on_event: Callable[[StreamEvent], None] | None,
    ):
        # Drain stderr concurrently so a chatty CLI can't block on a full pipe.
        stderr_task = asyncio.ensure_future(proc.stderr.read())
        try:
            try:
                proc.stdin.write(message.encode())
                await proc.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                log.warning("claude pid %s closed stdin early", proc.pid)
            finally:
                try:
                    proc.stdin.close()
                except Exception:
                    pass

            while True:
                try:
                    raw = await proc.stdout.readline()
                except ValueError:
                    # Over-long line; the reader has already discarded it.
                    log.debug("skipping over-long stream line")
                    continue
                if not raw:
                    break
                event = decode_line(raw)
                if event is None:
                    continue
                if on_event:
                    try:
                        on_event(event)
                    except Exception:
                        log.exception("stream event handler failed")
                if event.type == "result":
                    state.apply_result(event)

            state.stderr = (await stderr_task).decode(errors="replace")
            state.returncode = await proc.wait()
        finally:
            if not stderr_task.done():
                stderr_task.cancel()

    async def terminate(self, proc, grace: float | None = None):
        """SIGTERM, then SIGKILL if the process is still alive after ``grace``."""
        if proc.returncode is not None:
            return
        grace = self.kill_grace if grace is None else grace
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=grace)
        except asyncio.TimeoutError:
            log.warning("claude pid %s ignored SIGTERM, killing", proc.pid)
            _kill_quietly(proc)
            await proc.wait()


def _kill_quietly(proc):
    try:
        proc.kill()
    except ProcessLookupError:
        pass


def _ms_since(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _fmt_seconds(seconds: float) -> str:
    return str(int(seconds)) if float(seconds).is_integer() else f"{seconds:g}"
