"""Shared fixtures: fake Claude subprocesses and config files."""

from __future__ import annotations

import asyncio
import itertools
import json
import signal
from unittest.mock import AsyncMock, MagicMock

import pytest
import yaml

from claude_telegram.config import Config

_pids = itertools.count(40001)


class FakeProcess:
    """Stands in for asyncio.subprocess.Process.

    stdout/stderr are real StreamReaders. A finished process has its
    output fed and EOF set at construction; a ``hang=True`` process keeps
    running until ``finish()`` or a signal ends it. ``ignore_term=True``
    makes it survive SIGTERM (only SIGKILL ends it).
    """

    def __init__(
        self,
        lines=(),
        stderr: str = "",
        returncode: int = 0,
        hang: bool = False,
        ignore_term: bool = False,
    ):
        self.pid = next(_pids)
        self.stdin = MagicMock()
        self.stdin.write = MagicMock()
        self.stdin.drain = AsyncMock()
        self.stdin.close = MagicMock()
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        for line in lines:
            self.feed(line)
        if stderr:
            self.stderr.feed_data(stderr.encode())
        self.returncode = None
        self.signals: list[int] = []
        self.ignore_term = ignore_term
        self._exited = asyncio.Event()
        if not hang:
            self.finish(returncode)

    def feed(self, line: str):
        self.stdout.feed_data((line + "\n").encode())

    def finish(self, returncode: int = 0):
        if self.returncode is not None:
            return
        self.returncode = returncode
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._exited.set()

    @property
    def stdin_text(self) -> str:
        return b"".join(c.args[0] for c in self.stdin.write.call_args_list).decode()

    async def wait(self):
        await self._exited.wait()
        return self.returncode

    def send_signal(self, sig):
        if self.returncode is not None:
            raise ProcessLookupError
        self.signals.append(sig)
        if sig == signal.SIGKILL or not self.ignore_term:
            self.finish(-sig)

    def terminate(self):
        self.send_signal(signal.SIGTERM)

    def kill(self):
        self.send_signal(signal.SIGKILL)


def assistant_event(*blocks: dict) -> str:
    return json.dumps({"type": "assistant", "message": {"content": list(blocks)}})


def tool_use(name: str) -> dict:
    return {"type": "tool_use", "id": f"toolu_{name}", "name": name, "input": {}}


def result_event(result: str = "done", session_id: str | None = "sess-1", cost: float | None = 0.01) -> str:
    data = {"type": "result", "subtype": "success", "result": result}
    if session_id:
        data["session_id"] = session_id
    if cost is not None:
        data["total_cost_usd"] = cost
    return json.dumps(data)


class SpawnRecorder:
    """Replacement for asyncio.create_subprocess_exec handing out queued fakes."""

    def __init__(self):
        self.calls: list[tuple[tuple, dict]] = []
        self.queue: list = []
        self.processes: list[FakeProcess] = []

    def add(self, proc_or_exc):
        self.queue.append(proc_or_exc)
        return proc_or_exc

    async def __call__(self, *cmd, **kwargs):
        self.calls.append((cmd, kwargs))
        item = self.queue.pop(0)
        if isinstance(item, BaseException):
            raise item
        self.processes.append(item)
        return item

    @property
    def commands(self) -> list[list[str]]:
        return [list(cmd) for cmd, _ in self.calls]


@pytest.fixture
def fake_process():
    return FakeProcess


@pytest.fixture
def spawner(monkeypatch):
    recorder = SpawnRecorder()
    monkeypatch.setattr(asyncio, "create_subprocess_exec", recorder)
    return recorder


@pytest.fixture
def events():
    """Stream-json line builders."""
    return {"assistant": assistant_event, "tool_use": tool_use, "result": result_event}


async def wait_until(predicate, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def until():
    return wait_until


@pytest.fixture
def make_config(tmp_path):
    """Write a config YAML under tmp_path and load it."""

    def _make(**overrides) -> Config:
        workspace = tmp_path / "workspace"
        workspace.mkdir(exist_ok=True)
        data = {
            "token": "test-token",
            "workspace": str(workspace),
            "whitelist": [111],
            "timeout": 30,
            "poll_timeout": 1,
        }
        data.update(overrides)
        path = tmp_path / "claude-telegram.yaml"
        path.write_text(yaml.dump(data))
        return Config(path)

    return _make
