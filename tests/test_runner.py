"""Tests for ClaudeRunner: argv, stream decoding, timeouts, spawn failures."""

import asyncio
import json
import signal

import pytest

from claude_telegram.runner import ClaudeRunner, StreamEvent, decode_line

from conftest import FakeProcess, assistant_event, result_event, tool_use


def make_runner(tmp_path, **kw) -> ClaudeRunner:
    kw.setdefault("timeout", 5)
    kw.setdefault("kill_grace", 0.2)
    return ClaudeRunner(claude_path="claude", workspace=tmp_path, **kw)


class TestBuildCommand:

    def test_fresh_session_gets_new_id(self, tmp_path):
        cmd = make_runner(tmp_path).build_command()
        assert cmd[1:7] == [
            "-p", "--output-format", "stream-json", "--verbose",
            "--permission-mode", "acceptEdits",
        ]
        assert "--resume" not in cmd
        sid = cmd[cmd.index("--session-id") + 1]
        assert len(sid) == 36

    def test_fresh_ids_differ(self, tmp_path):
        runner = make_runner(tmp_path)
        a, b = runner.build_command(), runner.build_command()
        assert a[a.index("--session-id") + 1] != b[b.index("--session-id") + 1]

    def test_resume(self, tmp_path):
        cmd = make_runner(tmp_path).build_command("sess-1")
        assert cmd[cmd.index("--resume") + 1] == "sess-1"
        assert "--session-id" not in cmd

    def test_optional_flags(self, tmp_path):
        runner = make_runner(
            tmp_path,
            permission_mode="plan",
            model="opus",
            system_prompt="Be brief.",
            add_dirs=["/srv/a", "/srv/b"],
        )
        cmd = runner.build_command()
        assert cmd[cmd.index("--permission-mode") + 1] == "plan"
        assert cmd[cmd.index("--model") + 1] == "opus"
        assert cmd[cmd.index("--append-system-prompt") + 1] == "Be brief."
        assert cmd.count("--add-dir") == 2
        assert cmd[-1] == "/srv/b"

    def test_message_never_in_argv(self, tmp_path):
        assert "hello there" not in make_runner(tmp_path).build_command()


class TestDecodeLine:

    @pytest.mark.parametrize("raw", [b"", b"   \n", b"not json", b"[1, 2]", b'"str"', b"{broken"])
    def test_garbage_is_skipped(self, raw):
        assert decode_line(raw) is None

    def test_result_event(self):
        event = decode_line(result_event("hi", session_id="s-9", cost=0.5).encode())
        assert event.type == "result"
        assert event.result == "hi"
        assert event.session_id == "s-9"
        assert event.total_cost_usd == 0.5

    def test_assistant_content(self):
        event = decode_line(assistant_event(tool_use("Read"), {"type": "text", "text": "x"}))
        assert event.type == "assistant"
        assert [b["type"] for b in event.content] == ["tool_use", "text"]

    def test_wrong_field_types_are_dropped(self):
        event = StreamEvent.from_dict({
            "type": "result", "result": 42, "session_id": "", "total_cost_usd": True,
            "message": {"content": "nope"},
        })
        assert event.result is None
        assert event.session_id is None
        assert event.total_cost_usd is None
        assert event.content == []


class TestRun:

    @pytest.mark.asyncio
    async def test_success_amid_garbage(self, tmp_path, spawner):
        """Malformed lines are skipped; the result record defines the outcome."""
        proc = spawner.add(FakeProcess([
            "Starting up...",
            assistant_event(tool_use("Read")),
            "{half a json",
            "",
            result_event("All done.", session_id="sess-42", cost=0.0123),
        ]))
        seen = []
        result = await make_runner(tmp_path).run("fix the bug", on_event=seen.append)

        assert result.success
        assert result.output == "All done."
        assert result.session_id == "sess-42"
        assert result.cost_usd == 0.0123
        assert result.error is None
        assert not result.timed_out
        assert [e.type for e in seen] == ["assistant", "result"]
        assert proc.stdin_text == "fix the bug"
        proc.stdin.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_spawn_options(self, tmp_path, spawner, monkeypatch):
        monkeypatch.setenv("CLAUDECODE", "1")
        monkeypatch.setenv("KEEP_ME", "yes")
        spawner.add(FakeProcess([result_event()]))
        await make_runner(tmp_path).run("hi")

        _, kwargs = spawner.calls[0]
        assert kwargs["cwd"] == str(tmp_path)
        assert kwargs["limit"] == 16 * 1024 * 1024
        assert "CLAUDECODE" not in kwargs["env"]
        assert kwargs["env"]["KEEP_ME"] == "yes"

    @pytest.mark.asyncio
    async def test_last_result_wins(self, tmp_path, spawner):
        spawner.add(FakeProcess([
            result_event("first", session_id="s1", cost=0.1),
            result_event("second", session_id="s2", cost=0.2),
        ]))
        result = await make_runner(tmp_path).run("hi")
        assert result.output == "second"
        assert result.session_id == "s2"
        assert result.cost_usd == 0.2

    @pytest.mark.asyncio
    async def test_no_result_is_failure_with_stderr(self, tmp_path, spawner):
        spawner.add(FakeProcess([assistant_event(tool_use("Bash"))], stderr="boom: bad thing\n"))
        result = await make_runner(tmp_path).run("hi")
        assert not result.success
        assert result.error == "boom: bad thing"

    @pytest.mark.asyncio
    async def test_nonzero_exit_is_failure(self, tmp_path, spawner):
        spawner.add(FakeProcess([result_event("partial")], returncode=1))
        result = await make_runner(tmp_path).run("hi")
        assert not result.success
        assert result.output == "partial"

    @pytest.mark.asyncio
    async def test_stderr_is_tail_truncated(self, tmp_path, spawner):
        spawner.add(FakeProcess([], stderr="x" * 5000 + "END", returncode=2))
        result = await make_runner(tmp_path).run("hi")
        assert len(result.error) == 1000
        assert result.error.endswith("END")

    @pytest.mark.asyncio
    async def test_event_handler_errors_do_not_abort(self, tmp_path, spawner):
        spawner.add(FakeProcess([assistant_event(tool_use("Read")), result_event("ok")]))

        def explode(event):
            raise RuntimeError("handler bug")

        result = await make_runner(tmp_path).run("hi", on_event=explode)
        assert result.success
        assert result.output == "ok"

    @pytest.mark.asyncio
    async def test_on_spawn_receives_process(self, tmp_path, spawner):
        proc = spawner.add(FakeProcess([result_event()]))
        spawned = []
        await make_runner(tmp_path).run("hi", on_spawn=spawned.append)
        assert spawned == [proc]

    @pytest.mark.asyncio
    async def test_spawn_failure(self, tmp_path, spawner):
        spawner.add(FileNotFoundError(2, "No such file or directory"))
        on_spawn = []
        result = await make_runner(tmp_path).run("hi", on_spawn=on_spawn.append)
        assert not result.success
        assert "Failed to start Claude CLI" in result.error
        assert on_spawn == []

    @pytest.mark.asyncio
    async def test_timeout_terminates(self, tmp_path, spawner):
        proc = spawner.add(FakeProcess(hang=True))
        timeouts = []
        result = await make_runner(tmp_path, timeout=0.1).run(
            "hi", on_timeout=lambda: timeouts.append(True)
        )
        assert result.timed_out
        assert not result.success
        assert result.error == "Timed out after 0.1 seconds"
        assert timeouts == [True]
        assert proc.signals == [signal.SIGTERM]
        assert proc.returncode is not None

    @pytest.mark.asyncio
    async def test_timeout_escalates_to_kill(self, tmp_path, spawner):
        proc = spawner.add(FakeProcess(hang=True, ignore_term=True))
        result = await make_runner(tmp_path, timeout=0.05, kill_grace=0.05).run("hi")
        assert result.timed_out
        assert proc.signals == [signal.SIGTERM, signal.SIGKILL]

    @pytest.mark.asyncio
    async def test_timeout_keeps_partial_result(self, tmp_path, spawner):
        proc = spawner.add(FakeProcess([result_event("early", session_id="s-early")], hang=True))
        result = await make_runner(tmp_path, timeout=0.1).run("hi")
        assert result.timed_out
        assert result.session_id == "s-early"
        assert proc.returncode is not None

    @pytest.mark.asyncio
    async def test_cancelled_run_kills_process(self, tmp_path, spawner, until):
        proc = spawner.add(FakeProcess(hang=True))
        task = asyncio.ensure_future(make_runner(tmp_path).run("hi"))
        await until(lambda: spawner.processes)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert signal.SIGKILL in proc.signals

    @pytest.mark.asyncio
    async def test_streamed_events_arrive_live(self, tmp_path, spawner, until):
        """Events reach the handler while the process is still running."""
        proc = spawner.add(FakeProcess(hang=True))
        seen = []
        task = asyncio.ensure_future(make_runner(tmp_path).run("hi", on_event=seen.append))
        await until(lambda: spawner.processes)

        proc.feed(assistant_event(tool_use("Grep")))
        await until(lambda: len(seen) == 1)
        proc.feed(json.dumps({"type": "result", "result": "ok", "session_id": "s"}))
        proc.finish(0)

        result = await task
        assert result.success
        assert [e.type for e in seen] == ["assistant", "result"]
