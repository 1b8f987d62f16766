"""Tests for remote_terminal.tool.executor (foreground runs and background tasks)."""

from __future__ import annotations

import asyncio
import gc
import shutil
import signal
from pathlib import Path

import pytest

from remote_terminal.tool.executor import (
    NO_OUTPUT,
    NO_OUTPUT_YET,
    CommandExecutor,
    CommandResult,
)


class _Recorder:
    """Collects background output and exit notifications in arrival order."""

    def __init__(self) -> None:
        self.events: list[tuple[str, str, object]] = []
        self._exits = 0
        self._changed = asyncio.Event()

    async def on_output(self, name: str, text: str) -> None:
        self.events.append(("output", name, text))

    async def on_exit(self, name: str, exit_code: int | None) -> None:
        self.events.append(("exit", name, exit_code))
        self._exits += 1
        self._changed.set()

    async def wait_exits(self, count: int, timeout: float = 10.0) -> None:
        async def _wait() -> None:
            while self._exits < count:
                self._changed.clear()
                await self._changed.wait()

        await asyncio.wait_for(_wait(), timeout=timeout)


@pytest.fixture
def executor(tmp_path: Path) -> CommandExecutor:
    return CommandExecutor(cwd=str(tmp_path), timeout=10.0)


# ---------------------------------------------------------------------------
# CommandResult rendering
# ---------------------------------------------------------------------------


class TestCommandResult:
    def test_stdout_then_stderr(self) -> None:
        r = CommandResult(command="c", stdout="out", stderr="err")
        assert r.output == "out\nerr"

    def test_stderr_only(self) -> None:
        assert CommandResult(command="c", stderr="err").output == "err"

    def test_empty_is_no_output(self) -> None:
        assert CommandResult(command="c").text == NO_OUTPUT

    def test_failure_without_output_uses_message(self) -> None:
        r = CommandResult(command="c", exit_code=2, error="Command failed with exit code 2: c")
        assert r.text == "Command failed with exit code 2: c"
        assert not r.ok

    def test_failure_with_output_keeps_output(self) -> None:
        r = CommandResult(command="c", stdout="partial", exit_code=1, error="failed")
        assert r.text == "partial"

    def test_timeout_with_partial_output_says_why(self) -> None:
        r = CommandResult(command="c", stdout="partial", timed_out=True, error="timed out")
        assert r.text == "partial\n[timed out]"


# ---------------------------------------------------------------------------
# Foreground
# ---------------------------------------------------------------------------


class TestForeground:
    async def test_stdout(self, executor: CommandExecutor) -> None:
        assert await executor.run("echo hello") == "hello\n"

    async def test_stdout_and_stderr(self, executor: CommandExecutor) -> None:
        output = await executor.run("echo out; echo err >&2")
        assert output == "out\n\nerr\n"

    async def test_no_output_sentinel(self, executor: CommandExecutor) -> None:
        assert await executor.run("true") == NO_OUTPUT

    async def test_failure_message_when_silent(self, executor: CommandExecutor) -> None:
        output = await executor.run("exit 3")
        assert output == "Command failed with exit code 3: exit 3"

    async def test_failure_with_output(self, executor: CommandExecutor) -> None:
        result = await executor.execute("echo oops; exit 1")
        assert result.exit_code == 1
        assert result.text == "oops\n"

    async def test_runs_in_workspace(
        self, executor: CommandExecutor, tmp_path: Path
    ) -> None:
        (tmp_path / "marker.txt").write_text("x")
        assert "marker.txt" in await executor.run("ls")

    async def test_force_color_disabled(self, executor: CommandExecutor) -> None:
        assert await executor.run("echo $FORCE_COLOR") == "0\n"

    async def test_stdin_is_closed(self, executor: CommandExecutor) -> None:
        """Commands that read stdin see EOF instead of hanging."""
        assert await executor.run("cat") == NO_OUTPUT

    async def test_timeout_reported_not_raised(self, executor: CommandExecutor) -> None:
        result = await executor.execute("sleep 5", timeout=0.3)
        assert result.timed_out is True
        assert result.exit_code == -signal.SIGKILL
        assert result.text == "Command timed out after 0.3s: sleep 5"

    async def test_timeout_keeps_partial_output(self, executor: CommandExecutor) -> None:
        result = await executor.execute("echo started; sleep 5", timeout=0.5)
        assert result.timed_out is True
        assert result.text.startswith("started\n")
        assert "timed out" in result.text

    async def test_overflow_reported(self, executor: CommandExecutor) -> None:
        result = await executor.execute("yes", max_output_bytes=1000)
        assert result.overflowed is True
        assert len(result.stdout) <= 1000
        assert "Output exceeded 1000 bytes" in result.text

    async def test_killed_by_signal(self, executor: CommandExecutor) -> None:
        result = await executor.execute("kill -TERM $$")
        assert result.text == "Command terminated by SIGTERM: kill -TERM $$"

    async def test_spawn_failure(self, tmp_path: Path) -> None:
        executor = CommandExecutor(cwd=str(tmp_path / "does-not-exist"))
        output = await executor.run("echo hi")
        assert output.startswith("Failed to execute command:")


# ---------------------------------------------------------------------------
# Background
# ---------------------------------------------------------------------------


class TestBackground:
    async def test_output_delivered_on_exit(self, tmp_path: Path) -> None:
        executor = CommandExecutor(cwd=str(tmp_path), initial_output_delay=5.0)
        rec = _Recorder()
        await executor.start("job", "echo hi", rec.on_output, rec.on_exit)
        await rec.wait_exits(1)
        assert rec.events == [("output", "job", "hi"), ("exit", "job", 0)]
        assert not executor.is_running("job")

    async def test_output_delivered_after_delay(self, tmp_path: Path) -> None:
        executor = CommandExecutor(cwd=str(tmp_path), initial_output_delay=0.5)
        rec = _Recorder()
        await executor.start("job", "echo early; sleep 2; echo late", rec.on_output, rec.on_exit)
        await asyncio.sleep(1.0)
        assert rec.events == [("output", "job", "early")]
        await rec.wait_exits(1)
        # Delivered once: later output is not reported again.
        assert rec.events == [("output", "job", "early"), ("exit", "job", 0)]

    async def test_no_output_yet(self, tmp_path: Path) -> None:
        executor = CommandExecutor(cwd=str(tmp_path), initial_output_delay=0.2)
        rec = _Recorder()
        await executor.start("quiet", "sleep 1", rec.on_output, rec.on_exit)
        await rec.wait_exits(1)
        assert rec.events == [("output", "quiet", NO_OUTPUT_YET), ("exit", "quiet", 0)]

    async def test_replace_not_queue(self, tmp_path: Path) -> None:
        executor = CommandExecutor(cwd=str(tmp_path), initial_output_delay=5.0)
        rec = _Recorder()
        first = await executor.start("srv", "sleep 30", rec.on_output, rec.on_exit)
        second = await executor.start("srv", "echo second", rec.on_output, rec.on_exit)

        # The first instance was gone before the second was spawned.
        assert first.process.returncode is not None
        assert ("exit", "srv", -signal.SIGTERM) in rec.events
        assert executor.get("srv") is second

        await rec.wait_exits(2)
        first_exit = rec.events.index(("exit", "srv", -signal.SIGTERM))
        second_output = rec.events.index(("output", "srv", "second"))
        assert first_exit < second_output
        assert rec.events[-1] == ("exit", "srv", 0)

    async def test_stop(self, tmp_path: Path) -> None:
        executor = CommandExecutor(cwd=str(tmp_path))
        rec = _Recorder()
        await executor.start("srv", "sleep 30", rec.on_output, rec.on_exit)
        assert executor.names() == ["srv"]

        assert await executor.stop("srv") is True
        assert rec.events[-1] == ("exit", "srv", -signal.SIGTERM)
        assert executor.names() == []

    async def test_stop_unknown(self, executor: CommandExecutor) -> None:
        assert await executor.stop("nope") is False

    async def test_stop_all(self, tmp_path: Path) -> None:
        executor = CommandExecutor(cwd=str(tmp_path))
        rec = _Recorder()
        await executor.start("a", "sleep 30", rec.on_output, rec.on_exit)
        await executor.start("b", "sleep 30", rec.on_output, rec.on_exit)

        stopped = await executor.stop_all()
        assert sorted(stopped) == ["a", "b"]
        assert executor.names() == []
        assert sorted(e[1] for e in rec.events if e[0] == "exit") == ["a", "b"]

    async def test_sigterm_ignored_escalates(self, tmp_path: Path) -> None:
        executor = CommandExecutor(cwd=str(tmp_path))
        rec = _Recorder()
        await executor.start(
            "stubborn", "trap '' TERM; sleep 30", rec.on_output, rec.on_exit
        )
        await asyncio.sleep(0.2)
        assert await executor.stop("stubborn") is True
        assert rec.events[-1] == ("exit", "stubborn", -signal.SIGKILL)

    async def test_concurrent_starts_leave_one_instance(self, tmp_path: Path) -> None:
        executor = CommandExecutor(cwd=str(tmp_path))
        rec = _Recorder()
        original = await executor.start("srv", "sleep 30", rec.on_output, rec.on_exit)

        first, second = await asyncio.gather(
            executor.start("srv", "sleep 30", rec.on_output, rec.on_exit),
            executor.start("srv", "sleep 30", rec.on_output, rec.on_exit),
        )

        live = [bg for bg in (original, first, second) if bg is not None and bg.running]
        assert live == [executor.get("srv")]
        assert executor.names() == ["srv"]

        await executor.stop_all()
        assert all(bg.process.returncode is not None for bg in (original, first, second))

    async def test_spawn_failure_reported_through_callbacks(self, tmp_path: Path) -> None:
        executor = CommandExecutor(cwd=str(tmp_path / "does-not-exist"))
        rec = _Recorder()

        bg = await executor.start("job", "echo hi", rec.on_output, rec.on_exit)

        assert bg is None
        assert not executor.is_running("job")
        [(kind, name, text), exit_event] = rec.events
        assert (kind, name) == ("output", "job")
        assert str(text).startswith("Failed to execute command:")
        assert exit_event == ("exit", "job", None)

    @pytest.mark.skipif(shutil.which("setsid") is None, reason="needs setsid")
    async def test_pipe_held_open_after_exit(self, tmp_path: Path) -> None:
        # A detached grandchild keeps stdout open after the shell exits.
        loop = asyncio.get_running_loop()
        errors: list[dict] = []
        loop.set_exception_handler(lambda _loop, context: errors.append(context))
        try:
            executor = CommandExecutor(cwd=str(tmp_path), initial_output_delay=5.0)
            rec = _Recorder()
            bg = await executor.start(
                "job", "setsid sleep 3 & echo hi", rec.on_output, rec.on_exit
            )
            assert bg is not None
            await rec.wait_exits(1)
            assert rec.events == [("output", "job", "hi"), ("exit", "job", 0)]
            assert bg.task is not None
            await bg.task
            del bg
            gc.collect()
            assert errors == []
        finally:
            loop.set_exception_handler(None)
