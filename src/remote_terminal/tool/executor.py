"""Command execution — bounded foreground runs and named background tasks.

Foreground commands run to completion under a timeout and an output cap and
always come back as text: timeouts, overflows and spawn failures are
reported in the output rather than raised.

Background tasks are addressed by name. Starting a task under a name that
is already running terminates the old process first and waits for its exit
notification, so two instances of one task never overlap.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
from collections.abc import Awaitable
from dataclasses import dataclass, field
from typing import Callable

logger = logging.getLogger(__name__)

NO_OUTPUT = "(no output)"
NO_OUTPUT_YET = "(process started, no output yet)"

DEFAULT_TIMEOUT = 120.0
DEFAULT_MAX_OUTPUT_BYTES = 1024 * 1024
DEFAULT_INITIAL_OUTPUT_DELAY = 5.0
TERMINATE_GRACE = 2.0
_READ_CHUNK = 64 * 1024

OutputCallback = Callable[[str, str], Awaitable[None]]  # (name, text)
ExitCallback = Callable[[str, int | None], Awaitable[None]]  # (name, exit_code)


@dataclass
class CommandResult:
    """Outcome of a foreground command."""

    command: str
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None
    timed_out: bool = False
    overflowed: bool = False
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def output(self) -> str:
        """stdout followed by stderr, newline separated."""
        out = self.stdout
        if self.stderr:
            out += ("\n" if out else "") + self.stderr
        return out

    @property
    def text(self) -> str:
        """Never-empty rendering of the result."""
        out = self.output
        if not out:
            return self.error or NO_OUTPUT
        if self.timed_out or self.overflowed:
            # Partial output: say why it stops.
            out += f"\n[{self.error}]"
        return out


@dataclass
class BackgroundProcess:
    """A detached child addressable by task name."""

    name: str
    command: str
    process: asyncio.subprocess.Process
    output: bytearray = field(default_factory=bytearray)
    delivered: bool = False
    task: asyncio.Task[None] | None = None

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def running(self) -> bool:
        return self.process.returncode is None


class CommandExecutor:
    """Runs shell commands in the workspace."""

    def __init__(
        self,
        cwd: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
        initial_output_delay: float = DEFAULT_INITIAL_OUTPUT_DELAY,
    ) -> None:
        self._cwd = cwd or os.getcwd()
        self._timeout = timeout
        self._max_output_bytes = max_output_bytes
        self._initial_output_delay = initial_output_delay
        self._background: dict[str, BackgroundProcess] = {}
        self._start_locks: dict[str, asyncio.Lock] = {}

    @property
    def cwd(self) -> str:
        return self._cwd

    # ------------------------------------------------------------------
    # Foreground
    # ------------------------------------------------------------------

    async def run(
        self,
        command: str,
        timeout: float | None = None,
        max_output_bytes: int | None = None,
    ) -> str:
        """Run ``command`` to completion and return its output as text."""
        result = await self.execute(command, timeout, max_output_bytes)
        return result.text

    async def execute(
        self,
        command: str,
        timeout: float | None = None,
        max_output_bytes: int | None = None,
    ) -> CommandResult:
        timeout = timeout if timeout is not None else self._timeout
        limit = (
            max_output_bytes if max_output_bytes is not None else self._max_output_bytes
        )
        result = CommandResult(command=command)
        logger.info("Running: %s", command)

        try:
            process = await asyncio.create_subprocess_shell(
                command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self._cwd,
                start_new_session=True,  # Own process group for tree-killing
                env=_command_env(),
            )
        except Exception as e:
            result.error = f"Failed to execute command: {e}"
            return result

        stdout = bytearray()
        stderr = bytearray()

        async def _drain(stream: asyncio.StreamReader, sink: bytearray) -> None:
            while True:
                chunk = await stream.read(_READ_CHUNK)
                if not chunk:
                    return
                room = limit - len(stdout) - len(stderr)
                if len(chunk) > room:
                    sink.extend(chunk[: max(room, 0)])
                    result.overflowed = True
                    _signal_group(process.pid, signal.SIGKILL)
                    return
                sink.extend(chunk)

        assert process.stdout is not None and process.stderr is not None
        io = asyncio.gather(
            _drain(process.stdout, stdout),
            _drain(process.stderr, stderr),
            process.wait(),
        )
        try:
            await asyncio.wait_for(io, timeout=timeout)
        except asyncio.TimeoutError:
            result.timed_out = True
            _signal_group(process.pid, signal.SIGKILL)
            await process.wait()
        except asyncio.CancelledError:
            _signal_group(process.pid, signal.SIGKILL)
            raise

        result.stdout = stdout.decode("utf-8", errors="replace")
        result.stderr = stderr.decode("utf-8", errors="replace")
        result.exit_code = process.returncode

        if result.timed_out:
            result.error = f"Command timed out after {timeout:g}s: {command}"
        elif result.overflowed:
            result.error = f"Output exceeded {limit} bytes: {command}"
        elif result.exit_code and result.exit_code < 0:
            result.error = (
                f"Command terminated by {_signal_name(-result.exit_code)}: {command}"
            )
        elif result.exit_code:
            result.error = f"Command failed with exit code {result.exit_code}: {command}"

        return result

    # ------------------------------------------------------------------
    # Background
    # ------------------------------------------------------------------

    async def start(
        self,
        name: str,
        command: str,
        on_output: OutputCallback,
        on_exit: ExitCallback,
    ) -> BackgroundProcess | None:
        """Start ``command`` as background task ``name``.

        A task already running under ``name`` is terminated, and its exit
        notification delivered, before the new process is spawned. Concurrent
        starts under one name are serialized.

        If the process cannot be spawned, the failure is reported through
        ``on_output`` followed by ``on_exit(name, None)`` and None is returned.
        """
        lock = self._start_locks.setdefault(name, asyncio.Lock())
        async with lock:
            existing = self._background.get(name)
            if existing is not None:
                logger.info("Replacing background task %s (pid=%d)", name, existing.pid)
                await self._terminate(existing)

            try:
                process = await asyncio.create_subprocess_exec(
                    "sh",
                    "-c",
                    command,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=self._cwd,
                    start_new_session=True,
                    env=_command_env(),
                )
            except OSError as e:
                logger.error("Background task %s failed to start: %s", name, e)
                await _notify(on_output(name, f"Failed to execute command: {e}"), name)
                await _notify(on_exit(name, None), name)
                return None

            bg = BackgroundProcess(name=name, command=command, process=process)
            self._background[name] = bg
            bg.task = asyncio.create_task(self._supervise(bg, on_output, on_exit))
            logger.info("Background task %s started (pid=%d): %s", name, bg.pid, command)
            return bg

    async def stop(self, name: str) -> bool:
        """Terminate background task ``name``. Returns False if none runs."""
        bg = self._background.get(name)
        if bg is None:
            return False
        await self._terminate(bg)
        return True

    async def stop_all(self) -> list[str]:
        """Terminate every background task; returns the stopped names."""
        names = list(self._background)
        for name in names:
            await self.stop(name)
        return names

    def names(self) -> list[str]:
        return list(self._background)

    def is_running(self, name: str) -> bool:
        return name in self._background

    def get(self, name: str) -> BackgroundProcess | None:
        return self._background.get(name)

    async def _supervise(
        self,
        bg: BackgroundProcess,
        on_output: OutputCallback,
        on_exit: ExitCallback,
    ) -> None:
        proc = bg.process
        assert proc.stdout is not None and proc.stderr is not None
        drain = asyncio.gather(
            self._collect(bg, proc.stdout), self._collect(bg, proc.stderr)
        )
        waiter = asyncio.ensure_future(proc.wait())
        try:
            done, _ = await asyncio.wait({waiter}, timeout=self._initial_output_delay)
            if waiter in done:
                await _settle(drain)
            await self._deliver_output(bg, on_output)

            exit_code = await waiter
            await _settle(drain)
        finally:
            if not drain.done():
                drain.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await drain
            if self._background.get(bg.name) is bg:
                del self._background[bg.name]

        logger.info("Background task %s exited (code=%s)", bg.name, exit_code)
        await _notify(on_exit(bg.name, exit_code), bg.name)

    async def _collect(self, bg: BackgroundProcess, stream: asyncio.StreamReader) -> None:
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                return
            # Keep draining after delivery so the child never blocks on a full pipe.
            if not bg.delivered and len(bg.output) < self._max_output_bytes:
                bg.output.extend(chunk)

    async def _deliver_output(self, bg: BackgroundProcess, on_output: OutputCallback) -> None:
        if bg.delivered:
            return
        bg.delivered = True
        text = bg.output.decode("utf-8", errors="replace").strip() or NO_OUTPUT_YET
        await _notify(on_output(bg.name, text), bg.name)

    async def _terminate(self, bg: BackgroundProcess) -> None:
        """SIGTERM the task's process group; SIGKILL after a grace period."""
        if bg.running:
            _signal_group(bg.pid, signal.SIGTERM)
        if bg.task is None:
            return
        try:
            await asyncio.wait_for(asyncio.shield(bg.task), timeout=TERMINATE_GRACE)
        except asyncio.TimeoutError:
            logger.warning("Background task %s ignored SIGTERM, killing", bg.name)
            _signal_group(bg.pid, signal.SIGKILL)
            await bg.task


def _command_env() -> dict[str, str]:
    return {**os.environ, "FORCE_COLOR": "0"}


def _signal_group(pid: int, sig: signal.Signals) -> None:
    """Signal a process group led by ``pid`` (started with start_new_session)."""
    try:
        os.killpg(pid, sig)
    except ProcessLookupError:
        logger.debug("Process group already gone: %d", pid)
    except PermissionError as e:
        logger.warning("Cannot signal process group %d: %s", pid, e)


def _signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return f"signal {signum}"


async def _settle(drain: asyncio.Future, grace: float = 1.0) -> None:
    """Give the pipe readers a moment to hit EOF after the process exits."""
    try:
        await asyncio.wait_for(asyncio.shield(drain), timeout=grace)
    except asyncio.TimeoutError:
        pass


async def _notify(callback: Awaitable[None], name: str) -> None:
    try:
        await callback
    except Exception:
        logger.exception("Error in callback for background task %s", name)
