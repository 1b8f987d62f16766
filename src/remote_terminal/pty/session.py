"""PTY session — a shell running under a pseudo-terminal."""

from __future__ import annotations

import asyncio
import enum
import fcntl
import logging
import os
import pty
import signal
import struct
import subprocess
import termios
from collections.abc import Awaitable
from dataclasses import dataclass, field
from typing import Callable

from remote_terminal.errors import SpawnError

logger = logging.getLogger(__name__)

_READ_CHUNK = 64 * 1024

DataCallback = Callable[[bytes], Awaitable[None]]
ExitCallback = Callable[["PTYSession", int | None, int | None], Awaitable[None]]


class PTYStatus(enum.Enum):
    """Lifecycle states for a PTY session."""

    PENDING = "pending"
    RUNNING = "running"
    KILLING = "killing"  # Kill requested, waiting for process to die
    KILLED = "killed"  # Killed by us
    EXITED = "exited"  # Process exited on its own


@dataclass
class PTYSession:
    """A shell attached to the slave side of a pseudo-terminal.

    The session owns the master descriptor. Output is read with
    ``loop.add_reader`` on the non-blocking master and handed, chunk by
    chunk and in order, to the data callback. Input written while the
    master is full is queued and flushed with ``loop.add_writer``.

    The shell runs in its own session with the slave as its controlling
    terminal, so job control works and ``kill()`` can take down the whole
    process group.
    """

    id: int
    shell: str
    cwd: str = field(default_factory=os.getcwd)
    env: dict[str, str] = field(default_factory=dict)
    cols: int = 80
    rows: int = 24

    # Internal state
    _master_fd: int = field(default=-1, init=False)
    _proc: subprocess.Popen | None = field(default=None, init=False)
    _loop: asyncio.AbstractEventLoop | None = field(default=None, init=False)
    _chunks: asyncio.Queue[bytes | None] | None = field(default=None, init=False)
    _pending_input: bytearray = field(default_factory=bytearray, init=False)
    _pump_task: asyncio.Task[None] | None = field(default=None, init=False)
    _status: PTYStatus = field(default=PTYStatus.PENDING, init=False)
    _on_data: DataCallback | None = field(default=None, init=False)
    _on_exit: ExitCallback | None = field(default=None, init=False)

    def set_on_data(self, callback: DataCallback) -> None:
        """Set the coroutine receiving every output chunk."""
        self._on_data = callback

    def set_on_exit(self, callback: ExitCallback) -> None:
        """Set a callback for when the process exits on its own.

        The callback receives (session, exit_code, signal). It is NOT
        called when the session is torn down via kill().
        """
        self._on_exit = callback

    async def start(self) -> None:
        """Spawn the shell in a new PTY. Raises SpawnError on failure."""
        try:
            master_fd, slave_fd = pty.openpty()
        except OSError as e:
            raise SpawnError(self.shell, e) from e

        _set_winsize(slave_fd, self.cols, self.rows)

        env = {**os.environ, **self.env}

        try:
            self._proc = subprocess.Popen(
                [self.shell],
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                start_new_session=True,  # setsid(): new session and process group
                preexec_fn=_acquire_controlling_tty,
                env=env,
                cwd=self.cwd,
            )
        except Exception as e:
            os.close(master_fd)
            raise SpawnError(self.shell, e) from e
        finally:
            # Parent always closes slave fd
            os.close(slave_fd)

        self._master_fd = master_fd
        os.set_blocking(master_fd, False)
        self._status = PTYStatus.RUNNING

        self._loop = asyncio.get_running_loop()
        self._chunks = asyncio.Queue()
        self._loop.add_reader(master_fd, self._on_readable)
        self._pump_task = asyncio.create_task(self._pump_output())

        logger.info(
            "PTY session %d started: pid=%d shell=%s cwd=%s",
            self.id,
            self.pid,
            self.shell,
            self.cwd,
        )

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def _on_readable(self) -> None:
        try:
            data = os.read(self._master_fd, _READ_CHUNK)
        except (BlockingIOError, InterruptedError):
            return
        except OSError:
            # EIO: every slave descriptor is closed, the shell is gone.
            data = b""

        assert self._chunks is not None
        if data:
            self._chunks.put_nowait(data)
        else:
            self._remove_reader()
            self._chunks.put_nowait(None)

    async def _pump_output(self) -> None:
        """Hand chunks to the data callback in production order."""
        assert self._chunks is not None
        while True:
            data = await self._chunks.get()
            if data is None:
                break
            if self._on_data is None:
                continue
            try:
                await self._on_data(data)
            except Exception:
                logger.exception("Error in data callback for session %d", self.id)

        if self._status != PTYStatus.RUNNING:
            return

        returncode = await self.wait_for_exit()
        self._status = PTYStatus.EXITED
        self._release()
        exit_code, sig = _split_returncode(returncode)
        logger.info(
            "PTY session %d exited (code=%s, signal=%s)", self.id, exit_code, sig
        )
        if self._on_exit:
            try:
                await self._on_exit(self, exit_code, sig)
            except Exception:
                logger.exception("Error in on_exit callback for session %d", self.id)

    # ------------------------------------------------------------------
    # Input
    # ------------------------------------------------------------------

    def write(self, data: bytes) -> None:
        """Queue ``data`` for the shell's input. Raises OSError when closed."""
        if self._status != PTYStatus.RUNNING:
            raise OSError(f"PTY session {self.id} is not running")
        if not data:
            return
        if self._pending_input:
            self._pending_input.extend(data)
            return
        try:
            written = os.write(self._master_fd, data)
        except BlockingIOError:
            written = 0
        if written < len(data):
            self._pending_input.extend(data[written:])
            assert self._loop is not None
            self._loop.add_writer(self._master_fd, self._flush_input)

    def _flush_input(self) -> None:
        try:
            written = os.write(self._master_fd, self._pending_input)
        except BlockingIOError:
            return
        except OSError as e:
            logger.debug("Dropping queued input for session %d: %s", self.id, e)
            written = len(self._pending_input)
        del self._pending_input[:written]
        if not self._pending_input and self._loop is not None:
            self._loop.remove_writer(self._master_fd)

    # ------------------------------------------------------------------
    # Geometry
    # ------------------------------------------------------------------

    def resize(self, cols: int, rows: int) -> None:
        """Set the terminal size; the kernel delivers SIGWINCH to the shell."""
        if self._status != PTYStatus.RUNNING:
            return
        _set_winsize(self._master_fd, cols, rows)
        self.cols, self.rows = cols, rows
        logger.debug("PTY session %d resized to %dx%d", self.id, cols, rows)

    def get_size(self) -> tuple[int, int]:
        """Read the (cols, rows) the kernel reports for this terminal."""
        packed = fcntl.ioctl(
            self._master_fd, termios.TIOCGWINSZ, struct.pack("HHHH", 0, 0, 0, 0)
        )
        rows, cols, _, _ = struct.unpack("HHHH", packed)
        return cols, rows

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def kill(self) -> None:
        """Kill the entire process tree and release the PTY."""
        if self._proc is None or self._status not in (
            PTYStatus.RUNNING,
            PTYStatus.KILLING,
        ):
            self._release()
            return

        self._status = PTYStatus.KILLING
        pid = self.pid
        try:
            os.killpg(pid, signal.SIGKILL)
            logger.info("Killed PTY session %d (pgid=%d)", self.id, pid)
        except ProcessLookupError:
            logger.debug("Process group already gone: %d", pid)
        except OSError as e:
            logger.warning("Error killing PTY session %d: %s", self.id, e)

        # Reap to avoid zombies
        if self._proc is not None:
            try:
                self._proc.wait(timeout=2)
            except subprocess.TimeoutExpired:
                logger.warning("PTY session %d did not die after SIGKILL", self.id)

        if self._pump_task is not None and self._pump_task is not _current_task():
            self._pump_task.cancel()

        self._release()
        self._status = PTYStatus.KILLED

    def _remove_reader(self) -> None:
        if self._loop is not None and self._master_fd >= 0:
            self._loop.remove_reader(self._master_fd)

    def _release(self) -> None:
        """Detach from the event loop and close the master descriptor."""
        if self._master_fd < 0:
            return
        self._remove_reader()
        if self._loop is not None:
            self._loop.remove_writer(self._master_fd)
        self._pending_input.clear()
        try:
            os.close(self._master_fd)
        except OSError:
            pass
        self._master_fd = -1

    async def wait_for_exit(self, timeout: float = 5.0) -> int | None:
        """Wait for the process to exit. Returns the returncode or None on timeout."""
        if self._proc is None:
            return None
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            ret = self._proc.poll()
            if ret is not None:
                return ret
            await asyncio.sleep(0.05)
        return None

    @property
    def pid(self) -> int:
        return self._proc.pid if self._proc is not None else 0

    @property
    def alive(self) -> bool:
        return self._status == PTYStatus.RUNNING

    @property
    def status(self) -> PTYStatus:
        return self._status


def _acquire_controlling_tty() -> None:
    """Runs in the child after setsid(): make the slave (fd 0) our ctty."""
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


def _set_winsize(fd: int, cols: int, rows: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def _split_returncode(returncode: int | None) -> tuple[int | None, int | None]:
    """Popen reports death-by-signal as a negative returncode."""
    if returncode is None:
        return None, None
    if returncode < 0:
        return None, -returncode
    return returncode, None


def _current_task() -> asyncio.Task | None:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None
