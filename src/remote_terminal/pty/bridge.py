"""IO bridge — relays one PTY session to one transport channel.

Output flows process → channel verbatim. Input flows channel → process,
except for control frames: a payload that decodes to a JSON object with
``"type": "resize"`` and numeric ``cols``/``rows`` resizes the terminal and
is consumed. Everything else, valid JSON or not, is terminal input.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import signal
from collections.abc import Awaitable
from dataclasses import dataclass
from typing import Callable, Protocol, runtime_checkable

from remote_terminal.pty.session import PTYSession

logger = logging.getLogger(__name__)

RESIZE = "resize"
MAX_DIMENSION = 0xFFFF  # struct winsize fields are unsigned short

Payload = str | bytes


@runtime_checkable
class Channel(Protocol):
    """A duplex connection to a remote terminal client."""

    @property
    def is_open(self) -> bool: ...

    async def send(self, data: bytes) -> None:
        """Deliver process output to the client."""
        ...

    async def receive(self) -> Payload | None:
        """Next inbound frame, or None once the client has gone."""
        ...

    async def close(self) -> None: ...


@dataclass(frozen=True)
class ResizeFrame:
    """A decoded ``{"type": "resize", "cols": C, "rows": R}`` frame."""

    cols: int
    rows: int


def parse_control_frame(payload: Payload) -> ResizeFrame | None:
    """Decode ``payload`` as a control frame, or return None for terminal data."""
    if isinstance(payload, (bytes, bytearray)):
        try:
            text = bytes(payload).decode("utf-8")
        except UnicodeDecodeError:
            return None
    else:
        text = payload

    try:
        obj = json.loads(text)
    except (ValueError, RecursionError):
        return None

    if not isinstance(obj, dict) or obj.get("type") != RESIZE:
        return None

    cols = obj.get("cols")
    rows = obj.get("rows")
    if not (_is_dimension(cols) and _is_dimension(rows)):
        return None
    return ResizeFrame(cols=int(cols), rows=int(rows))


def _is_dimension(value: object) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value) and 1 <= value <= MAX_DIMENSION


def exit_trailer(exit_code: int | None, sig: int | None) -> bytes:
    """Red ``[Process exited ...]`` line written after a spontaneous exit."""
    details = []
    if exit_code is not None:
        details.append(f"code {exit_code}")
    if sig is not None:
        try:
            details.append(f"signal {signal.Signals(sig).name}")
        except ValueError:
            details.append(f"signal {sig}")
    status = f" with {', '.join(details)}" if details else ""
    return f"\r\n\x1b[31m[Process exited{status}]\x1b[0m\r\n".encode()


class IOBridge:
    """Duplex relay between a PTY session and its channel.

    ``on_close`` runs exactly once, when either side ends: the channel
    reporting closure or the process exiting on its own.
    """

    def __init__(
        self,
        session: PTYSession,
        channel: Channel,
        on_close: Callable[[], Awaitable[None]],
    ) -> None:
        self._session = session
        self._channel = channel
        self._on_close = on_close
        self._input_task: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def channel(self) -> Channel:
        return self._channel

    def start(self) -> None:
        """Wire both directions."""
        self._session.set_on_data(self.forward_output)
        self._session.set_on_exit(self._on_process_exit)
        self._input_task = asyncio.create_task(self._pump_input())

    def stop(self) -> None:
        """Stop relaying input. Safe to call from inside the relay itself."""
        self._closed = True
        task = self._input_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    # ------------------------------------------------------------------
    # Process → channel
    # ------------------------------------------------------------------

    async def forward_output(self, data: bytes) -> None:
        if not self._channel.is_open:
            logger.debug(
                "Session %d: channel closed, dropping %d bytes",
                self._session.id,
                len(data),
            )
            return
        try:
            await self._channel.send(data)
        except Exception as e:
            # The channel's own close event is authoritative, not this error.
            logger.debug(
                "Session %d: send failed on open channel: %s", self._session.id, e
            )

    async def _on_process_exit(
        self, session: PTYSession, exit_code: int | None, sig: int | None
    ) -> None:
        if self._channel.is_open:
            try:
                await self._channel.send(exit_trailer(exit_code, sig))
                await self._channel.close()
            except Exception as e:
                logger.debug("Session %d: exit notice not delivered: %s", session.id, e)
        await self._finish()

    # ------------------------------------------------------------------
    # Channel → process
    # ------------------------------------------------------------------

    def handle_input(self, payload: Payload) -> None:
        """Apply one inbound frame: resize, or write it to the shell."""
        frame = parse_control_frame(payload)
        if frame is not None:
            self._session.resize(frame.cols, frame.rows)
            return

        data = payload.encode("utf-8") if isinstance(payload, str) else bytes(payload)
        try:
            self._session.write(data)
        except OSError as e:
            logger.debug("Session %d: input dropped: %s", self._session.id, e)

    async def _pump_input(self) -> None:
        try:
            while not self._closed:
                payload = await self._channel.receive()
                if payload is None:
                    logger.info("Session %d: channel closed", self._session.id)
                    break
                self.handle_input(payload)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug("Session %d: receive failed: %s", self._session.id, e)
        await self._finish()

    async def _finish(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._on_close()
