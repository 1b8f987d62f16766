"""Session registry — owns every live terminal session."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from remote_terminal.errors import ChannelClosedError
from remote_terminal.pty.bridge import Channel, IOBridge
from remote_terminal.pty.session import PTYSession

if TYPE_CHECKING:
    from remote_terminal.config import RemoteTerminalConfig

logger = logging.getLogger(__name__)

DEFAULT_COLS = 80
DEFAULT_ROWS = 24


@dataclass
class Session:
    """A PTY session bound to exactly one channel."""

    pty: PTYSession
    bridge: IOBridge

    @property
    def id(self) -> int:
        return self.pty.id

    @property
    def channel(self) -> Channel:
        return self.bridge.channel


class SessionRegistry:
    """Creates, resizes and destroys terminal sessions keyed by id.

    Ids increase monotonically and are never reused. A session lives until
    the earlier of its channel closing and its shell exiting; either event
    removes it from the registry. ``destroy`` is idempotent.
    """

    def __init__(
        self,
        workspace: str,
        shell: str,
        cols: int = DEFAULT_COLS,
        rows: int = DEFAULT_ROWS,
        term: str = "xterm-256color",
    ) -> None:
        self._workspace = workspace
        self._shell = shell
        self._cols = cols
        self._rows = rows
        self._env = {"TERM": term, "COLORTERM": "truecolor"}
        self._sessions: dict[int, Session] = {}
        self._next_id = 1

    @classmethod
    def from_config(cls, config: RemoteTerminalConfig) -> SessionRegistry:
        return cls(
            workspace=config.workspace,
            shell=config.terminal.shell,
            cols=config.terminal.cols,
            rows=config.terminal.rows,
            term=config.terminal.term,
        )

    @property
    def workspace(self) -> str:
        return self._workspace

    async def create(self, channel: Channel) -> int:
        """Spawn a shell for ``channel`` and start relaying.

        Raises:
            ChannelClosedError: The channel is not open.
            SpawnError: The shell or its PTY could not be created.
        """
        if not channel.is_open:
            raise ChannelClosedError("Cannot attach a session to a closed channel")

        session_id = self._next_id
        self._next_id += 1

        pty = PTYSession(
            id=session_id,
            shell=self._shell,
            cwd=self._workspace,
            env=dict(self._env),
            cols=self._cols,
            rows=self._rows,
        )
        await pty.start()

        async def _on_close() -> None:
            await self.destroy(session_id)

        bridge = IOBridge(pty, channel, on_close=_on_close)
        self._sessions[session_id] = Session(pty=pty, bridge=bridge)
        bridge.start()
        return session_id

    def get(self, session_id: int) -> Session | None:
        """Get a session by ID."""
        return self._sessions.get(session_id)

    def resize(self, session_id: int, cols: int, rows: int) -> None:
        """Resize a session's terminal. Unknown ids are ignored."""
        session = self._sessions.get(session_id)
        if session:
            session.pty.resize(cols, rows)

    async def destroy(self, session_id: int) -> None:
        """Kill a session and remove it from tracking."""
        session = self._sessions.pop(session_id, None)
        if session is None:
            return
        session.bridge.stop()
        session.pty.kill()
        logger.info("Session %d destroyed", session_id)

    async def destroy_all(self) -> None:
        """Kill all sessions. Called on shutdown."""
        for session_id in list(self._sessions.keys()):
            await self.destroy(session_id)
        logger.info("All terminal sessions destroyed")

    def list_sessions(self) -> list[dict[str, Any]]:
        """List all active sessions."""
        return [
            {
                "id": s.id,
                "pid": s.pty.pid,
                "shell": s.pty.shell,
                "cwd": s.pty.cwd,
                "cols": s.pty.cols,
                "rows": s.pty.rows,
                "status": s.pty.status.value,
            }
            for s in self._sessions.values()
        ]

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: int) -> bool:
        return session_id in self._sessions
