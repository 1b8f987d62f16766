"""FastAPI application for the web terminal.

Each connection to ``/ws/terminal`` gets its own shell under a PTY. Plain
frames are keystrokes; a ``{"type": "resize", "cols": C, "rows": R}`` frame
resizes the terminal. The session ends when either the socket or the shell
goes away.
"""

from __future__ import annotations

import logging
import socket
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

import uvicorn
from fastapi import FastAPI, WebSocket
from pydantic import BaseModel

from remote_terminal import __version__
from remote_terminal.config import RemoteTerminalConfig
from remote_terminal.errors import ChannelClosedError, SpawnError
from remote_terminal.pty.manager import SessionRegistry
from remote_terminal.server.channel import WebSocketChannel

logger = logging.getLogger(__name__)

# RFC 6455 "internal error"
WS_INTERNAL_ERROR = 1011


class HealthStatus(BaseModel):
    status: str = "ok"
    workspace: str
    sessions: int
    uptime: float


class WorkspaceInfo(BaseModel):
    workspace: str
    hostname: str


def create_app(
    config: RemoteTerminalConfig,
    registry: SessionRegistry | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("Web terminal serving %s", config.workspace)
        yield
        await app.state.registry.destroy_all()
        logger.info("Web terminal stopped")

    app = FastAPI(
        title="remote-terminal",
        description="Browser terminal for a workspace directory",
        version=__version__,
        lifespan=lifespan,
    )

    app.state.config = config
    app.state.registry = registry or SessionRegistry.from_config(config)
    app.state.started_at = time.monotonic()

    @app.get("/health")
    async def health_check() -> HealthStatus:
        return HealthStatus(
            workspace=config.workspace,
            sessions=len(app.state.registry),
            uptime=time.monotonic() - app.state.started_at,
        )

    @app.get("/api/info")
    async def workspace_info() -> WorkspaceInfo:
        return WorkspaceInfo(workspace=config.workspace, hostname=socket.gethostname())

    @app.websocket("/ws/terminal")
    async def ws_terminal(websocket: WebSocket) -> None:
        await websocket.accept()
        logger.info("New terminal connection")
        channel = WebSocketChannel(websocket)
        sessions: SessionRegistry = app.state.registry

        try:
            session_id = await sessions.create(channel)
        except SpawnError as e:
            logger.error("Could not start terminal session: %s", e)
            await channel.close(code=WS_INTERNAL_ERROR)
            return
        except ChannelClosedError:
            logger.info("Client left before the session started")
            return

        try:
            await channel.wait_closed()
        finally:
            await sessions.destroy(session_id)

    return app


def serve(config: RemoteTerminalConfig, log_level: str = "info") -> None:
    """Run the web terminal under uvicorn until interrupted."""
    app = create_app(config)
    uvicorn.run(
        app,
        host=config.server.host,
        port=config.server.port,
        log_level=log_level,
    )
