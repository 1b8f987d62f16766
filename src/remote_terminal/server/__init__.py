"""Web service — FastAPI routes and the WebSocket terminal endpoint."""

from remote_terminal.server.app import create_app, serve
from remote_terminal.server.channel import WebSocketChannel

__all__ = ["create_app", "serve", "WebSocketChannel"]
