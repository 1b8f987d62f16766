"""WebSocket adapter for the bridge's ``Channel`` protocol."""

from __future__ import annotations

import asyncio
import codecs
import logging

from fastapi import WebSocket
from starlette.websockets import WebSocketDisconnect, WebSocketState

logger = logging.getLogger(__name__)


class WebSocketChannel:
    """A FastAPI WebSocket seen as a terminal channel.

    Process output arrives as raw bytes that may split a multi-byte UTF-8
    sequence; an incremental decoder holds partial sequences back until the
    next chunk, and every complete run goes out as one text frame.
    """

    def __init__(self, websocket: WebSocket) -> None:
        self._ws = websocket
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._closed = asyncio.Event()

    @property
    def is_open(self) -> bool:
        return (
            not self._closed.is_set()
            and self._ws.client_state == WebSocketState.CONNECTED
            and self._ws.application_state == WebSocketState.CONNECTED
        )

    async def send(self, data: bytes) -> None:
        text = self._decoder.decode(data)
        if text:
            await self._ws.send_text(text)

    async def receive(self) -> str | bytes | None:
        if self._closed.is_set():
            return None
        try:
            message = await self._ws.receive()
        except (WebSocketDisconnect, RuntimeError):
            self._closed.set()
            return None

        if message["type"] == "websocket.disconnect":
            self._closed.set()
            return None

        text = message.get("text")
        if text is not None:
            return text
        return message.get("bytes") or b""

    async def close(self, code: int = 1000) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        if self._ws.application_state == WebSocketState.CONNECTED:
            try:
                await self._ws.close(code=code)
            except (RuntimeError, OSError, WebSocketDisconnect) as e:
                logger.debug("WebSocket already closed: %s", e)

    async def wait_closed(self) -> None:
        """Block until either side closes the channel."""
        await self._closed.wait()
