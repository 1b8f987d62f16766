"""PTY sessions — shells under pseudo-terminals, relayed to remote channels.

Each WebSocket client gets its own shell in its own process group. The
bridge forwards bytes both ways and peels resize control frames off the
input stream; the registry tracks sessions and tears them down.
"""

from remote_terminal.pty.bridge import (
    Channel,
    IOBridge,
    ResizeFrame,
    exit_trailer,
    parse_control_frame,
)
from remote_terminal.pty.manager import Session, SessionRegistry
from remote_terminal.pty.session import PTYSession, PTYStatus

__all__ = [
    "Channel",
    "IOBridge",
    "ResizeFrame",
    "exit_trailer",
    "parse_control_frame",
    "Session",
    "SessionRegistry",
    "PTYSession",
    "PTYStatus",
]
