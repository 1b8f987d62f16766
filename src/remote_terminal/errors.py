"""Exception hierarchy for remote-terminal."""

from __future__ import annotations


class RemoteTerminalError(Exception):
    """Base class for all remote-terminal errors."""


class SpawnError(RemoteTerminalError):
    """The shell or its pseudo-terminal could not be created."""

    def __init__(self, shell: str, cause: BaseException) -> None:
        self.shell = shell
        self.cause = cause
        super().__init__(f"Failed to spawn {shell}: {cause}")


class ChannelClosedError(RemoteTerminalError):
    """A session was requested for a channel that is no longer open."""


class BackendError(RemoteTerminalError):
    """The model backend failed to produce a completion."""
