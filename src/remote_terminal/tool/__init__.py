"""Command execution and output truncation."""

from remote_terminal.tool.executor import (
    BackgroundProcess,
    CommandExecutor,
    CommandResult,
)
from remote_terminal.tool.truncation import truncate_message, truncate_output

__all__ = [
    "BackgroundProcess",
    "CommandExecutor",
    "CommandResult",
    "truncate_message",
    "truncate_output",
]
