"""Agent — a bounded tool-calling conversation that runs shell commands."""

from remote_terminal.agent.loop import (
    AgentLoop,
    AgentResult,
    AgentState,
    CommandProgress,
    SYSTEM_PROMPT,
)
from remote_terminal.agent.registry import ConversationRegistry
from remote_terminal.agent.tools import (
    AskUser,
    InvalidToolCall,
    RunCommand,
    ToolInvocation,
    parse_tool_call,
)

__all__ = [
    "AgentLoop",
    "AgentResult",
    "AgentState",
    "CommandProgress",
    "SYSTEM_PROMPT",
    "ConversationRegistry",
    "AskUser",
    "InvalidToolCall",
    "RunCommand",
    "ToolInvocation",
    "parse_tool_call",
]
