"""Conversation history entries for the agent.

A conversation only ever holds three kinds of entry: what the user typed,
what the model replied (text and/or tool call requests), and the result of
each requested tool call. ``Message.to_openai_dict`` renders an entry in the
chat-completions shape litellm expects.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Literal

logger = logging.getLogger(__name__)

Role = Literal["user", "assistant", "tool"]


@dataclass(frozen=True)
class ToolCallRequest:
    """A tool call as the model sent it, arguments still JSON-encoded."""

    id: str
    name: str
    arguments: str = ""

    def decode(self) -> ToolCall:
        try:
            args = json.loads(self.arguments) if self.arguments else {}
        except json.JSONDecodeError:
            logger.warning(
                "Undecodable arguments for %s: %s", self.name, self.arguments[:200]
            )
            args = {}
        if not isinstance(args, dict):
            args = {}
        return ToolCall(
            id=self.id, name=self.name, arguments=args, raw_arguments=self.arguments
        )

    def to_openai_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass
class ToolCall:
    """A decoded tool call. Non-object arguments decode to ``{}``."""

    id: str
    name: str
    arguments: dict[str, Any]
    raw_arguments: str = ""


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0


@dataclass
class Message:
    role: Role
    text: str = ""
    requests: list[ToolCallRequest] = field(default_factory=list)
    tool_call_id: str | None = None
    is_error: bool = False

    @property
    def tool_calls(self) -> list[ToolCall]:
        """Requested tool calls, decoded, in the order the model sent them."""
        return [request.decode() for request in self.requests]

    @classmethod
    def user(cls, text: str) -> Message:
        return cls(role="user", text=text)

    @classmethod
    def assistant(
        cls, text: str = "", tool_calls: list[ToolCallRequest] | None = None
    ) -> Message:
        return cls(role="assistant", text=text, requests=list(tool_calls or []))

    @classmethod
    def tool_result(
        cls, tool_call_id: str, content: str, is_error: bool = False
    ) -> Message:
        return cls(
            role="tool", text=content, tool_call_id=tool_call_id, is_error=is_error
        )

    def to_openai_dict(self) -> dict[str, Any]:
        if self.role == "tool":
            return {
                "role": "tool",
                "tool_call_id": self.tool_call_id or "",
                "content": self.text,
            }
        if self.role == "assistant":
            # content is null, not "", when the reply is only tool calls
            entry: dict[str, Any] = {"role": "assistant", "content": self.text or None}
            if self.requests:
                entry["tool_calls"] = [r.to_openai_dict() for r in self.requests]
            return entry
        return {"role": "user", "content": self.text}
