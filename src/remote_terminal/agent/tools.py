"""The agent's two tools: ``run_command`` and ``ask_user``.

Tool calls from the model are decoded into the closed variant
``RunCommand | AskUser``. Anything else (an unknown name, arguments that
fail validation) decodes to ``InvalidToolCall`` carrying the error text
that goes back to the model as the tool result.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, ClassVar

from pydantic import BaseModel, Field, ValidationError

from remote_terminal.llm.message import ToolCall

logger = logging.getLogger(__name__)


class RunCommandParams(BaseModel):
    command: str = Field(description="The shell command to execute")


class AskUserParams(BaseModel):
    question: str = Field(description="The question to ask")


@dataclass(frozen=True)
class RunCommand:
    """Execute a shell command in the workspace."""

    NAME: ClassVar[str] = "run_command"
    DESCRIPTION: ClassVar[str] = (
        "Execute a shell command in the workspace directory. "
        "Returns stdout and stderr."
    )
    PARAMS: ClassVar[type[BaseModel]] = RunCommandParams

    id: str
    command: str


@dataclass(frozen=True)
class AskUser:
    """Pause the conversation until the user answers."""

    NAME: ClassVar[str] = "ask_user"
    DESCRIPTION: ClassVar[str] = (
        "Ask the user a question when you need clarification or confirmation "
        "before proceeding."
    )
    PARAMS: ClassVar[type[BaseModel]] = AskUserParams

    id: str
    question: str


@dataclass(frozen=True)
class InvalidToolCall:
    """A tool call the agent cannot act on."""

    id: str
    name: str
    error: str


ToolInvocation = RunCommand | AskUser

TOOL_KINDS: tuple[type[RunCommand] | type[AskUser], ...] = (RunCommand, AskUser)


def tool_spec(kind: type[RunCommand] | type[AskUser]) -> dict[str, Any]:
    """OpenAI function spec for one tool kind."""
    schema = kind.PARAMS.model_json_schema()
    schema.pop("title", None)
    schema.pop("$defs", None)
    return {
        "type": "function",
        "function": {
            "name": kind.NAME,
            "description": kind.DESCRIPTION,
            "parameters": schema,
        },
    }


TOOL_SPECS: list[dict[str, Any]] = [tool_spec(kind) for kind in TOOL_KINDS]


def parse_tool_call(call: ToolCall) -> ToolInvocation | InvalidToolCall:
    """Decode a model tool call into a typed invocation."""
    if call.name == RunCommand.NAME:
        try:
            params = RunCommandParams.model_validate(call.arguments)
        except ValidationError as e:
            return _invalid(call, e)
        return RunCommand(id=call.id, command=params.command)

    if call.name == AskUser.NAME:
        try:
            params = AskUserParams.model_validate(call.arguments)
        except ValidationError as e:
            return _invalid(call, e)
        return AskUser(id=call.id, question=params.question)

    known = ", ".join(kind.NAME for kind in TOOL_KINDS)
    logger.warning("Model called unknown tool %r", call.name)
    return InvalidToolCall(
        id=call.id,
        name=call.name,
        error=f"Unknown tool: {call.name}. Available tools: {known}",
    )


def _invalid(call: ToolCall, e: ValidationError) -> InvalidToolCall:
    logger.warning("Invalid arguments for %s: %s", call.name, call.raw_arguments[:200])
    return InvalidToolCall(
        id=call.id, name=call.name, error=f"Invalid parameters: {e}"
    )
