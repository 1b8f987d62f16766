"""The agent loop — free text in, shell commands out, answer back."""

from __future__ import annotations

import enum
import logging
from collections.abc import Awaitable
from dataclasses import dataclass
from typing import Callable

from remote_terminal.agent.tools import (
    TOOL_SPECS,
    AskUser,
    InvalidToolCall,
    RunCommand,
    parse_tool_call,
)
from remote_terminal.errors import BackendError
from remote_terminal.llm.message import Message, ToolCall
from remote_terminal.llm.provider import ChatProvider
from remote_terminal.tool.executor import CommandExecutor
from remote_terminal.tool.truncation import MAX_OUTPUT_CHARS, truncate_output

logger = logging.getLogger(__name__)

MAX_TURNS = 10
AGENT_COMMAND_TIMEOUT = 120.0
AGENT_MAX_OUTPUT_BYTES = 1024 * 1024

WAITING_FOR_USER = "[Waiting for user response...]"
SKIPPED_FOR_QUESTION = "[Skipped: waiting for user response]"
MAX_TURNS_MARKER = "\n(Reached maximum turns)"
DONE = "(Done)"

SYSTEM_PROMPT = """\
You are a helpful command-line assistant running on a user's machine.
You can run shell commands in their workspace directory.

Your job is to:
1. Understand what the user wants to do
2. Run the appropriate shell commands to accomplish the task
3. Report back the results in a clear, concise way

Guidelines:
- Run commands to gather information before making changes
- For destructive operations, confirm with the user first (use ask_user)
- Keep responses concise; they are read in a chat window
- If a command fails, try to diagnose and fix the issue
- You can run multiple commands in sequence to accomplish complex tasks

The workspace is usually a coding project. Typical work includes git
operations, reading and editing files, package management, running builds,
tests and dev servers, and exploring or debugging the codebase."""


class AgentState(enum.Enum):
    """How did ``process_message`` end?"""

    ANSWERED = "answered"  # Model replied without tool calls
    AWAITING_ANSWER = "awaiting_answer"  # Model asked the user something
    FAILED = "failed"  # Backend error
    EXHAUSTED = "exhausted"  # Turn budget used up


@dataclass
class AgentResult:
    """Outcome of one ``process_message`` call."""

    state: AgentState
    text: str = ""
    question: str | None = None
    error: str | None = None

    @classmethod
    def answered(cls, text: str) -> AgentResult:
        return cls(state=AgentState.ANSWERED, text=text or DONE)

    @classmethod
    def awaiting(cls, question: str) -> AgentResult:
        return cls(state=AgentState.AWAITING_ANSWER, text=question, question=question)

    @classmethod
    def failed(cls, error: str) -> AgentResult:
        return cls(state=AgentState.FAILED, text=error, error=error)

    @classmethod
    def exhausted(cls, last_text: str) -> AgentResult:
        return cls(state=AgentState.EXHAUSTED, text=last_text + MAX_TURNS_MARKER)


@dataclass
class CommandProgress:
    """Progress notification for a ``run_command`` call.

    Sent once before the command starts (``output`` is None) and once after
    it finishes (``output`` holds the truncated text fed to the model).
    """

    command: str
    output: str | None = None

    @property
    def finished(self) -> bool:
        return self.output is not None


OnProgress = Callable[[CommandProgress], Awaitable[None]]


class AgentLoop:
    """One user's conversation with the shell-running agent.

    The loop keeps the full history and an optional pending question. Each
    ``process_message`` call runs at most ``max_turns`` model requests. The
    history is never pruned; ``clear_history`` is the only reset.
    """

    def __init__(
        self,
        provider: ChatProvider,
        workspace: str,
        executor: CommandExecutor | None = None,
        max_turns: int = MAX_TURNS,
        max_output_chars: int = MAX_OUTPUT_CHARS,
        system_prompt: str = SYSTEM_PROMPT,
    ) -> None:
        self._provider = provider
        self._workspace = workspace
        self._executor = executor or CommandExecutor(
            cwd=workspace,
            timeout=AGENT_COMMAND_TIMEOUT,
            max_output_bytes=AGENT_MAX_OUTPUT_BYTES,
        )
        self._max_turns = max_turns
        self._max_output_chars = max_output_chars
        self._system_prompt = system_prompt
        self._history: list[Message] = []
        self._pending_question: str | None = None

    @property
    def history(self) -> list[Message]:
        return list(self._history)

    @property
    def pending_question(self) -> str | None:
        return self._pending_question

    @property
    def workspace(self) -> str:
        return self._workspace

    def clear_history(self) -> None:
        """Forget the conversation and any pending question."""
        self._history.clear()
        self._pending_question = None
        logger.info("Conversation history cleared")

    async def process_message(
        self, text: str, on_progress: OnProgress | None = None
    ) -> AgentResult:
        """Feed one user message through the loop."""
        if self._pending_question is not None:
            self._history.append(
                Message.user(f'[Answer to "{self._pending_question}"]: {text}')
            )
            self._pending_question = None
        else:
            self._history.append(Message.user(text))

        last_text = ""
        for turn in range(1, self._max_turns + 1):
            logger.info("Agent turn %d/%d", turn, self._max_turns)

            try:
                completion = await self._provider.complete(
                    system=self._system_prompt,
                    messages=[m.to_openai_dict() for m in self._history],
                    tools=TOOL_SPECS,
                    tool_choice="auto",
                )
            except BackendError as e:
                logger.error("Model request failed on turn %d: %s", turn, e, exc_info=True)
                return AgentResult.failed(f"LLM error: {e}")

            reply = completion.message
            self._history.append(reply)
            last_text = reply.text

            calls = reply.tool_calls
            if not calls:
                logger.info("Agent answered after %d turns", turn)
                return AgentResult.answered(reply.text)

            question = await self._dispatch(calls, on_progress)
            if question is not None:
                return AgentResult.awaiting(question)

        logger.warning("Agent hit max turns (%d)", self._max_turns)
        return AgentResult.exhausted(last_text)

    async def _dispatch(
        self, calls: list[ToolCall], on_progress: OnProgress | None
    ) -> str | None:
        """Run a reply's tool calls in order.

        Returns the question when an ``ask_user`` call pauses the
        conversation; every later call in the same reply gets a stub result.
        """
        for index, call in enumerate(calls):
            invocation = parse_tool_call(call)

            if isinstance(invocation, InvalidToolCall):
                self._history.append(
                    Message.tool_result(invocation.id, invocation.error, is_error=True)
                )
                continue

            if isinstance(invocation, AskUser):
                self._pending_question = invocation.question
                self._history.append(
                    Message.tool_result(invocation.id, WAITING_FOR_USER)
                )
                for skipped in calls[index + 1 :]:
                    self._history.append(
                        Message.tool_result(skipped.id, SKIPPED_FOR_QUESTION, is_error=True)
                    )
                logger.info("Agent asked: %s", invocation.question)
                return invocation.question

            output = await self._run_command(invocation, on_progress)
            self._history.append(Message.tool_result(invocation.id, output))

        return None

    async def _run_command(
        self, invocation: RunCommand, on_progress: OnProgress | None
    ) -> str:
        await self._notify(on_progress, CommandProgress(command=invocation.command))
        raw = await self._executor.run(invocation.command)
        output = truncate_output(raw, max_chars=self._max_output_chars)
        await self._notify(
            on_progress, CommandProgress(command=invocation.command, output=output)
        )
        return output

    async def _notify(
        self, on_progress: OnProgress | None, progress: CommandProgress
    ) -> None:
        if on_progress is None:
            return
        try:
            await on_progress(progress)
        except Exception:
            logger.exception("Error in progress callback")
