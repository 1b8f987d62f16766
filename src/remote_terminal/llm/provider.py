"""Model backend — one request, one reply, via litellm.

litellm picks the provider from the model string prefix ("openai/...",
"anthropic/...", "gemini/...") and reads API keys from the environment.
The agent needs exactly one reply per turn, so nothing here streams.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from remote_terminal.errors import BackendError
from remote_terminal.llm.message import Message, TokenUsage, ToolCallRequest

if TYPE_CHECKING:
    from litellm import ModelResponse

logger = logging.getLogger(__name__)


@dataclass
class ProviderConfig:
    model: str
    temperature: float | None = None
    max_tokens: int | None = None

    def sampling_kwargs(self) -> dict[str, Any]:
        """Optional sampling settings, omitted when unset."""
        settings = {"temperature": self.temperature, "max_tokens": self.max_tokens}
        return {k: v for k, v in settings.items() if v is not None}


@dataclass
class Completion:
    """The assistant's reply to one request."""

    message: Message
    usage: TokenUsage = field(default_factory=TokenUsage)
    finish_reason: str | None = None


@runtime_checkable
class ChatProvider(Protocol):
    @property
    def config(self) -> ProviderConfig: ...

    async def complete(
        self,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        tool_choice: str = "auto",
    ) -> Completion:
        """Send the system prompt plus ``messages`` and return the reply."""
        ...


@dataclass
class LiteLLMProvider:
    _config: ProviderConfig

    @property
    def config(self) -> ProviderConfig:
        return self._config

    async def complete(
        self,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        tool_choice: str = "auto",
    ) -> Completion:
        request: dict[str, Any] = {
            "model": self._config.model,
            "messages": [{"role": "system", "content": system}, *messages],
            **self._config.sampling_kwargs(),
        }
        if tools:
            request.update(tools=tools, tool_choice=tool_choice)

        logger.debug(
            "Completion request: model=%s messages=%d",
            self._config.model,
            len(request["messages"]),
        )
        try:
            response = await _acompletion_with_retry(**request)
        except Exception as e:
            raise BackendError(str(e)) from e

        return _response_to_completion(response)


@retry(
    retry=retry_if_exception_type((ConnectionError, TimeoutError, OSError)),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=30),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)
async def _acompletion_with_retry(**kwargs: Any) -> ModelResponse:
    """litellm.acompletion, retried on transient network errors."""
    import litellm

    return await litellm.acompletion(**kwargs)


def _response_to_completion(response: ModelResponse) -> Completion:
    """Map an OpenAI-shaped litellm response onto ``Completion``."""
    choices = getattr(response, "choices", None)
    if not choices:
        raise BackendError("Model returned no choices")

    reply = choices[0].message
    requests = [_tool_call_request(tc) for tc in getattr(reply, "tool_calls", None) or []]
    message = Message.assistant(getattr(reply, "content", None) or "", requests)

    return Completion(
        message=message,
        usage=_usage(getattr(response, "usage", None)),
        finish_reason=getattr(choices[0], "finish_reason", None),
    )


def _tool_call_request(tc: Any) -> ToolCallRequest:
    func = getattr(tc, "function", None)
    return ToolCallRequest(
        id=tc.id or "",
        name=getattr(func, "name", None) or "",
        arguments=getattr(func, "arguments", None) or "",
    )


def _usage(raw: Any) -> TokenUsage:
    if not raw:
        return TokenUsage()
    return TokenUsage(
        input_tokens=getattr(raw, "prompt_tokens", 0) or 0,
        output_tokens=getattr(raw, "completion_tokens", 0) or 0,
        total_tokens=getattr(raw, "total_tokens", 0) or 0,
    )


def create_provider(
    model: str,
    temperature: float | None = None,
    max_tokens: int | None = None,
) -> ChatProvider:
    """Create the litellm-backed provider for ``model`` (e.g. "openai/gpt-4.1-nano")."""
    return LiteLLMProvider(
        _config=ProviderConfig(model=model, temperature=temperature, max_tokens=max_tokens)
    )
