"""Model backend: conversation messages and the litellm provider."""

from remote_terminal.llm.message import (
    Message,
    TokenUsage,
    ToolCall,
    ToolCallRequest,
)
from remote_terminal.llm.provider import (
    ChatProvider,
    Completion,
    LiteLLMProvider,
    ProviderConfig,
    create_provider,
)

__all__ = [
    "Message",
    "TokenUsage",
    "ToolCall",
    "ToolCallRequest",
    "ChatProvider",
    "Completion",
    "LiteLLMProvider",
    "ProviderConfig",
    "create_provider",
]
