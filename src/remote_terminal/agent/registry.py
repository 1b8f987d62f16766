"""Conversation registry — one agent conversation per user."""

from __future__ import annotations

import logging
from collections.abc import Hashable
from typing import TYPE_CHECKING, Callable

from remote_terminal.agent.loop import AgentLoop
from remote_terminal.llm.provider import ChatProvider, create_provider
from remote_terminal.tool.executor import CommandExecutor

if TYPE_CHECKING:
    from remote_terminal.config import RemoteTerminalConfig

logger = logging.getLogger(__name__)

ConversationFactory = Callable[[], AgentLoop]


class ConversationRegistry:
    """Maps user identities to their conversations.

    Conversations are created on first contact and live until dropped; a
    user's history is never shared with another user.
    """

    def __init__(self, factory: ConversationFactory) -> None:
        self._factory = factory
        self._conversations: dict[Hashable, AgentLoop] = {}

    @classmethod
    def from_config(
        cls,
        config: RemoteTerminalConfig,
        provider: ChatProvider | None = None,
    ) -> ConversationRegistry:
        """Build a registry whose conversations share one provider."""
        provider = provider or create_provider(
            model=config.llm.model,
            temperature=config.llm.temperature,
            max_tokens=config.llm.max_tokens,
        )

        def _factory() -> AgentLoop:
            return AgentLoop(
                provider=provider,
                workspace=config.workspace,
                executor=CommandExecutor(
                    cwd=config.workspace,
                    timeout=config.agent.command_timeout,
                    max_output_bytes=config.agent.max_output_bytes,
                ),
                max_turns=config.agent.max_turns,
                max_output_chars=config.agent.max_output_chars,
            )

        return cls(_factory)

    def get_or_create(self, user_id: Hashable) -> AgentLoop:
        """Get the user's conversation, starting one if needed."""
        conversation = self._conversations.get(user_id)
        if conversation is None:
            conversation = self._factory()
            self._conversations[user_id] = conversation
            logger.info("Started conversation for %s", user_id)
        return conversation

    def get(self, user_id: Hashable) -> AgentLoop | None:
        return self._conversations.get(user_id)

    def clear(self, user_id: Hashable) -> bool:
        """Clear a user's history. Returns False if they have none."""
        conversation = self._conversations.get(user_id)
        if conversation is None:
            return False
        conversation.clear_history()
        return True

    def drop(self, user_id: Hashable) -> None:
        """Forget a user's conversation entirely."""
        self._conversations.pop(user_id, None)

    def __len__(self) -> int:
        return len(self._conversations)

    def __contains__(self, user_id: Hashable) -> bool:
        return user_id in self._conversations
