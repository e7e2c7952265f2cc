"""Anthropic Claude chat model adapter."""

from __future__ import annotations

from typing import AsyncIterator, Optional

import anthropic
import structlog

from answer_search.config import settings
from answer_search.models import ChatResponse
from answer_search.services.protocols import ChatMessages

logger = structlog.get_logger(__name__)


def _split_system(messages: ChatMessages) -> tuple[str, list[dict[str, str]]]:
    """Separate system messages (sent via ``system=``) from the conversation.

    Anthropic requires the conversation to start with a user turn, so any
    leading assistant turns are dropped.
    """
    system_parts: list[str] = []
    turns: list[dict[str, str]] = []
    for message in messages:
        role = message.get("role", "user")
        if role == "system":
            system_parts.append(message["content"])
        elif role in ("user", "assistant"):
            turns.append({"role": role, "content": message["content"]})
    while turns and turns[0]["role"] != "user":
        turns.pop(0)
    return "\n\n".join(system_parts), turns


class AnthropicChatModel:
    """Chat model backed by the Anthropic Messages API.

    Instantiated once and reused across requests (the SDK manages its own
    HTTP connection pool internally). Errors propagate to the caller; each
    pipeline stage decides how to degrade.

    Args:
        model:      Model identifier; defaults to ``settings.chat_model``.
        max_tokens: Completion budget; defaults to ``settings.chat_max_tokens``.
        api_key:    Overrides ``settings.anthropic_api_key``.
    """

    def __init__(
        self,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        api_key: Optional[str] = None,
    ) -> None:
        self.model = model or settings.chat_model
        self.max_tokens = max_tokens or settings.chat_max_tokens
        self._client = anthropic.AsyncAnthropic(api_key=api_key or settings.anthropic_api_key)

    async def invoke(self, messages: ChatMessages) -> ChatResponse:
        system, turns = _split_system(messages)
        kwargs = {"system": system} if system else {}
        message = await self._client.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            messages=turns,
            **kwargs,
        )
        text = "".join(block.text for block in message.content if block.type == "text")
        logger.debug(
            "claude.invoke",
            model=self.model,
            input_tokens=message.usage.input_tokens,
            output_tokens=message.usage.output_tokens,
        )
        return ChatResponse(content=text.strip())

    async def stream(self, messages: ChatMessages) -> AsyncIterator[str]:
        system, turns = _split_system(messages)
        kwargs = {"system": system} if system else {}
        async with self._client.messages.stream(
            model=self.model,
            max_tokens=self.max_tokens,
            messages=turns,
            **kwargs,
        ) as stream:
            async for text in stream.text_stream:
                yield text
