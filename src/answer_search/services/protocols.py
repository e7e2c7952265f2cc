"""Capability interfaces consumed by the pipeline.

Any object with matching async methods can be plugged in; the concrete
adapters in this package (Anthropic, SearXNG, sentence-transformers, httpx
page fetching) are defaults, not requirements.
"""

from __future__ import annotations

from typing import AsyncIterator, Protocol, Sequence, runtime_checkable

from answer_search.models import (
    ChatResponse,
    Document,
    ImageResult,
    SearchBackendResponse,
    VideoResult,
)

ChatMessages = Sequence[dict[str, str]]
History = Sequence[tuple[str, str]]


class ChatModel(Protocol):
    async def invoke(self, messages: ChatMessages) -> ChatResponse: ...


@runtime_checkable
class StreamingChatModel(ChatModel, Protocol):
    """A chat model that can also yield its completion piece by piece."""

    def stream(self, messages: ChatMessages) -> AsyncIterator[str]: ...


class Embeddings(Protocol):
    async def embed_query(self, text: str) -> list[float]: ...


class SearchBackend(Protocol):
    async def search(self, query: str, *, max_results: int) -> SearchBackendResponse: ...


class DocumentRetriever(Protocol):
    async def get_documents_from_links(self, links: Sequence[str]) -> list[Document]: ...


class MediaSearchAgent(Protocol):
    async def search_images(
        self, query: str, chat_history: History, llm: ChatModel
    ) -> list[ImageResult]: ...

    async def search_videos(
        self, query: str, chat_history: History, llm: ChatModel
    ) -> list[VideoResult]: ...
