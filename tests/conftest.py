"""Shared pytest fixtures and configuration."""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional, Sequence, Union
from unittest.mock import AsyncMock

import pytest

from answer_search.models import (
    ChatResponse,
    Document,
    ImageResult,
    SearchBackendResponse,
    SearchIntent,
    VideoResult,
    WebResult,
)

# ---------------------------------------------------------------------------
# Pytest configuration
# ---------------------------------------------------------------------------

pytest_plugins = ("pytest_asyncio",)


# ---------------------------------------------------------------------------
# Fake collaborators
# ---------------------------------------------------------------------------

Reply = Union[str, Exception, Callable[[Sequence[dict[str, str]]], str]]

LONG_TEXT = (
    "Solar panels convert sunlight into electricity using photovoltaic cells. "
    "Modern residential panels reach efficiencies between eighteen and twenty three percent. "
    "Efficiency depends on cell material, temperature and the angle of installation. "
    "Monocrystalline cells are usually more efficient than polycrystalline cells. "
    "Regular cleaning keeps dust from reducing the energy output over time. "
)


class FakeChatModel:
    """Chat model double; *reply* is a fixed string, an exception or a callable."""

    def __init__(self, reply: Reply = "Synthesized answer.") -> None:
        self.reply = reply
        self.calls: list[list[dict[str, str]]] = []

    async def invoke(self, messages: Sequence[dict[str, str]]) -> ChatResponse:
        self.calls.append(list(messages))
        if isinstance(self.reply, Exception):
            raise self.reply
        if callable(self.reply):
            return ChatResponse(content=self.reply(messages))
        return ChatResponse(content=self.reply)


class FakeEmbeddings:
    """Returns ``vector_for(text)``; a constant vector by default."""

    def __init__(self, vector_for: Optional[Callable[[str], list[float]]] = None) -> None:
        self.vector_for = vector_for or (lambda text: [1.0, 1.0])

    async def embed_query(self, text: str) -> list[float]:
        return self.vector_for(text)


class FakeSearchBackend:
    def __init__(
        self,
        results: Optional[dict[str, list[WebResult]]] = None,
        default: Optional[list[WebResult]] = None,
        fail: bool = False,
    ) -> None:
        self.results = results or {}
        self.default = default or []
        self.fail = fail
        self.queries: list[str] = []

    async def search(self, query: str, *, max_results: int) -> SearchBackendResponse:
        self.queries.append(query)
        if self.fail:
            raise ConnectionError("search backend unavailable")
        hits = self.results.get(query, self.default)
        return SearchBackendResponse(results=hits[:max_results])


class FakeRetriever:
    """Builds one document per link from *content*; raises when *fail* is set."""

    def __init__(self, content: Optional[dict[str, str]] = None, fail: bool = False) -> None:
        self.content = content
        self.fail = fail
        self.links: list[str] = []

    async def get_documents_from_links(self, links: Sequence[str]) -> list[Document]:
        self.links = list(links)
        if self.fail:
            raise TimeoutError("fetch timed out")
        docs = []
        for i, url in enumerate(links):
            text = (self.content or {}).get(url, f"Page {i}. {LONG_TEXT}")
            docs.append(Document(page_content=text, metadata={"url": url, "title": f"Page {i} about solar"}))
        return docs


class FakeMediaSearch:
    def __init__(
        self,
        images: Optional[list[ImageResult]] = None,
        videos: Optional[list[VideoResult]] = None,
    ) -> None:
        self.images = images or []
        self.videos = videos or []
        self.image_calls = 0
        self.video_calls = 0

    async def search_images(self, query: str, chat_history: Any, llm: Any) -> list[ImageResult]:  # noqa: ANN401
        self.image_calls += 1
        await asyncio.sleep(0)
        return self.images

    async def search_videos(self, query: str, chat_history: Any, llm: Any) -> list[VideoResult]:  # noqa: ANN401
        self.video_calls += 1
        await asyncio.sleep(0)
        return self.videos


# ---------------------------------------------------------------------------
# Model fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def intent_factory() -> Callable[..., SearchIntent]:
    """Build a SearchIntent from keyword overrides on a plain quickAnswer intent."""

    def build(
        strategy: str = "quickAnswer",
        complexity: str = "simple",
        temporal: str = "timeless",
        preferences: Optional[dict[str, Any]] = None,
        recommendations: Optional[dict[str, Any]] = None,
    ) -> SearchIntent:
        return SearchIntent.model_validate(
            {
                "strategy": strategy,
                "complexity": complexity,
                "temporal": temporal,
                "content_preferences": preferences or {},
                "recommendations": recommendations or {},
            }
        )

    return build


@pytest.fixture
def web_results() -> list[WebResult]:
    return [
        WebResult(url="https://energy.gov/solar", title="Solar Energy Basics", content="How solar panels work."),
        WebResult(url="https://nrel.gov/pv", title="PV Research", content="Photovoltaic efficiency records."),
        WebResult(url="https://example.com/panels", title="Choosing Panels", content="Buying guide for panels."),
    ]


@pytest.fixture
def sample_documents() -> list[Document]:
    return [
        Document(
            page_content=f"Document {i}. {LONG_TEXT}",
            metadata={"url": f"https://site{i}.example.org/solar", "title": f"Solar guide number {i}"},
        )
        for i in range(3)
    ]


@pytest.fixture
def chat_model() -> FakeChatModel:
    return FakeChatModel()


@pytest.fixture
def embeddings() -> FakeEmbeddings:
    return FakeEmbeddings()


# ---------------------------------------------------------------------------
# Mock service fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_redis() -> AsyncMock:
    """Mock Redis client that doesn't require a real Redis instance."""
    mock = AsyncMock()
    mock.ping.return_value = True
    mock.record_search.return_value = None
    mock.get_stats.return_value = {
        "queries_total": 10,
        "errors_total": 1,
        "total_latency_ms": 8200.0,
        "queries_by_strategy": {"research": 7, "quickAnswer": 3},
        "queries_by_mode": {"quick": 6, "pro": 4},
    }
    return mock
