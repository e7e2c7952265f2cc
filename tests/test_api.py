"""Tests for the HTTP API, with shared clients replaced by fakes."""

from __future__ import annotations

import json
from typing import Iterator
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from answer_search.main import app
from answer_search.models import WebResult
from answer_search.pipeline.fusion import FusionCache
from answer_search.pipeline.handlers import SearchModeHandler
from conftest import FakeChatModel, FakeEmbeddings, FakeMediaSearch, FakeRetriever, FakeSearchBackend


@pytest.fixture
def client(web_results: list[WebResult], mock_redis: AsyncMock) -> Iterator[TestClient]:
    """TestClient without lifespan startup; app.state holds fakes."""
    app.state.searxng = FakeSearchBackend(default=web_results)
    app.state.documents = FakeRetriever()
    app.state.media_search = FakeMediaSearch()
    app.state.llm = FakeChatModel()
    app.state.embeddings = FakeEmbeddings()
    app.state.fusion_cache = FusionCache()
    app.state.redis = mock_redis
    yield TestClient(app)


class TestSearchEndpoint:
    def test_json_response(self, client: TestClient, mock_redis: AsyncMock) -> None:
        resp = client.post("/search", json={"query": "solar panel efficiency", "mode": "quick"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["message"] == "Synthesized answer."
        assert body["mode"] == "quick"
        assert len(body["pipeline_stages"]) == 5
        mock_redis.record_search.assert_awaited_once()

    def test_mode_alias(self, client: TestClient) -> None:
        resp = client.post("/search", json={"query": "solar panel efficiency", "mode": "ultraSearch"})
        assert resp.status_code == 200
        assert resp.json()["mode"] == "ultra"

    def test_unknown_mode_rejected(self, client: TestClient) -> None:
        resp = client.post("/search", json={"query": "solar", "mode": "turbo"})
        assert resp.status_code == 422

    def test_blank_query_rejected(self, client: TestClient) -> None:
        resp = client.post("/search", json={"query": "   "})
        assert resp.status_code == 400

    def test_empty_query_fails_validation(self, client: TestClient) -> None:
        resp = client.post("/search", json={"query": ""})
        assert resp.status_code == 422

    def test_streaming_response(self, client: TestClient) -> None:
        resp = client.post("/search", json={"query": "solar panel efficiency", "stream": True})
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")

        events = [
            json.loads(line[len("data: ") :])
            for line in resp.text.splitlines()
            if line.startswith("data: ")
        ]
        types = [e["type"] for e in events]
        assert types[0] == "pipeline_progress"
        assert "sources_ready" in types
        assert "response_complete" in types
        assert types[-1] == "search_complete"

    def test_streaming_closes_on_unexpected_error(
        self, client: TestClient, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        async def explode(self: SearchModeHandler, **kwargs: object) -> None:
            raise RuntimeError("handler crashed")

        monkeypatch.setattr(SearchModeHandler, "plan_and_execute", explode)
        resp = client.post("/search", json={"query": "solar panel efficiency", "stream": True})
        assert resp.status_code == 200

        events = [
            json.loads(line[len("data: ") :])
            for line in resp.text.splitlines()
            if line.startswith("data: ")
        ]
        assert events[-1]["type"] == "search_error"
        assert events[-1]["data"]["error"] == "handler crashed"


class TestHealthAndStats:
    def test_health_ok(self, client: TestClient) -> None:
        app.state.searxng = AsyncMock()
        resp = client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        assert body["embeddings"] == "loaded"

    def test_health_degraded(self, client: TestClient, mock_redis: AsyncMock) -> None:
        app.state.searxng = AsyncMock()
        mock_redis.ping.side_effect = ConnectionError("redis down")
        app.state.embeddings = None
        body = client.get("/health").json()
        assert body["status"] == "degraded"
        assert body["redis"] == "unavailable"
        assert body["embeddings"] == "disabled"

    def test_stats(self, client: TestClient) -> None:
        body = client.get("/stats").json()
        assert body["queries_total"] == 10
        assert body["avg_latency_ms"] == 820.0
        assert body["queries_by_mode"] == {"quick": 6, "pro": 4}

    def test_stats_unavailable(self, client: TestClient, mock_redis: AsyncMock) -> None:
        mock_redis.get_stats.side_effect = ConnectionError("redis down")
        assert client.get("/stats").status_code == 503
