"""Tests for the streaming event channel."""

from __future__ import annotations

import json

import pytest

from answer_search.models import StreamEvent
from answer_search.pipeline.streaming import (
    PIPELINE_PROGRESS,
    SEARCH_COMPLETE,
    SEARCH_ERROR,
    SOURCES_READY,
    SearchStreamController,
    iter_ndjson,
    iter_sse,
)


async def _drain(controller: SearchStreamController) -> list[StreamEvent]:
    return [event async for event in controller]


class TestSearchStreamController:
    """Event publication and termination."""

    @pytest.mark.asyncio
    async def test_events_arrive_in_order_then_complete(self) -> None:
        stream = SearchStreamController()
        stream.stream_progress("Q", 50, status="running")
        stream.stream_data(SOURCES_READY, {"count": 2})
        stream.complete(1.25, "pro")

        events = await _drain(stream)
        assert [e.type for e in events] == [PIPELINE_PROGRESS, SOURCES_READY, SEARCH_COMPLETE]
        assert events[0].data == {"stage": "Q", "progress": 50, "status": "running"}
        assert events[-1].data == {"execution_time": 1.25, "mode": "pro"}
        assert stream.is_closed

    @pytest.mark.asyncio
    async def test_error_closes_stream(self) -> None:
        stream = SearchStreamController()
        stream.error("boom", stage="R")
        events = await _drain(stream)
        assert len(events) == 1
        assert events[0].type == SEARCH_ERROR
        assert events[0].data == {"error": "boom", "stage": "R"}

    @pytest.mark.asyncio
    async def test_writes_after_close_are_dropped(self) -> None:
        stream = SearchStreamController()
        stream.close()
        stream.stream_response_chunk("late")
        stream.close()
        assert await _drain(stream) == []

    @pytest.mark.asyncio
    async def test_listeners_see_every_event(self) -> None:
        stream = SearchStreamController()
        seen: list[str] = []
        stream.add_listener(lambda event: seen.append(event.type))
        stream.stream_stage_progress("E", "chunking", 40)
        stream.complete(0.1, "quick")
        await _drain(stream)
        assert seen == ["stage_progress", SEARCH_COMPLETE]

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_publishing(self) -> None:
        stream = SearchStreamController()

        def broken(event: StreamEvent) -> None:
            raise RuntimeError("listener bug")

        stream.add_listener(broken)
        stream.stream_response_chunk("hello")
        stream.close()
        events = await _drain(stream)
        assert events[0].data == {"chunk": "hello"}

    def test_event_timestamp_is_iso(self) -> None:
        event = StreamEvent(type="x")
        assert "T" in event.timestamp


class TestTransportAdapters:
    """NDJSON and SSE framing."""

    @pytest.mark.asyncio
    async def test_ndjson(self) -> None:
        stream = SearchStreamController()
        stream.stream_data(SOURCES_READY, {"count": 1})
        stream.close()
        lines = [line async for line in iter_ndjson(stream)]
        assert len(lines) == 1
        assert lines[0].endswith("\n")
        assert json.loads(lines[0])["data"] == {"count": 1}

    @pytest.mark.asyncio
    async def test_sse(self) -> None:
        stream = SearchStreamController()
        stream.complete(2.0, "ultra")
        frames = [frame async for frame in iter_sse(stream)]
        assert frames[0].startswith("data: ")
        assert frames[0].endswith("\n\n")
        assert json.loads(frames[0][len("data: ") :])["type"] == SEARCH_COMPLETE
