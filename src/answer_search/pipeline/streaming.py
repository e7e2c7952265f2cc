"""Streaming channel for partial results, progress and completion events."""

from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Callable, Optional

import structlog

from answer_search.models import StreamEvent

logger = structlog.get_logger(__name__)

Listener = Callable[[StreamEvent], None]

# Event types published by the orchestrator.
STAGE_COMPLETE = "stage_complete"
SOURCES_READY = "sources_ready"
IMAGES_READY = "images_ready"
VIDEOS_READY = "videos_ready"
RESPONSE_CHUNK = "response_chunk"
RESPONSE_COMPLETE = "response_complete"
SEARCH_COMPLETE = "search_complete"
SEARCH_ERROR = "search_error"
PIPELINE_PROGRESS = "pipeline_progress"
STAGE_PROGRESS = "stage_progress"

_CLOSED = object()


class SearchStreamController:
    """Single-producer, single-consumer event channel for one pipeline run.

    The orchestrator publishes through the ``stream_*`` helpers; one consumer
    drains it with ``async for event in controller``. Iteration ends after
    :meth:`complete`, :meth:`error` or :meth:`close`. Publishing after close is
    a no-op. In-process listeners registered with :meth:`add_listener` are
    called synchronously for every event, in publish order.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False
        self._listeners: list[Listener] = []

    @property
    def is_closed(self) -> bool:
        return self._closed

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def stream_data(self, event_type: str, data: Any = None) -> None:  # noqa: ANN401
        """Publish one event. Dropped silently once the stream is closed."""
        if self._closed:
            logger.debug("stream.write_after_close", type=event_type)
            return
        event = StreamEvent(type=event_type, data=data)
        self._queue.put_nowait(event)
        for listener in self._listeners:
            try:
                listener(event)
            except Exception as exc:  # noqa: BLE001
                logger.warning("stream.listener_failed", type=event_type, error=str(exc))

    def stream_progress(self, stage: str, progress: float, **extra: Any) -> None:
        self.stream_data(PIPELINE_PROGRESS, {"stage": stage, "progress": progress, **extra})

    def stream_stage_progress(self, stage: str, sub_stage: str, progress: float) -> None:
        self.stream_data(
            STAGE_PROGRESS, {"stage": stage, "sub_stage": sub_stage, "progress": progress}
        )

    def stream_response_chunk(self, chunk: str) -> None:
        self.stream_data(RESPONSE_CHUNK, {"chunk": chunk})

    def complete(self, execution_time: float, mode: str) -> None:
        """Publish ``search_complete`` and close the stream."""
        self.stream_data(SEARCH_COMPLETE, {"execution_time": execution_time, "mode": mode})
        self.close()

    def error(self, message: str, stage: Optional[str] = None) -> None:
        """Publish ``search_error`` and close the stream."""
        self.stream_data(SEARCH_ERROR, {"error": message, "stage": stage})
        self.close()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[StreamEvent]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item


# ---------------------------------------------------------------------------
# Transport adapters
# ---------------------------------------------------------------------------


def _event_json(event: StreamEvent) -> str:
    return json.dumps(event.model_dump(mode="json"), ensure_ascii=False)


async def iter_ndjson(controller: SearchStreamController) -> AsyncIterator[str]:
    """Yield each event as one newline-terminated JSON line."""
    async for event in controller:
        yield _event_json(event) + "\n"


async def iter_sse(controller: SearchStreamController) -> AsyncIterator[str]:
    """Yield each event as a Server-Sent Events ``data:`` frame."""
    async for event in controller:
        yield f"data: {_event_json(event)}\n\n"
