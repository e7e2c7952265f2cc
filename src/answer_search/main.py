"""FastAPI application entry point with lifespan management."""

from __future__ import annotations

import asyncio
import time
from contextlib import AsyncExitStack, asynccontextmanager
from typing import AsyncIterator

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse

from answer_search.config import settings
from answer_search.models import HealthResponse, SearchRequest, SearchResult, StatsResponse
from answer_search.pipeline.fusion import FusionCache
from answer_search.pipeline.handlers import SearchModeHandler, get_handler
from answer_search.pipeline.streaming import SearchStreamController, iter_sse
from answer_search.services.claude import AnthropicChatModel
from answer_search.services.documents import WebDocumentRetriever
from answer_search.services.embeddings import SentenceTransformerEmbeddings
from answer_search.services.media_search import SearXNGMediaSearch
from answer_search.services.redis_client import RedisClient
from answer_search.services.searxng import SearXNGClient
from answer_search.utils.logging import bind_search_context, configure_logging

logger = structlog.get_logger(__name__)

_startup_time: float = 0.0


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open shared clients at startup and close them on shutdown."""
    global _startup_time
    configure_logging(settings.environment, settings.log_level)
    log = structlog.get_logger(__name__)
    log.info("answer_search.startup", environment=settings.environment, port=settings.port)

    async with AsyncExitStack() as stack:
        app.state.searxng = await stack.enter_async_context(SearXNGClient(settings.searxng_url))
        app.state.media_search = SearXNGMediaSearch(app.state.searxng)
        app.state.documents = WebDocumentRetriever()
        app.state.llm = AnthropicChatModel()
        app.state.fusion_cache = FusionCache()

        # Without local embeddings the reranker falls back to a uniform
        # semantic score.
        app.state.embeddings = None
        if settings.enable_local_embeddings:
            embeddings = SentenceTransformerEmbeddings()
            try:
                await asyncio.to_thread(embeddings.load)
                app.state.embeddings = embeddings
            except Exception as exc:  # noqa: BLE001
                log.warning("embeddings.load_failed", error=str(exc))
        else:
            log.info("embeddings.disabled")

        app.state.redis = RedisClient(settings.redis_url)
        await app.state.redis.connect()
        stack.push_async_callback(app.state.redis.disconnect)

        _startup_time = time.time()
        log.info("answer_search.ready")
        yield
        log.info("answer_search.shutdown")


app = FastAPI(
    title="Answer Search",
    description="Multi-mode web search answering: intent, retrieval, reranking, fusion, synthesis.",
    version="0.1.0",
    lifespan=lifespan,
)


def _handler(mode: str) -> SearchModeHandler:
    try:
        return get_handler(
            mode,
            search_backend=app.state.searxng,
            document_retriever=app.state.documents,
            media_search=app.state.media_search,
            fusion_cache=app.state.fusion_cache,
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


async def _record(result: SearchResult) -> None:
    await app.state.redis.record_search(
        strategy=result.search_intent.strategy,
        mode=result.mode,
        latency_ms=result.execution_time,
        success=result.success,
    )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@app.post("/search", response_model=SearchResult, summary="Answer a query from web search")
async def search(body: SearchRequest):  # noqa: ANN201
    """Run the Q-S-R-E-D pipeline. With ``stream=true`` responds with SSE events."""
    query = body.query.strip()
    if not query:
        raise HTTPException(status_code=400, detail="Query cannot be blank.")

    handler = _handler(body.mode or settings.default_mode)
    bind_search_context(mode=handler.mode, stream=body.stream)
    kwargs = {
        "query": query,
        "history": body.history,
        "llm": app.state.llm,
        "embeddings": app.state.embeddings,
        "file_ids": body.file_ids,
        "system_instructions": body.system_instructions,
    }

    if not body.stream:
        result = await handler.plan_and_execute(**kwargs)
        await _record(result)
        return result

    controller = SearchStreamController()

    async def run() -> None:
        try:
            result = await handler.plan_and_execute(**kwargs, stream_controller=controller)
            await _record(result)
        except Exception as exc:  # noqa: BLE001
            logger.error("search.stream_failed", error=str(exc))
            controller.error(str(exc) or exc.__class__.__name__)
        finally:
            controller.close()

    task = asyncio.create_task(run())

    async def events() -> AsyncIterator[str]:
        try:
            async for frame in iter_sse(controller):
                yield frame
        finally:
            if not task.done():
                task.cancel()

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.get("/health", response_model=HealthResponse, summary="Service health check")
async def health() -> HealthResponse:
    """Check liveness of Redis and SearXNG, and whether embeddings are loaded."""
    uptime = time.time() - _startup_time if _startup_time else 0.0

    redis_status = "connected"
    try:
        await app.state.redis.ping()
    except Exception:  # noqa: BLE001
        redis_status = "unavailable"

    searxng_status = "reachable"
    try:
        await app.state.searxng.ping()
    except Exception:  # noqa: BLE001
        searxng_status = "unreachable"

    embeddings_status = "loaded" if app.state.embeddings is not None else "disabled"
    overall = (
        "ok"
        if redis_status == "connected" and searxng_status == "reachable"
        else "degraded"
    )
    return HealthResponse(
        status=overall,
        redis=redis_status,
        searxng=searxng_status,
        embeddings=embeddings_status,
        uptime_seconds=round(uptime, 1),
    )


@app.get("/stats", response_model=StatsResponse, summary="Aggregated query statistics")
async def stats() -> StatsResponse:
    """Return cumulative query statistics from Redis counters."""
    try:
        data = await app.state.redis.get_stats()
    except Exception as exc:  # noqa: BLE001
        logger.warning("stats.redis_error", error=str(exc))
        raise HTTPException(status_code=503, detail="Stats unavailable: Redis error.") from exc

    queries_total: int = data.get("queries_total", 0)
    total_latency_ms: float = data.get("total_latency_ms", 0.0)
    return StatsResponse(
        queries_total=queries_total,
        errors_total=data.get("errors_total", 0),
        avg_latency_ms=round(total_latency_ms / queries_total, 1) if queries_total else 0.0,
        queries_by_strategy=data.get("queries_by_strategy", {}),
        queries_by_mode=data.get("queries_by_mode", {}),
    )


# ---------------------------------------------------------------------------
# Generic error handler
# ---------------------------------------------------------------------------


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all error handler that logs and returns a structured response."""
    logger.error("unhandled_exception", path=str(request.url), error=str(exc))
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error.", "error": str(exc)},
    )


def run() -> None:
    """Console-script entry point."""
    import uvicorn

    uvicorn.run("answer_search.main:app", host="0.0.0.0", port=settings.port)
