"""Search orchestrator: runs the Q-S-R-E-D stages for one query."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Optional, Sequence

import structlog

from answer_search.exceptions import PipelineStateError
from answer_search.models import (
    STAGE_NAMES,
    STAGE_ORDER,
    ContextChunk,
    Document,
    ImageResult,
    OrchestratorConfig,
    PipelineStage,
    RerankedDocument,
    SearchIntent,
    SearchResult,
    StageName,
    StageStatus,
    VideoResult,
)
from answer_search.pipeline import delivery, retrieval
from answer_search.pipeline.fusion import ContextualFusion, FusionCache
from answer_search.pipeline.intent import IntentDetector, fallback_intent
from answer_search.pipeline.reranker import NeuralReranker
from answer_search.pipeline.streaming import (
    IMAGES_READY,
    RESPONSE_COMPLETE,
    SOURCES_READY,
    STAGE_COMPLETE,
    VIDEOS_READY,
    SearchStreamController,
)
from answer_search.services.protocols import (
    ChatModel,
    DocumentRetriever,
    Embeddings,
    History,
    MediaSearchAgent,
    SearchBackend,
    StreamingChatModel,
)

logger = structlog.get_logger(__name__)

_STREAM_PREVIEW = 20
_PAYLOAD_CONTENT_CHARS = 500


def _now_ms() -> float:
    return time.time() * 1000


def _source_payload(doc: Document) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "title": doc.metadata.get("title", ""),
        "url": doc.metadata.get("url", ""),
        "content": doc.page_content[:_PAYLOAD_CONTENT_CHARS],
    }
    if isinstance(doc, RerankedDocument):
        payload["relevance_score"] = doc.relevance_score
        payload["metadata"] = doc.metadata
    return payload


class SearchOrchestrator:
    """Drives one query through Query understanding, Search, Ranking,
    Extraction and Delivery, publishing progress on a stream.

    A fresh orchestrator is built per request; only the optional
    :class:`FusionCache` is meant to be shared.

    Args:
        config:             Immutable per-request configuration.
        stream_controller:  Event channel; a private one is created if omitted.
        search_backend:     Web search backend.
        document_retriever: Page fetcher for search result URLs.
        media_search:       Image/video agents; media stages are skipped if ``None``.
        fusion_cache:       Shared fusion memo.
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        stream_controller: Optional[SearchStreamController] = None,
        *,
        search_backend: SearchBackend,
        document_retriever: DocumentRetriever,
        media_search: Optional[MediaSearchAgent] = None,
        fusion_cache: Optional[FusionCache] = None,
    ) -> None:
        self.config = config
        self.stream = stream_controller if stream_controller is not None else SearchStreamController()
        self.search_backend = search_backend
        self.document_retriever = document_retriever
        self.media_search = media_search
        self.reranker = NeuralReranker(config.reranking_config)
        self.fusion = ContextualFusion(config.fusion_config, fusion_cache)
        self.stages: dict[StageName, PipelineStage] = {
            stage: PipelineStage(stage=stage, name=STAGE_NAMES[stage]) for stage in STAGE_ORDER
        }
        self._log = logger.bind(mode=config.mode)

    # ------------------------------------------------------------------
    # Stage state machine
    # ------------------------------------------------------------------

    @property
    def running_stage(self) -> Optional[StageName]:
        for stage in STAGE_ORDER:
            if self.stages[stage].status == "running":
                return stage
        return None

    def _overall_progress(self) -> float:
        total = sum(
            100.0 if s.status == "completed" else s.progress for s in self.stages.values()
        )
        return round(total / len(self.stages), 1)

    def _update_stage(
        self,
        stage: StageName,
        status: StageStatus,
        progress: Optional[float] = None,
        data: Any = None,  # noqa: ANN401
        error: Optional[str] = None,
    ) -> None:
        """Apply one legal transition to *stage* and publish it.

        Legal transitions: pending -> running (only when every earlier stage
        completed and nothing has failed), running -> running (progress update,
        never decreasing), running -> completed and running -> error.

        Raises:
            PipelineStateError: For any other transition.
        """
        record = self.stages[stage]
        current = record.status
        halted = any(s.status == "error" for s in self.stages.values())

        if status == "running":
            if current == "pending":
                earlier = STAGE_ORDER[: STAGE_ORDER.index(stage)]
                if halted or any(self.stages[s].status != "completed" for s in earlier):
                    raise PipelineStateError(stage, current, status)
                record.start_time = _now_ms()
            elif current != "running":
                raise PipelineStateError(stage, current, status)
        elif status in ("completed", "error"):
            if current != "running":
                raise PipelineStateError(stage, current, status)
            record.end_time = _now_ms()
        else:
            raise PipelineStateError(stage, current, status)

        record.status = status
        if status == "completed":
            record.progress = 100.0
        elif progress is not None:
            record.progress = max(record.progress, min(100.0, float(progress)))
        if data is not None:
            record.data = data
        if error is not None:
            record.error = error

        if current != status:
            self._log.debug("pipeline.stage_transition", stage=stage, status=status)
        self.stream.stream_progress(
            stage,
            record.progress,
            name=record.name,
            status=status,
            overall_progress=self._overall_progress(),
        )
        if status == "completed":
            self.stream.stream_data(
                STAGE_COMPLETE, {"stage": stage, "name": record.name, "data": record.data}
            )

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def execute_search(
        self,
        query: str,
        history: History,
        llm: ChatModel,
        embeddings: Optional[Embeddings],
        file_ids: Sequence[str] = (),
        system_instructions: str = "",
        intent: Optional[SearchIntent] = None,
    ) -> SearchResult:
        """Run the full pipeline for *query*.

        Never raises: unexpected failures produce a ``success=False`` result
        and a ``search_error`` event.

        Args:
            query:               User query.
            history:             Prior ``(role, text)`` turns.
            llm:                 Chat model for intent, enhancement and synthesis.
            embeddings:          Embedding provider for reranking (may be ``None``).
            file_ids:            Uploaded file references; accepted for interface
                compatibility and not searched.
            system_instructions: Caller instructions added to the synthesis prompt.
            intent:              Pre-detected intent; Stage Q skips detection if given.

        Returns:
            :class:`SearchResult` with the answer, sources, media and stage records.
        """
        t_start = time.perf_counter()
        log = self._log.bind(query=query[:80])
        log.info("pipeline.start", file_ids=len(file_ids))

        try:
            # ------------------------------------------------------------ #
            # Q: query understanding                                       #
            # ------------------------------------------------------------ #
            intent, queries = await self._understand(query, llm, intent)

            # ------------------------------------------------------------ #
            # S: search                                                    #
            # ------------------------------------------------------------ #
            documents, images, videos = await self._search(query, history, llm, intent, queries)

            # ------------------------------------------------------------ #
            # R: ranking                                                   #
            # ------------------------------------------------------------ #
            ranked = await self._rank(query, documents, embeddings)

            # ------------------------------------------------------------ #
            # E: extraction                                                #
            # ------------------------------------------------------------ #
            chunks = await self._extract(query, ranked, llm)

            # ------------------------------------------------------------ #
            # D: delivery                                                  #
            # ------------------------------------------------------------ #
            images = delivery.filter_media(
                query, images, self.config.reranking_config.min_relevance_threshold,
                self.config.max_images,
            )
            videos = delivery.filter_media(
                query, videos, self.config.reranking_config.min_relevance_threshold,
                self.config.max_videos,
            )
            message = await self._deliver(
                query, history, llm, intent, ranked, chunks, images, videos, system_instructions
            )
        except Exception as exc:  # noqa: BLE001
            return self._error_result(exc, t_start)

        execution_time = round((time.perf_counter() - t_start) * 1000, 1)
        result = SearchResult(
            message=message,
            sources=ranked[: self.config.max_sources],
            images=images,
            videos=videos,
            search_intent=intent,
            pipeline_stages=self.snapshot_stages(),
            execution_time=execution_time,
            mode=self.config.mode,
            success=True,
        )
        log.info(
            "pipeline.complete",
            strategy=intent.strategy,
            sources=len(result.sources),
            images=len(images),
            videos=len(videos),
            latency_ms=execution_time,
        )
        self.stream.complete(execution_time, self.config.mode)
        return result

    def snapshot_stages(self) -> list[PipelineStage]:
        return [self.stages[s].model_copy(deep=True) for s in STAGE_ORDER]

    def _error_result(self, exc: Exception, t_start: float) -> SearchResult:
        message = str(exc) or exc.__class__.__name__
        stage = self.running_stage
        if stage is not None:
            self._update_stage(stage, "error", error=message)
        execution_time = round((time.perf_counter() - t_start) * 1000, 1)
        self._log.error("pipeline.failed", stage=stage, error=message, latency_ms=execution_time)
        self.stream.error(message, stage)
        return SearchResult(
            message=f"Error: {message}",
            search_intent=fallback_intent(),
            pipeline_stages=self.snapshot_stages(),
            execution_time=execution_time,
            mode=self.config.mode,
            success=False,
            error=message,
        )

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _understand(
        self, query: str, llm: ChatModel, intent: Optional[SearchIntent]
    ) -> tuple[SearchIntent, list[str]]:
        self._update_stage("Q", "running", 10)
        try:
            if intent is None:
                intent = await IntentDetector(llm).detect_intent(query)
            self._update_stage("Q", "running", 60)
            queries = retrieval.generate_search_queries(
                query, intent, intent.recommendations.search_queries
            )
        except Exception as exc:  # noqa: BLE001
            self._log.warning("pipeline.query_understanding_failed", error=str(exc))
            intent, queries = fallback_intent(), [query]

        self._update_stage(
            "Q", "completed", data={"intent": intent.model_dump(), "queries": queries}
        )
        return intent, queries

    async def _search(
        self,
        query: str,
        history: History,
        llm: ChatModel,
        intent: SearchIntent,
        queries: list[str],
    ) -> tuple[list[Document], list[ImageResult], list[VideoResult]]:
        self._update_stage("S", "running", 10)

        async def documents_branch() -> list[Document]:
            docs = await retrieval.retrieve_documents(
                queries,
                self.search_backend,
                self.document_retriever,
                self.config.search_config,
                self.config.timeout_config.search_timeout,
            )
            self.stream.stream_data(
                SOURCES_READY,
                {"sources": [_source_payload(d) for d in docs[:_STREAM_PREVIEW]], "count": len(docs)},
            )
            return docs

        async def images_branch() -> list[ImageResult]:
            if self.media_search is None or not retrieval.should_search_images(intent):
                return []
            images = await self.media_search.search_images(query, history, llm)
            self.stream.stream_data(
                IMAGES_READY,
                {"images": [i.model_dump() for i in images[:_STREAM_PREVIEW]], "count": len(images)},
            )
            return images

        async def videos_branch() -> list[VideoResult]:
            if self.media_search is None or not retrieval.should_search_videos(intent):
                return []
            videos = await self.media_search.search_videos(query, history, llm)
            self.stream.stream_data(
                VIDEOS_READY,
                {"videos": [v.model_dump() for v in videos[:_STREAM_PREVIEW]], "count": len(videos)},
            )
            return videos

        outcomes = await asyncio.gather(
            documents_branch(), images_branch(), videos_branch(), return_exceptions=True
        )
        settled: list[list[Any]] = []
        for branch, outcome in zip(("documents", "images", "videos"), outcomes):
            if isinstance(outcome, BaseException):
                self._log.warning("pipeline.search_branch_failed", branch=branch, error=str(outcome))
                settled.append([])
            else:
                settled.append(outcome)
        documents, images, videos = settled

        self._update_stage(
            "S",
            "completed",
            data={"documents": len(documents), "images": len(images), "videos": len(videos)},
        )
        return documents, images, videos

    async def _rank(
        self, query: str, documents: list[Document], embeddings: Optional[Embeddings]
    ) -> list[RerankedDocument]:
        self._update_stage("R", "running", 10)
        if documents:
            ranked = await self.reranker.rerank_documents(query, documents, embeddings)
        else:
            ranked = []
        capped = ranked[: self.config.max_sources]
        self.stream.stream_data(
            SOURCES_READY, {"sources": [_source_payload(d) for d in capped], "count": len(capped)}
        )
        self._update_stage("R", "completed", data={"candidates": len(documents), "ranked": len(ranked)})
        return ranked

    async def _extract(
        self, query: str, ranked: list[RerankedDocument], llm: ChatModel
    ) -> list[ContextChunk]:
        self._update_stage("E", "running", 10)
        if not ranked:
            self._update_stage("E", "completed", data={"chunks": 0})
            return []

        def on_progress(progress: float, label: str) -> None:
            mapped = round(10 + 0.85 * progress, 1)
            self._update_stage("E", "running", mapped)
            self.stream.stream_stage_progress("E", label, mapped)

        chunks = await self.fusion.create_context_chunks(query, ranked, llm, on_progress)
        self._update_stage("E", "completed", data={"chunks": len(chunks)})
        return chunks

    async def _deliver(
        self,
        query: str,
        history: History,
        llm: ChatModel,
        intent: SearchIntent,
        ranked: list[RerankedDocument],
        chunks: list[ContextChunk],
        images: list[ImageResult],
        videos: list[VideoResult],
        system_instructions: str,
    ) -> str:
        self._update_stage("D", "running", 10)

        if not chunks:
            message = delivery.media_only_response(query, images, videos)
        else:
            selected = delivery.select_context_chunks(chunks)
            context = delivery.build_structured_context(selected, ranked)
            prompt = delivery.build_response_prompt(query, intent, context, system_instructions)
            self._update_stage("D", "running", 30)
            streamed: list[str] = []
            try:
                message = await self._synthesize(
                    llm, delivery.build_messages(prompt, history), streamed
                )
            except Exception as exc:  # noqa: BLE001
                self._log.warning(
                    "pipeline.synthesis_failed", error=str(exc), streamed_pieces=len(streamed)
                )
                fallback = delivery.fallback_answer(query, selected, len(ranked))
                partial = "".join(streamed).strip()
                if partial:
                    # Chunks already sent stay valid; the fallback continues them.
                    tail = f"\n\n{fallback}"
                    self.stream.stream_response_chunk(tail)
                    message = partial + tail
                else:
                    message = fallback

        self.stream.stream_data(RESPONSE_COMPLETE, {"message": message})
        self._update_stage("D", "completed", data={"message_length": len(message)})
        return message

    async def _synthesize(
        self, llm: ChatModel, messages: list[dict[str, str]], pieces: list[str]
    ) -> str:
        """Generate the answer, collecting streamed pieces into *pieces* as they arrive."""
        if self.config.streaming_config.enable_streaming and isinstance(llm, StreamingChatModel):
            async for piece in llm.stream(messages):
                pieces.append(piece)
                self.stream.stream_response_chunk(piece)
            return "".join(pieces).strip()
        response = await llm.invoke(messages)
        return response.content
