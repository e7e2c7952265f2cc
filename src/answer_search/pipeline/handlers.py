"""Mode entry points: quick, pro and ultra search differ only in configuration."""

from __future__ import annotations

from typing import Optional, Sequence

import structlog

from answer_search.models import Mode, SearchResult
from answer_search.pipeline.fusion import FusionCache
from answer_search.pipeline.intent import IntentDetector
from answer_search.pipeline.modes import get_config, resolve_mode
from answer_search.pipeline.orchestrator import SearchOrchestrator
from answer_search.pipeline.streaming import SearchStreamController
from answer_search.services.protocols import (
    ChatModel,
    DocumentRetriever,
    Embeddings,
    History,
    MediaSearchAgent,
    SearchBackend,
)

logger = structlog.get_logger(__name__)


class SearchModeHandler:
    """Plans and executes searches for one mode.

    Holds only long-lived collaborators; every call builds a fresh config and
    orchestrator.

    Args:
        mode:               ``quick``, ``pro`` or ``ultra`` (aliases accepted).
        search_backend:     Web search backend.
        document_retriever: Page fetcher.
        media_search:       Image/video agents, optional.
        fusion_cache:       Fusion memo shared across requests, optional.
    """

    def __init__(
        self,
        mode: str,
        *,
        search_backend: SearchBackend,
        document_retriever: DocumentRetriever,
        media_search: Optional[MediaSearchAgent] = None,
        fusion_cache: Optional[FusionCache] = None,
    ) -> None:
        self.mode: Mode = resolve_mode(mode)
        self.search_backend = search_backend
        self.document_retriever = document_retriever
        self.media_search = media_search
        self.fusion_cache = fusion_cache

    async def plan_and_execute(
        self,
        query: str,
        history: History,
        llm: ChatModel,
        embeddings: Optional[Embeddings],
        file_ids: Sequence[str] = (),
        system_instructions: str = "",
        stream_controller: Optional[SearchStreamController] = None,
    ) -> SearchResult:
        """Detect intent, derive the mode config from it and run the pipeline."""
        intent = await IntentDetector(llm).detect_intent(query)
        config = get_config(self.mode, intent)
        logger.info(
            "handler.planned",
            mode=self.mode,
            strategy=intent.strategy,
            max_queries=config.search_config.max_queries,
            threshold=config.reranking_config.min_relevance_threshold,
        )

        orchestrator = SearchOrchestrator(
            config,
            stream_controller,
            search_backend=self.search_backend,
            document_retriever=self.document_retriever,
            media_search=self.media_search,
            fusion_cache=self.fusion_cache,
        )
        return await orchestrator.execute_search(
            query,
            history,
            llm,
            embeddings,
            file_ids=file_ids,
            system_instructions=system_instructions,
            intent=intent,
        )


def get_handler(
    mode: str,
    *,
    search_backend: SearchBackend,
    document_retriever: DocumentRetriever,
    media_search: Optional[MediaSearchAgent] = None,
    fusion_cache: Optional[FusionCache] = None,
) -> SearchModeHandler:
    """Return the handler for *mode* (``quick``, ``pro``, ``proSearch``, ``ultra``, ``ultraSearch``).

    Raises:
        ValueError: If *mode* is not recognised.
    """
    return SearchModeHandler(
        mode,
        search_backend=search_backend,
        document_retriever=document_retriever,
        media_search=media_search,
        fusion_cache=fusion_cache,
    )
