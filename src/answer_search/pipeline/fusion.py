"""Stage E: turn ranked documents into a small set of (optionally enhanced) context chunks."""

from __future__ import annotations

import asyncio
import hashlib
import json
import re
import time
from typing import Callable, Optional, Sequence

import structlog

from answer_search.models import ContextChunk, Document, FusionConfig
from answer_search.services.protocols import ChatModel
from answer_search.utils.text import dedup_key
from answer_search.utils.url_utils import extract_domain

logger = structlog.get_logger(__name__)

ProgressCallback = Callable[[float, str], None]

CHUNK_SEPARATOR = "---CHUNK_SEPARATOR---"
_MIN_CHUNK_CHARS = 100
_MAX_PARALLEL_BATCHES = 2
_CHUNK_PREFIX = re.compile(r"^\s*Chunk\s+\d+\s*:\s*", re.IGNORECASE)

_ENHANCE_PROMPT = """You are preparing source passages for answering the query: "{query}"

Rewrite each chunk below so it is clear, self-contained and focused on that query.
Keep every fact, number and name. Do not add information that is not in the chunk.
Return the rewritten chunks in the same order, separated by a line containing only
{separator}

{chunks}"""


def make_cache_key(query: str, documents: Sequence[Document], config: FusionConfig) -> str:
    """Return a stable SHA-256 key for (query, document set, fusion config)."""
    urls = [str(doc.metadata.get("url", "")) for doc in documents]
    raw = json.dumps(
        [query, len(documents), urls, config.model_dump()], sort_keys=True
    )
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class FusionCache:
    """Chunk and grouping memo shared by fusion engines.

    Entries are written once and handed out as deep copies, so callers may
    mutate what they receive without affecting later hits. There is no
    eviction.
    """

    def __init__(self) -> None:
        self._chunks: dict[str, tuple[ContextChunk, ...]] = {}
        self._groups: dict[str, tuple[int, ...]] = {}

    def get_chunks(self, key: str) -> Optional[list[ContextChunk]]:
        cached = self._chunks.get(key)
        if cached is None:
            return None
        return [chunk.model_copy(deep=True) for chunk in cached]

    def put_chunks(self, key: str, chunks: Sequence[ContextChunk]) -> None:
        self._chunks[key] = tuple(chunk.model_copy(deep=True) for chunk in chunks)

    def get_groups(self, key: str) -> Optional[tuple[int, ...]]:
        return self._groups.get(key)

    def put_groups(self, key: str, indices: Sequence[int]) -> None:
        self._groups[key] = tuple(indices)

    def clear(self) -> None:
        self._chunks.clear()
        self._groups.clear()

    def __len__(self) -> int:
        return len(self._chunks)


def _relevance(doc: Document) -> float:
    score = getattr(doc, "relevance_score", None)
    if score is None:
        score = doc.metadata.get("relevance_score", 0.0)
    try:
        return float(score)
    except (TypeError, ValueError):
        return 0.0


class ContextualFusion:
    """Groups, chunks, deduplicates and enhances documents into context.

    Args:
        config: Chunking and enhancement settings.
        cache:  Shared :class:`FusionCache`; a private one is created if omitted.
    """

    def __init__(self, config: FusionConfig, cache: Optional[FusionCache] = None) -> None:
        self.config = config
        self.cache = cache if cache is not None else FusionCache()

    async def create_context_chunks(
        self,
        query: str,
        documents: Sequence[Document],
        llm: ChatModel,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> list[ContextChunk]:
        """Build at most ``config.max_chunks`` context chunks for *query*.

        Never raises because of enhancement failures; affected chunks are
        returned with their original content.

        Args:
            query:             User query.
            documents:         Ranked documents, most relevant first.
            llm:               Chat model used for enhancement.
            progress_callback: Receives ``(progress 0-100, label)``.

        Returns:
            Ordered list of :class:`ContextChunk`.
        """

        def report(progress: float, label: str) -> None:
            if progress_callback is not None:
                progress_callback(progress, label)

        if not documents:
            report(100, "No documents to fuse")
            return []

        cfg = self.config
        key = make_cache_key(query, documents, cfg)
        report(10, "Checking fusion cache")
        cached = self.cache.get_chunks(key)
        if cached is not None:
            logger.debug("fusion.cache_hit", chunks=len(cached))
            report(100, "Loaded cached context")
            return cached

        top_docs = list(documents[: cfg.max_chunks * 3])
        report(20, "Selected top documents")

        if cfg.semantic_grouping and len(top_docs) > 5:
            top_docs = self._group_documents(top_docs)
        report(40, "Grouped related documents")

        chunks = self._chunk_documents(top_docs)
        report(60, "Split documents into chunks")

        if cfg.deduplication:
            chunks = self._deduplicate(chunks)
        report(70, "Removed duplicate chunks")

        chunks = chunks[: cfg.max_chunks]
        report(80, "Selected final chunks")

        if not cfg.skip_enhancement and chunks:
            chunks = await self._enhance(query, chunks, llm, report)

        if any("enhancement_error" in c.metadata for c in chunks):
            logger.info("fusion.cache_skipped", reason="enhancement_failed")
        else:
            self.cache.put_chunks(key, chunks)
        report(100, "Context ready")
        logger.info(
            "fusion.done",
            documents=len(documents),
            chunks=len(chunks),
            enhanced=not cfg.skip_enhancement,
        )
        return chunks

    # ------------------------------------------------------------------
    # Grouping, chunking, dedup
    # ------------------------------------------------------------------

    def _group_documents(self, documents: list[Document]) -> list[Document]:
        """Keep the best document per (domain, first three title words) group."""
        group_key = hashlib.sha256(
            "\n".join(str(d.metadata.get("url", "")) for d in documents).encode("utf-8")
        ).hexdigest()
        cached = self.cache.get_groups(group_key)
        if cached is not None:
            return [documents[i] for i in cached]

        best: dict[str, int] = {}
        for idx, doc in enumerate(documents):
            title_words = str(doc.metadata.get("title", "")).lower().split()[:3]
            key = f"{extract_domain(str(doc.metadata.get('url', '')))}-{' '.join(title_words)}"
            current = best.get(key)
            if current is None or _relevance(doc) > _relevance(documents[current]):
                best[key] = idx

        indices = sorted(best.values(), key=lambda i: _relevance(documents[i]), reverse=True)
        self.cache.put_groups(group_key, indices)
        logger.debug("fusion.grouped", before=len(documents), after=len(indices))
        return [documents[i] for i in indices]

    def _chunk_documents(self, documents: list[Document]) -> list[ContextChunk]:
        cfg = self.config
        step = max(1, cfg.max_chunk_size - cfg.overlap_size)
        limit = cfg.max_chunks * 2
        chunks: list[ContextChunk] = []

        for doc_index, doc in enumerate(documents):
            content = doc.page_content
            if len(content) < _MIN_CHUNK_CHARS:
                continue
            words = content.split()
            source = str(doc.metadata.get("url") or f"doc_{doc_index}")

            for chunk_index, start in enumerate(range(0, len(words), step)):
                text = " ".join(words[start : start + cfg.max_chunk_size])
                if len(text) >= _MIN_CHUNK_CHARS:
                    chunks.append(
                        ContextChunk(
                            id=f"chunk_{len(chunks)}",
                            content=text,
                            sources=[source],
                            relevance_score=_relevance(doc),
                            metadata={
                                **doc.metadata,
                                "document_index": doc_index,
                                "chunk_index": chunk_index,
                                "word_count": len(text.split()),
                                "char_count": len(text),
                            },
                        )
                    )
                if len(chunks) >= limit or start + cfg.max_chunk_size >= len(words):
                    break
            if len(chunks) >= limit:
                break

        return chunks

    @staticmethod
    def _deduplicate(chunks: list[ContextChunk]) -> list[ContextChunk]:
        seen: set[str] = set()
        unique: list[ContextChunk] = []
        for chunk in chunks:
            key = dedup_key(chunk.content)
            if key in seen:
                continue
            seen.add(key)
            unique.append(chunk)
        return unique

    # ------------------------------------------------------------------
    # Enhancement
    # ------------------------------------------------------------------

    async def _enhance(
        self,
        query: str,
        chunks: list[ContextChunk],
        llm: ChatModel,
        report: ProgressCallback,
    ) -> list[ContextChunk]:
        size = max(1, self.config.batch_size)
        batches = [chunks[i : i + size] for i in range(0, len(chunks), size)]
        done = 0

        def batch_finished() -> None:
            nonlocal done
            done += 1
            report(80 + 20 * done / len(batches), f"Enhanced batch {done}/{len(batches)}")

        if self.config.enable_parallel_processing:
            semaphore = asyncio.Semaphore(_MAX_PARALLEL_BATCHES)

            async def run(index: int, batch: list[ContextChunk]) -> list[ContextChunk]:
                async with semaphore:
                    result = await self._enhance_batch(query, batch, index, llm)
                batch_finished()
                return result

            results = await asyncio.gather(*(run(i, b) for i, b in enumerate(batches)))
        else:
            results = []
            for index, batch in enumerate(batches):
                results.append(await self._enhance_batch(query, batch, index, llm))
                batch_finished()

        return [chunk for batch in results for chunk in batch]

    async def _enhance_batch(
        self,
        query: str,
        batch: list[ContextChunk],
        batch_index: int,
        llm: ChatModel,
    ) -> list[ContextChunk]:
        t_start = time.perf_counter()
        formatted = "\n".join(
            f"Chunk {i + 1}:\n{chunk.content}\n" for i, chunk in enumerate(batch)
        )
        prompt = _ENHANCE_PROMPT.format(query=query, separator=CHUNK_SEPARATOR, chunks=formatted)

        try:
            response = await llm.invoke([{"role": "user", "content": prompt}])
        except Exception as exc:  # noqa: BLE001
            logger.warning("fusion.enhance_failed", batch=batch_index, error=str(exc))
            return [
                chunk.model_copy(
                    update={
                        "metadata": {
                            **chunk.metadata,
                            "enhanced": False,
                            "batch_index": batch_index,
                            "enhancement_error": str(exc),
                        }
                    }
                )
                for chunk in batch
            ]

        parts = [_CHUNK_PREFIX.sub("", p).strip() for p in response.content.split(CHUNK_SEPARATOR)]
        elapsed_ms = round((time.perf_counter() - t_start) * 1000, 1)

        enhanced: list[ContextChunk] = []
        for i, chunk in enumerate(batch):
            rewritten = parts[i] if i < len(parts) else ""
            enhanced.append(
                chunk.model_copy(
                    update={
                        "content": rewritten or chunk.content,
                        "metadata": {
                            **chunk.metadata,
                            "enhanced": bool(rewritten),
                            "batch_index": batch_index,
                            "enhancement_time": elapsed_ms,
                        },
                    }
                )
            )
        return enhanced

