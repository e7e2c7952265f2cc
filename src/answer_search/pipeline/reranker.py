"""Stage R: multi-signal relevance scoring of retrieved documents."""

from __future__ import annotations

import asyncio
import re
from collections import Counter
from dataclasses import dataclass
from datetime import date
from typing import Optional, Sequence

import numpy as np
import structlog

from answer_search.models import Document, RerankedDocument, RerankingConfig
from answer_search.services.protocols import Embeddings
from answer_search.utils.text import count_word_matches, query_terms
from answer_search.utils.url_utils import extract_domain

logger = structlog.get_logger(__name__)

_SEMANTIC_FALLBACK = 0.5
_EMBED_CHARS = 2000

_FRESH_TERMS = ("latest", "recent", "new", "updated", "current", "today", "now")
_TECHNICAL_TERMS = ("how", "what", "why", "explain", "guide", "tutorial")
_SENTENCE_SPLIT = re.compile(r"[.!?]+")


@dataclass
class _Signals:
    semantic: float
    keyword: float
    quality: float
    freshness: float
    diversity_penalty: float
    score: float = 0.0


@dataclass
class _Weights:
    semantic: float
    keyword: float
    quality: float
    freshness: float
    diversity: float


def cosine_similarity(vec1: np.ndarray, vec2: np.ndarray) -> float:
    """Cosine similarity of two vectors; 0.0 when either has zero norm."""
    norm1 = np.linalg.norm(vec1)
    norm2 = np.linalg.norm(vec2)
    if norm1 == 0 or norm2 == 0:
        return 0.0
    return float(np.dot(vec1, vec2) / (norm1 * norm2))


# ---------------------------------------------------------------------------
# Individual signals
# ---------------------------------------------------------------------------


def keyword_score(query: str, title: str, content: str) -> float:
    """Whole-word and partial term overlap, scaled by query-term coverage. Range [0, 1]."""
    terms = query_terms(query)
    if not terms:
        return 0.0

    title_lower = title.lower()
    content_lower = content.lower()
    score = 0.0
    matched = 0

    for term in terms:
        title_hits = count_word_matches(term, title_lower)
        content_hits = count_word_matches(term, content_lower)
        if title_hits or content_hits:
            matched += 1
        score += title_hits * 0.4 + min(content_hits, 5) * 0.1

        if len(term) > 4:
            if term in content_lower:
                score += 0.05
            if term in title_lower:
                score += 0.2

    coverage = matched / len(terms)
    return min(score * (0.5 + coverage), 1.0)


def quality_score(title: str, content: str) -> float:
    """Length, sentence structure, lexical diversity and title heuristics. Range [0, 1]."""
    score = 0.0
    length = len(content)

    if 100 <= length <= 10000:
        score += min(0.4, length / 2500)

    sentences = [s for s in _SENTENCE_SPLIT.split(content) if len(s.strip()) > 15]
    if len(sentences) > 2:
        avg_length = length / len(sentences)
        if 20 <= avg_length <= 200:
            score += 0.3

    words = content.lower().split()
    if words:
        diversity = len(set(words)) / len(words)
        if 0.3 <= diversity <= 0.9:
            score += 0.2

    if 10 <= len(title) <= 200:
        score += 0.1

    return min(score, 1.0)


def freshness_score(title: str, content: str, today: Optional[date] = None) -> float:
    """Base 0.3 plus recent-year mentions and fresh vocabulary. Range [0, 1]."""
    year = (today or date.today()).year
    text = f"{title} {content}".lower()
    score = 0.3

    if str(year) in text:
        score += 0.4
    elif str(year - 1) in text:
        score += 0.2
    elif str(year - 2) in text:
        score += 0.1

    score += 0.05 * sum(1 for term in _FRESH_TERMS if count_word_matches(term, text))
    return min(score, 1.0)


def diversity_penalties(documents: Sequence[Document]) -> list[float]:
    """Penalty per document for sharing its domain with other candidates."""
    domains = [extract_domain(str(doc.metadata.get("url", ""))) for doc in documents]
    counts = Counter(domains)
    penalties: list[float] = []
    for domain in domains:
        if counts[domain] > 3:
            penalties.append(0.1)
        elif counts[domain] > 1:
            penalties.append(0.05)
        else:
            penalties.append(0.0)
    return penalties


# ---------------------------------------------------------------------------
# Reranker
# ---------------------------------------------------------------------------


class NeuralReranker:
    """Scores, orders and filters documents for a query.

    Args:
        config: Signal weights, the minimum relevance threshold and whether
            weights adapt to the query shape.
    """

    def __init__(self, config: RerankingConfig) -> None:
        self.config = config

    async def rerank_documents(
        self,
        query: str,
        documents: Sequence[Document],
        embeddings: Optional[Embeddings],
    ) -> list[RerankedDocument]:
        """Return the documents worth keeping, most relevant first.

        Args:
            query:      User query.
            documents:  Candidates from Stage S.
            embeddings: Embedding provider; ``None`` or a failing provider
                yields a uniform semantic score.

        Returns:
            :class:`RerankedDocument` list with every score in [0, 1]. Empty if
            *documents* is empty or no candidate carries any signal.
        """
        if not documents:
            return []

        semantic = await self._semantic_scores(query, documents, embeddings)
        penalties = diversity_penalties(documents)
        weights = self._weights(query)

        signals: list[_Signals] = []
        for doc, sem, penalty in zip(documents, semantic, penalties):
            title = str(doc.metadata.get("title", ""))
            sig = _Signals(
                semantic=sem,
                keyword=keyword_score(query, title, doc.page_content),
                quality=quality_score(title, doc.page_content),
                freshness=freshness_score(title, doc.page_content),
                diversity_penalty=penalty,
            )
            raw = (
                sig.semantic * weights.semantic
                + sig.keyword * weights.keyword
                + sig.quality * weights.quality
                + sig.freshness * weights.freshness
                - sig.diversity_penalty * weights.diversity
            )
            sig.score = min(1.0, max(0.0, raw))
            signals.append(sig)

        order = sorted(range(len(documents)), key=lambda i: signals[i].score, reverse=True)

        mean = sum(s.score for s in signals) / len(signals)
        threshold = min(self.config.min_relevance_threshold, mean * 0.5)

        ranked: list[RerankedDocument] = []
        for rank, idx in enumerate(order, start=1):
            sig = signals[idx]
            # A zero score carries no signal at all; never admit it.
            if sig.score <= 0.0 or sig.score < threshold:
                continue
            doc = documents[idx]
            ranked.append(
                RerankedDocument(
                    page_content=doc.page_content,
                    metadata={
                        **doc.metadata,
                        "relevance_score": sig.score,
                        "semantic_score": sig.semantic,
                        "keyword_score": sig.keyword,
                        "quality_score": sig.quality,
                        "freshness_score": sig.freshness,
                        "diversity_penalty": sig.diversity_penalty,
                        "rank": rank,
                        "total_candidates": len(documents),
                        "selection_method": "pure-relevance",
                    },
                    relevance_score=sig.score,
                    original_rank=idx,
                )
            )

        logger.info(
            "rerank.done",
            candidates=len(documents),
            kept=len(ranked),
            threshold=round(threshold, 4),
        )
        return ranked

    async def _semantic_scores(
        self,
        query: str,
        documents: Sequence[Document],
        embeddings: Optional[Embeddings],
    ) -> list[float]:
        uniform = [_SEMANTIC_FALLBACK] * len(documents)
        if embeddings is None:
            return uniform

        texts = [
            f"{doc.metadata.get('title', '')}\n{doc.page_content[:_EMBED_CHARS]}"
            for doc in documents
        ]
        try:
            vectors = await asyncio.gather(
                embeddings.embed_query(query),
                *(embeddings.embed_query(text) for text in texts),
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("rerank.embedding_failed", error=str(exc))
            return uniform

        query_vec = np.asarray(vectors[0], dtype=float)
        return [cosine_similarity(query_vec, np.asarray(v, dtype=float)) for v in vectors[1:]]

    def _weights(self, query: str) -> _Weights:
        cfg = self.config
        weights = _Weights(
            semantic=cfg.semantic_weight,
            keyword=cfg.keyword_weight,
            quality=cfg.quality_weight,
            freshness=cfg.freshness_weight,
            diversity=cfg.diversity_weight,
        )
        if not cfg.adaptive_scoring:
            return weights

        lowered = query.lower()
        word_count = len(lowered.split())
        if word_count <= 3:
            weights.keyword += 0.1
            weights.semantic -= 0.05
        elif word_count > 6:
            weights.semantic += 0.1
            weights.keyword -= 0.05

        year = date.today().year
        time_terms = ("latest", "recent", "new", "current", str(year), str(year - 1))
        if any(count_word_matches(term, lowered) for term in time_terms):
            weights.freshness += 0.1
            weights.quality -= 0.05

        if any(count_word_matches(term, lowered) for term in _TECHNICAL_TERMS):
            weights.quality += 0.1
            weights.diversity -= 0.02

        weights.semantic = max(0.1, weights.semantic)
        weights.keyword = max(0.1, weights.keyword)
        weights.quality = max(0.0, weights.quality)
        weights.freshness = max(0.0, weights.freshness)
        weights.diversity = max(0.0, weights.diversity)
        return weights
