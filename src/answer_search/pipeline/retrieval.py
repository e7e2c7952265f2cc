"""Stage Q/S helpers: search query planning and document retrieval."""

from __future__ import annotations

import asyncio
from datetime import date
from typing import Optional, Sequence

import structlog

from answer_search.models import Document, SearchConfig, SearchIntent, WebResult
from answer_search.services.protocols import DocumentRetriever, SearchBackend
from answer_search.utils.url_utils import normalize_url

logger = structlog.get_logger(__name__)

_MIN_FETCHED_CHARS = 50
_MIN_SNIPPET_CHARS = 5
_MINIMAL_DOC_LIMIT = 5


def generate_search_queries(query: str, intent: SearchIntent, max_queries: int) -> list[str]:
    """Expand *query* into strategy-specific search queries.

    The original query always comes first; duplicates are removed and the list
    is capped at *max_queries* (minimum one).
    """
    q = query.strip()
    year = date.today().year
    templates: dict[str, list[str]] = {
        "quickAnswer": [f"what is {q}", f"{q} definition explanation"],
        "research": [
            f"{q} research studies",
            f"{q} academic analysis",
            f"{q} comprehensive review",
            f"{q} scholarly articles",
        ],
        "comparison": [
            f"{q} detailed comparison",
            f"{q} pros and cons",
            f"{q} differences advantages",
            f"{q} which is better",
        ],
        "tutorial": [
            f"{q} step by step guide",
            f"{q} tutorial beginner",
            f"how to {q} instructions",
            f"{q} learn complete guide",
        ],
        "news": [
            f"{q} latest news {year}",
            f"{q} recent developments",
            f"{q} breaking news updates",
            f"{q} current events",
        ],
        "reference": [
            f"{q} specifications details",
            f"{q} technical documentation",
            f"{q} official information",
            f"{q} reference manual",
        ],
        "creative": [
            f"{q} creative ideas inspiration",
            f"{q} examples suggestions",
            f"{q} innovative approaches",
            f"{q} brainstorming concepts",
        ],
    }

    queries: list[str] = []
    for candidate in [q, *templates.get(intent.strategy, [])]:
        if candidate and candidate.lower() not in {x.lower() for x in queries}:
            queries.append(candidate)
    return queries[: max(1, max_queries)]


def should_search_images(intent: SearchIntent) -> bool:
    prefs = intent.content_preferences
    return prefs.needs_images or prefs.media_importance != "low"


def should_search_videos(intent: SearchIntent) -> bool:
    prefs = intent.content_preferences
    return prefs.needs_videos or prefs.visual_learning


async def _search_one(
    backend: SearchBackend, query: str, max_results: int, timeout_s: Optional[float]
) -> list[WebResult]:
    try:
        response = await asyncio.wait_for(
            backend.search(query, max_results=max_results), timeout=timeout_s
        )
    except Exception as exc:  # noqa: BLE001
        logger.warning("retrieval.search_failed", query=query[:80], error=repr(exc))
        return []
    return list(response.results)


def _snippet_documents(results: Sequence[tuple[WebResult, str]]) -> list[Document]:
    docs: list[Document] = []
    for hit, from_query in results:
        content = hit.content or hit.title or f"Content from {hit.url}"
        if len(content) <= _MIN_SNIPPET_CHARS:
            continue
        docs.append(
            Document(
                page_content=content,
                metadata={
                    "title": hit.title or "Untitled",
                    "url": hit.url,
                    "source": "search",
                    "snippet": hit.content,
                    "from_query": from_query,
                    "fallback": True,
                },
            )
        )
    return docs


def _minimal_documents(results: Sequence[tuple[WebResult, str]]) -> list[Document]:
    return [
        Document(
            page_content=hit.title or f"Content from {hit.url}",
            metadata={
                "title": hit.title or "Untitled",
                "url": hit.url,
                "source": "search",
                "minimal": True,
            },
        )
        for hit, _ in results[:_MINIMAL_DOC_LIMIT]
    ]


async def retrieve_documents(
    queries: Sequence[str],
    backend: SearchBackend,
    retriever: DocumentRetriever,
    search_config: SearchConfig,
    search_timeout_ms: Optional[int] = None,
) -> list[Document]:
    """Run every query against the backend and fetch the unique result pages.

    Per-query failures are skipped. If page fetching raises or yields nothing
    usable, snippet documents are returned instead, and failing that minimal
    title-only documents for the first few URLs.

    Args:
        queries:           Planned search queries (empty strings are ignored).
        backend:           Web search backend.
        retriever:         Page fetcher.
        search_config:     ``batch_size`` is the per-query result count;
            ``parallel_searches`` selects concurrent or sequential querying.
        search_timeout_ms: Per-call backend timeout.

    Returns:
        Documents in first-seen URL order.
    """
    active = [q for q in queries if q and q.strip()]
    timeout_s = search_timeout_ms / 1000 if search_timeout_ms else None
    max_results = search_config.batch_size

    if search_config.parallel_searches:
        per_query = await asyncio.gather(
            *(_search_one(backend, q, max_results, timeout_s) for q in active)
        )
    else:
        per_query = [await _search_one(backend, q, max_results, timeout_s) for q in active]

    # Keyed by normalised URL; the hit keeps the original.
    unique: dict[str, tuple[WebResult, str]] = {}
    for query, hits in zip(active, per_query):
        for hit in hits:
            key = normalize_url(hit.url) if hit.url else ""
            if key and key not in unique:
                unique[key] = (hit, query)

    logger.info("retrieval.search_done", queries=len(active), urls=len(unique))
    if not unique:
        return []

    ordered = list(unique.values())
    try:
        fetched = await retriever.get_documents_from_links([hit.url for hit, _ in ordered])
    except Exception as exc:  # noqa: BLE001
        logger.warning("retrieval.fetch_failed", urls=len(unique), error=str(exc))
        fetched = []

    docs: list[Document] = []
    for doc in fetched:
        stored = unique.get(normalize_url(str(doc.metadata.get("url", ""))))
        hit, from_query = stored if stored else (None, None)
        content = doc.page_content or (hit.content if hit else "")
        if len(content) < _MIN_FETCHED_CHARS:
            continue
        docs.append(
            Document(
                page_content=content,
                metadata={
                    **doc.metadata,
                    "title": doc.metadata.get("title") or (hit.title if hit else "") or "Untitled",
                    "url": doc.metadata.get("url") or (hit.url if hit else ""),
                    "source": "search",
                    "snippet": hit.content if hit else "",
                    "from_query": from_query,
                    "content_length": len(content),
                },
            )
        )

    if docs:
        return docs

    docs = _snippet_documents(ordered)
    if docs:
        logger.info("retrieval.snippet_fallback", documents=len(docs))
        return docs

    docs = _minimal_documents(ordered)
    logger.info("retrieval.minimal_fallback", documents=len(docs))
    return docs
