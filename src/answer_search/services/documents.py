"""Fetch web pages and PDFs and turn them into Documents."""

from __future__ import annotations

import asyncio
from typing import Optional, Sequence

import httpx
import pymupdf
import structlog
from bs4 import BeautifulSoup

from answer_search.config import settings
from answer_search.models import Document
from answer_search.utils.text import dedup_key, normalize_whitespace
from answer_search.utils.url_utils import extract_domain

logger = structlog.get_logger(__name__)

# Sites that block scrapers or return login walls.
_SKIPPED_DOMAINS: tuple[str, ...] = (
    "linkedin.com",
    "facebook.com",
    "twitter.com",
    "x.com",
    "instagram.com",
    "pinterest.com",
    "reddit.com",
)

_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
}

_MIN_PAGE_CHARS = 200
_CHUNK_CHARS = 3000
_CHUNK_OVERLAP = 200
_MAX_REDIRECTS = 3
_NEAR_DUPLICATE = 0.8
_SPLIT_SEPARATORS = ("\n\n", "\n", ". ", " ")


def html_to_text(html: str) -> tuple[str, str]:
    """Return ``(title, text)`` for an HTML page with boilerplate removed."""
    soup = BeautifulSoup(html, "html.parser")
    title = soup.title.get_text(strip=True) if soup.title else ""

    for element in soup(["script", "style", "noscript", "nav", "footer", "header", "aside"]):
        element.decompose()

    return title, normalize_whitespace(soup.get_text(separator=" "))


def pdf_to_text(data: bytes) -> str:
    with pymupdf.open(stream=data, filetype="pdf") as pdf:
        return normalize_whitespace(" ".join(page.get_text() for page in pdf))


def split_text(text: str, chunk_size: int = _CHUNK_CHARS, overlap: int = _CHUNK_OVERLAP) -> list[str]:
    """Split *text* into windows of at most *chunk_size* chars with *overlap*.

    Window ends prefer paragraph, line, sentence and word boundaries, in that
    order, when one falls in the second half of the window.
    """
    if len(text) <= chunk_size:
        return [text] if text else []

    chunks: list[str] = []
    start = 0
    while start < len(text):
        end = min(start + chunk_size, len(text))
        if end < len(text):
            for sep in _SPLIT_SEPARATORS:
                cut = text.rfind(sep, start + chunk_size // 2, end)
                if cut != -1:
                    end = cut + len(sep)
                    break
        piece = text[start:end].strip()
        if piece:
            chunks.append(piece)
        if end >= len(text):
            break
        start = max(end - overlap, start + 1)
    return chunks


def _jaccard(a: str, b: str) -> float:
    words_a, words_b = set(a.split()), set(b.split())
    if not words_a or not words_b:
        return 0.0
    return len(words_a & words_b) / len(words_a | words_b)


def deduplicate_documents(docs: Sequence[Document]) -> list[Document]:
    """Drop exact and near-duplicate documents, keeping the longer of a pair.

    Near duplicates are pairs whose word sets have Jaccard similarity of at
    least 0.8. Output preserves first-seen order.
    """
    kept: list[Optional[Document]] = []
    keys: list[str] = []
    for doc in docs:
        key = dedup_key(doc.page_content)
        replace_at: Optional[int] = None
        duplicate = False
        for i, existing_key in enumerate(keys):
            if kept[i] is None:
                continue
            if key == existing_key or _jaccard(key, existing_key) >= _NEAR_DUPLICATE:
                if len(doc.page_content) > len(kept[i].page_content):
                    replace_at = i
                else:
                    duplicate = True
                break
        if duplicate:
            continue
        if replace_at is not None:
            kept[replace_at] = doc
            keys[replace_at] = key
        else:
            kept.append(doc)
            keys.append(key)
    return [doc for doc in kept if doc is not None]


def _is_skipped(url: str) -> bool:
    domain = extract_domain(url)
    return any(domain == d or domain.endswith("." + d) for d in _SKIPPED_DOMAINS)


class WebDocumentRetriever:
    """Fetches every link concurrently and returns deduplicated Documents.

    Each URL yields at most ``max_documents_per_url`` documents. Failed or
    too-short pages are skipped; a failure never raises out of
    :meth:`get_documents_from_links`.

    Args:
        timeout:              Per-URL timeout in seconds.
        max_documents_per_url: Cap on documents produced per page.
        transport:            Optional httpx transport (tests pass ``httpx.MockTransport``).
    """

    def __init__(
        self,
        timeout: Optional[float] = None,
        max_documents_per_url: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.timeout = timeout if timeout is not None else settings.document_fetch_timeout
        self.max_documents_per_url = max_documents_per_url or settings.max_documents_per_url
        self._transport = transport

    async def get_documents_from_links(self, links: Sequence[str]) -> list[Document]:
        urls = []
        for link in links:
            url = link if link.startswith(("http://", "https://")) else f"https://{link}"
            if not _is_skipped(url):
                urls.append(url)

        async with httpx.AsyncClient(
            timeout=self.timeout,
            headers=_HEADERS,
            follow_redirects=True,
            max_redirects=_MAX_REDIRECTS,
            transport=self._transport,
        ) as client:
            results = await asyncio.gather(*(self._fetch(client, url) for url in urls))

        docs = [doc for batch in results for doc in batch]
        unique = deduplicate_documents(docs)
        logger.info(
            "documents.fetched",
            links=len(links),
            fetched=len(urls),
            documents=len(docs),
            unique=len(unique),
        )
        return unique

    async def _fetch(self, client: httpx.AsyncClient, url: str) -> list[Document]:
        try:
            resp = await client.get(url)
            resp.raise_for_status()
            content_type = resp.headers.get("content-type", "")
            if "application/pdf" in content_type:
                title, text, doc_type = "PDF Document", pdf_to_text(resp.content), "pdf"
            else:
                title, text = html_to_text(resp.text)
                doc_type = "html"
        except Exception as exc:  # noqa: BLE001
            logger.debug("documents.fetch_failed", url=url, error=str(exc))
            return []

        if len(text) < _MIN_PAGE_CHARS:
            logger.debug("documents.too_short", url=url, chars=len(text))
            return []

        parts = split_text(text)[: self.max_documents_per_url]
        title = title or url
        return [
            Document(
                page_content=part,
                metadata={
                    "title": f"{title} (Part {i + 1})" if len(parts) > 1 else title,
                    "url": url,
                    "type": doc_type,
                    "chunk_index": i,
                    "total_chunks": len(parts),
                    "content_length": len(part),
                },
            )
            for i, part in enumerate(parts)
        ]
