"""Image and video search agents backed by SearXNG."""

from __future__ import annotations

from typing import Any, Optional

import structlog

from answer_search.models import ImageResult, VideoResult
from answer_search.services.protocols import ChatModel, History
from answer_search.services.searxng import SearXNGClient

logger = structlog.get_logger(__name__)

_MAX_IMAGES = 10
_MAX_VIDEOS = 10
_HISTORY_TURNS = 6

_REPHRASE_PROMPT = """Rewrite the follow-up question below as a standalone {kind} search query.
Use the conversation only to resolve references such as "it" or "that one".
Reply with the query text only.

Conversation:
{history}

Follow-up question: {query}
Standalone query:"""


def _format_history(chat_history: History) -> str:
    recent = list(chat_history)[-_HISTORY_TURNS:]
    return "\n".join(f"{role}: {text}" for role, text in recent)


class SearXNGMediaSearch:
    """Finds images and videos for a query, rephrasing follow-ups first.

    Args:
        searxng: An open :class:`SearXNGClient`.
    """

    def __init__(self, searxng: SearXNGClient) -> None:
        self._searxng = searxng

    async def _standalone_query(
        self, query: str, chat_history: History, llm: ChatModel, kind: str
    ) -> str:
        if not chat_history:
            return query
        prompt = _REPHRASE_PROMPT.format(
            kind=kind, history=_format_history(chat_history), query=query
        )
        try:
            response = await llm.invoke([{"role": "user", "content": prompt}])
        except Exception as exc:  # noqa: BLE001
            logger.warning("media.rephrase_failed", kind=kind, error=str(exc))
            return query
        rephrased = response.content.strip().strip('"')
        return rephrased or query

    async def search_images(
        self, query: str, chat_history: History, llm: ChatModel
    ) -> list[ImageResult]:
        search_query = await self._standalone_query(query, chat_history, llm, "image")
        raw = await self._searxng.search_images(search_query)
        images = [img for img in (_to_image(item) for item in raw) if img is not None]
        logger.info("media.images_found", query=search_query[:80], count=len(images))
        return images[:_MAX_IMAGES]

    async def search_videos(
        self, query: str, chat_history: History, llm: ChatModel
    ) -> list[VideoResult]:
        search_query = await self._standalone_query(query, chat_history, llm, "video")
        raw = await self._searxng.search_videos(search_query)
        videos = [vid for vid in (_to_video(item) for item in raw) if vid is not None]
        logger.info("media.videos_found", query=search_query[:80], count=len(videos))
        return videos[:_MAX_VIDEOS]


def _to_image(item: dict[str, Any]) -> Optional[ImageResult]:
    img_src = item.get("img_src")
    url = item.get("url")
    if not img_src or not url:
        return None
    return ImageResult(img_src=img_src, url=url, title=str(item.get("title") or ""))


def _to_video(item: dict[str, Any]) -> Optional[VideoResult]:
    url = item.get("url")
    iframe_src = item.get("iframe_src")
    if not url or not iframe_src:
        return None
    return VideoResult(
        img_src=str(item.get("thumbnail") or item.get("img_src") or ""),
        url=url,
        title=str(item.get("title") or ""),
        iframe_src=iframe_src,
    )
