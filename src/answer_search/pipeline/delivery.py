"""Stage D helpers: context budgeting, prompt assembly, fallbacks and media filtering."""

from __future__ import annotations

from datetime import date
from typing import Optional, Sequence, TypeVar, Union

from answer_search.models import ContextChunk, Document, ImageResult, SearchIntent, VideoResult
from answer_search.services.protocols import History

CONTEXT_CHAR_BUDGET = 8000
MAX_CONTEXT_CHUNKS = 15
_MIN_TRUNCATED_CHARS = 200
_SECTION_SEPARATOR = "\n\n---\n\n"
_FALLBACK_CHUNKS = 3
_FALLBACK_MIN_CHARS = 100
_MEDIA_TITLES = 3

_STRATEGY_INSTRUCTIONS: dict[str, str] = {
    "quickAnswer": "Give a direct, concise answer first, then only the essential supporting detail.",
    "research": (
        "Write a thorough, well-structured analysis. Cover the main findings, "
        "note where sources disagree and cite sources for every claim."
    ),
    "comparison": (
        "Compare the options side by side. Use a table or parallel bullet points for the "
        "key differences and finish with guidance on which fits which need."
    ),
    "tutorial": "Give clear numbered steps, list prerequisites first and call out common mistakes.",
    "news": "Lead with the most recent developments, include dates and say how current the information is.",
    "reference": "Present precise facts and specifications in a scannable format.",
    "creative": "Offer varied, concrete ideas and briefly explain what makes each one work.",
}

_ROLE_MAP = {"human": "user", "user": "user", "ai": "assistant", "assistant": "assistant"}

Media = TypeVar("Media", ImageResult, VideoResult)


def select_context_chunks(
    chunks: Sequence[ContextChunk],
    budget: int = CONTEXT_CHAR_BUDGET,
    limit: int = MAX_CONTEXT_CHUNKS,
) -> list[ContextChunk]:
    """Pick the most relevant chunks whose combined content fits *budget* chars.

    The first chunk that does not fit is truncated with ``...`` when at least
    200 chars of budget remain; selection stops there.
    """
    ranked = sorted(chunks, key=lambda c: c.relevance_score, reverse=True)[:limit]
    selected: list[ContextChunk] = []
    used = 0
    for chunk in ranked:
        if used + len(chunk.content) <= budget:
            selected.append(chunk)
            used += len(chunk.content)
            continue
        remaining = budget - used
        if remaining >= _MIN_TRUNCATED_CHARS:
            selected.append(
                chunk.model_copy(update={"content": chunk.content[: remaining - 3] + "..."})
            )
        break
    return selected


def build_structured_context(
    chunks: Sequence[ContextChunk], sources: Sequence[Document]
) -> str:
    """Group chunk text by primary source under ``[title]`` headers."""
    titles = {
        str(doc.metadata.get("url", "")): str(doc.metadata.get("title") or "")
        for doc in sources
    }
    grouped: dict[str, list[str]] = {}
    for chunk in chunks:
        source = chunk.sources[0] if chunk.sources else "unknown"
        grouped.setdefault(source, []).append(chunk.content)

    sections = [
        f"[{titles.get(source) or source}]\n" + "\n\n".join(parts)
        for source, parts in grouped.items()
    ]
    return _SECTION_SEPARATOR.join(sections)


def build_response_prompt(
    query: str,
    intent: SearchIntent,
    context: str,
    system_instructions: str = "",
    today: Optional[date] = None,
) -> str:
    """Assemble the answer-synthesis prompt for *intent*."""
    current = (today or date.today()).isoformat()
    parts = [
        "You are a search assistant. Answer the user's query using the context below. "
        "Cite sources by their bracketed titles. If the context does not contain the "
        "answer, say so instead of guessing.",
    ]
    if system_instructions.strip():
        parts.append(f"System Instructions:\n{system_instructions.strip()}")
    parts.append(
        "Intent:\n"
        f"strategy={intent.strategy}, complexity={intent.complexity}, temporal={intent.temporal}"
    )
    parts.append(f"Special Instructions:\n{_STRATEGY_INSTRUCTIONS[intent.strategy]}")
    parts.append(f"Context Information:\n{context}")
    parts.append(f"Current Date: {current}")
    parts.append(f"User Query: {query}")
    return "\n\n".join(parts)


def build_messages(prompt: str, history: History) -> list[dict[str, str]]:
    """Conversation history followed by the synthesis prompt as the final user turn."""
    messages: list[dict[str, str]] = []
    for role, text in history:
        mapped = _ROLE_MAP.get(role.lower())
        if mapped and text:
            messages.append({"role": mapped, "content": text})
    messages.append({"role": "user", "content": prompt})
    return messages


def fallback_answer(query: str, chunks: Sequence[ContextChunk], source_count: int) -> str:
    """Answer text used when the chat model fails during synthesis."""
    excerpt = "\n\n".join(c.content for c in chunks[:_FALLBACK_CHUNKS])
    if len(excerpt) > _FALLBACK_MIN_CHARS:
        return f"Based on the available sources, here's what I found:\n\n{excerpt}"
    return (
        f"I found {source_count} sources but couldn't generate a complete answer "
        f'about "{query}". Please try rephrasing your question.'
    )


def media_only_response(
    query: str, images: Sequence[ImageResult], videos: Sequence[VideoResult]
) -> str:
    """Answer text used when no text context is available."""
    if images or videos:
        found = []
        if images:
            found.append(f"{len(images)} relevant image{'s' if len(images) != 1 else ''}")
        if videos:
            found.append(f"{len(videos)} relevant video{'s' if len(videos) != 1 else ''}")
        message = f'I found {" and ".join(found)} for your query about "{query}".'
        if images:
            titles = ", ".join(i.title for i in images[:_MEDIA_TITLES])
            message += f"\n\nThe images include content related to: {titles}."
        if videos:
            titles = ", ".join(v.title for v in videos[:_MEDIA_TITLES])
            message += f"\n\nThe videos cover topics such as: {titles}."
        return message
    return (
        f'I couldn\'t find specific textual information about "{query}". '
        "Try rephrasing your query or adding more detail."
    )


def media_relevance(query: str, item: Union[ImageResult, VideoResult]) -> float:
    """Title/URL keyword overlap score for an image or video. Range [0, 1]."""
    words = [w for w in query.lower().split() if len(w) > 2]
    title = item.title.lower()
    is_video = isinstance(item, VideoResult)
    location = (item.url if is_video else item.img_src).lower()

    score = 0.0
    for word in words:
        if word in title:
            score += 0.4
        if word in location:
            score += 0.2

    max_title = 150 if is_video else 100
    if 10 <= len(item.title) <= max_title:
        score += 0.2
    if item.img_src and "placeholder" not in item.img_src.lower():
        score += 0.1
    return min(score, 1.0)


def filter_media(
    query: str, items: Sequence[Media], threshold: float, limit: int
) -> list[Media]:
    """Keep media scoring at least *threshold*, best first, at most *limit*."""
    scored = [(media_relevance(query, item), item) for item in items]
    kept = [pair for pair in scored if pair[0] >= threshold]
    kept.sort(key=lambda pair: pair[0], reverse=True)
    return [item for _, item in kept[:limit]]
