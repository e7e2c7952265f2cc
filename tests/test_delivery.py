"""Tests for Stage D prompt assembly, fallbacks and media filtering."""

from __future__ import annotations

from datetime import date

import pytest

from answer_search.models import ContextChunk, Document, ImageResult, VideoResult
from answer_search.pipeline.delivery import (
    build_messages,
    build_response_prompt,
    build_structured_context,
    fallback_answer,
    filter_media,
    media_only_response,
    media_relevance,
    select_context_chunks,
)


def _chunk(i: int, content: str, score: float = 0.5, source: str = "") -> ContextChunk:
    return ContextChunk(
        id=f"chunk_{i}",
        content=content,
        sources=[source or f"https://s{i}.example"],
        relevance_score=score,
    )


class TestContextSelection:
    def test_highest_relevance_first(self) -> None:
        chunks = [_chunk(0, "low", 0.1), _chunk(1, "high", 0.9)]
        assert [c.id for c in select_context_chunks(chunks)] == ["chunk_1", "chunk_0"]

    def test_truncates_when_budget_allows(self) -> None:
        chunks = [_chunk(0, "a" * 700, 0.9), _chunk(1, "b" * 700, 0.8)]
        selected = select_context_chunks(chunks, budget=1000)
        assert len(selected) == 2
        assert selected[1].content.endswith("...")
        assert sum(len(c.content) for c in selected) == 1000

    def test_stops_when_remainder_too_small(self) -> None:
        chunks = [_chunk(0, "a" * 900, 0.9), _chunk(1, "b" * 700, 0.8), _chunk(2, "c" * 50, 0.7)]
        selected = select_context_chunks(chunks, budget=1000)
        assert [c.id for c in selected] == ["chunk_0"]

    def test_chunk_limit(self) -> None:
        chunks = [_chunk(i, "x", 0.5) for i in range(20)]
        assert len(select_context_chunks(chunks)) == 15


class TestPromptAssembly:
    def test_structured_context_groups_by_source(self) -> None:
        sources = [Document(page_content="", metadata={"url": "https://a.example", "title": "Alpha"})]
        chunks = [
            _chunk(0, "first", source="https://a.example"),
            _chunk(1, "other", source="https://b.example"),
            _chunk(2, "second", source="https://a.example"),
        ]
        context = build_structured_context(chunks, sources)
        assert context == "[Alpha]\nfirst\n\nsecond\n\n---\n\n[https://b.example]\nother"

    def test_prompt_sections(self, intent_factory) -> None:  # noqa: ANN001
        prompt = build_response_prompt(
            "compare rust and go",
            intent_factory(strategy="comparison"),
            "[Alpha]\nfirst",
            system_instructions="Answer in French.",
            today=date(2025, 3, 4),
        )
        assert "System Instructions:\nAnswer in French." in prompt
        assert "strategy=comparison" in prompt
        assert "side by side" in prompt
        assert "Current Date: 2025-03-04" in prompt
        assert prompt.endswith("User Query: compare rust and go")

    def test_prompt_without_system_instructions(self, intent_factory) -> None:  # noqa: ANN001
        prompt = build_response_prompt("q", intent_factory(), "ctx")
        assert "System Instructions" not in prompt

    def test_messages_map_history_roles(self) -> None:
        messages = build_messages("PROMPT", [("human", "hi"), ("ai", "hello"), ("tool", "ignored")])
        assert messages == [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "hello"},
            {"role": "user", "content": "PROMPT"},
        ]


class TestFallbacks:
    def test_fallback_uses_chunk_excerpt(self) -> None:
        chunks = [_chunk(0, "Solar panels convert sunlight into electricity. " * 4)]
        text = fallback_answer("solar", chunks, 3)
        assert text.startswith("Based on the available sources, here's what I found:")

    def test_fallback_without_enough_text(self) -> None:
        text = fallback_answer("solar", [_chunk(0, "short")], 3)
        assert text.startswith("I found 3 sources but couldn't generate")

    def test_media_only_counts(self) -> None:
        images = [
            ImageResult(img_src=f"https://i/{n}.png", url=f"https://p/{n}", title=title)
            for n, title in enumerate(("Cat nap", "Cat toy", "Kitten", "Lion"))
        ]
        videos = [VideoResult(img_src="", url="https://v/1", title="Cat tricks", iframe_src="https://e/1")]
        assert media_only_response("cats", images, videos) == (
            'I found 4 relevant images and 1 relevant video for your query about "cats".'
            "\n\nThe images include content related to: Cat nap, Cat toy, Kitten."
            "\n\nThe videos cover topics such as: Cat tricks."
        )

    def test_media_only_nothing_found(self) -> None:
        assert media_only_response("cats", [], []).startswith(
            'I couldn\'t find specific textual information about "cats".'
        )


class TestMediaFilter:
    def test_relevance_rewards_title_and_url_matches(self) -> None:
        match = ImageResult(img_src="https://img.example/aurora.jpg", url="https://p", title="Aurora borealis")
        other = ImageResult(img_src="https://img.example/placeholder.png", url="https://p", title="x")
        assert media_relevance("aurora", match) == pytest.approx(0.9)
        assert media_relevance("aurora", other) == 0.0

    def test_video_relevance_uses_page_url(self) -> None:
        video = VideoResult(
            img_src="", url="https://youtube.com/watch?aurora", title="Northern lights", iframe_src="e"
        )
        assert media_relevance("aurora", video) == pytest.approx(0.4)

    def test_filter_sorts_and_limits(self) -> None:
        items = [
            ImageResult(img_src=f"https://img.example/{name}.jpg", url="https://p", title=title)
            for name, title in (("a", "Unrelated picture"), ("aurora", "Aurora over Norway"), ("b", "Aurora"))
        ]
        kept = filter_media("aurora", items, threshold=0.5, limit=1)
        assert [i.title for i in kept] == ["Aurora over Norway"]

    def test_video_thumbnail_counts_toward_relevance(self) -> None:
        thumb = VideoResult(
            img_src="https://i.ytimg.com/vi/1/hq.jpg",
            url="https://youtube.com/watch?v=1",
            title="Evening sky over the fjord",
        )
        missing = thumb.model_copy(update={"img_src": ""})
        placeholder = thumb.model_copy(update={"img_src": "https://i.ytimg.com/placeholder.jpg"})
        assert media_relevance("aurora", thumb) == pytest.approx(0.3)
        assert media_relevance("aurora", missing) == pytest.approx(0.2)
        assert media_relevance("aurora", placeholder) == pytest.approx(0.2)
        assert filter_media("aurora", [thumb, placeholder], threshold=0.25, limit=5) == [thumb]
