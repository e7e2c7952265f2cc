"""Tests for intent detection (chat model path and keyword fallback)."""

from __future__ import annotations

import json

import pytest

from answer_search.pipeline.intent import (
    IntentDetector,
    detect_intent,
    fallback_intent,
    heuristic_intent,
    parse_intent_response,
)
from answer_search.exceptions import IntentParseError
from conftest import FakeChatModel


def _llm_payload(**overrides: object) -> str:
    payload = {
        "strategy": "research",
        "complexity": "complex",
        "temporal": "current",
        "contentPreferences": {
            "needsImages": True,
            "needsVideos": False,
            "mediaImportance": "medium",
            "visualLearning": False,
        },
        "confidence": {"strategy": 0.9, "complexity": 0.8, "temporal": 0.85, "contentPreferences": 0.6},
        "reasoning": "Asks for an in-depth review of recent work.",
        "recommendations": {
            "searchQueries": 4,
            "searchDepth": "deep",
            "parallelization": True,
            "earlyTermination": False,
            "relevanceThreshold": 0.3,
            "timeoutMultiplier": 1.5,
        },
    }
    payload.update(overrides)
    return json.dumps(payload)


class TestHeuristicIntent:
    """Keyword classifier behaviour."""

    def test_definition_query(self) -> None:
        intent = heuristic_intent("What is quantum computing")
        assert intent.strategy == "quickAnswer"
        assert intent.complexity == "simple"
        assert intent.temporal == "timeless"
        assert intent.content_preferences.needs_images is False
        assert intent.content_preferences.needs_videos is False
        assert intent.content_preferences.media_importance == "low"

    def test_tutorial_query_is_visual(self) -> None:
        intent = heuristic_intent("how to bake chocolate cake")
        assert intent.strategy == "tutorial"
        assert intent.content_preferences.visual_learning is True
        assert intent.content_preferences.media_importance == "high"

    def test_comparison_and_complexity(self) -> None:
        intent = heuristic_intent("compare electric cars and hybrid cars for long commutes")
        assert intent.strategy == "comparison"
        assert intent.complexity == "complex"
        assert intent.recommendations.search_queries == 4
        assert intent.recommendations.search_depth == "deep"
        assert intent.recommendations.timeout_multiplier == 1.5

    def test_news_is_current(self) -> None:
        intent = heuristic_intent("latest news on mars rover")
        assert intent.strategy == "news"
        assert intent.temporal == "current"

    def test_image_request(self) -> None:
        intent = heuristic_intent("show me photos of the northern lights")
        assert intent.content_preferences.needs_images is True
        assert intent.content_preferences.media_importance == "medium"
        assert intent.primary_intent == "images"

    def test_keywords_match_whole_words_only(self) -> None:
        """'photo' inside 'photosynthesis' and 'hot' inside 'photo' do not count."""
        intent = heuristic_intent("photosynthesis process")
        assert intent.content_preferences.needs_images is False
        assert intent.temporal == "timeless"

    def test_no_keywords_defaults(self) -> None:
        intent = heuristic_intent("zebra")
        assert intent.strategy == "quickAnswer"
        assert intent.confidence.strategy == 0.5
        assert intent.recommendations.early_termination is True

    def test_deterministic(self) -> None:
        assert heuristic_intent("rust vs go performance") == heuristic_intent("rust vs go performance")

    def test_recommendations_in_bounds(self) -> None:
        for query in ("", "a", "what is a black hole and why does it matter to astronomers today"):
            rec = heuristic_intent(query).recommendations
            assert 1 <= rec.search_queries <= 6
            assert rec.relevance_threshold is not None
            assert 0.2 <= rec.relevance_threshold <= 0.8
            assert 0.5 <= rec.timeout_multiplier <= 2.0


class TestParseIntentResponse:
    """Parsing and clamping of chat-model output."""

    def test_parses_camel_case_json(self) -> None:
        intent = parse_intent_response(_llm_payload())
        assert intent.strategy == "research"
        assert intent.content_preferences.needs_images is True
        assert intent.recommendations.search_depth == "deep"
        assert intent.confidence.temporal == 0.85

    def test_tolerates_fences_and_prose(self) -> None:
        raw = "Here you go:\n```json\n" + _llm_payload() + "\n```"
        assert parse_intent_response(raw).strategy == "research"

    def test_clamps_recommendations(self) -> None:
        raw = _llm_payload(
            recommendations={"searchQueries": 12, "relevanceThreshold": 0.95, "timeoutMultiplier": 0.1}
        )
        rec = parse_intent_response(raw).recommendations
        assert rec.search_queries == 6
        assert rec.relevance_threshold == 0.8
        assert rec.timeout_multiplier == 0.5

    def test_clamps_confidence(self) -> None:
        raw = _llm_payload(confidence={"strategy": 3, "complexity": -1})
        conf = parse_intent_response(raw).confidence
        assert conf.strategy == 1.0
        assert conf.complexity == 0.0
        assert conf.temporal == 0.7

    def test_missing_optional_fields_get_defaults(self) -> None:
        raw = json.dumps(
            {
                "strategy": "news",
                "complexity": "medium",
                "temporal": "trending",
                "contentPreferences": {},
            }
        )
        intent = parse_intent_response(raw)
        assert intent.recommendations.search_queries == 3
        assert intent.recommendations.relevance_threshold is None
        assert intent.recommendations.parallelization is True
        assert intent.reasoning == "LLM-based comprehensive analysis"

    def test_missing_required_key_raises(self) -> None:
        raw = json.dumps({"strategy": "news", "complexity": "medium", "temporal": "current"})
        with pytest.raises(IntentParseError):
            parse_intent_response(raw)

    def test_invalid_enum_raises(self) -> None:
        with pytest.raises(IntentParseError):
            parse_intent_response(_llm_payload(strategy="gossip"))

    def test_no_json_raises(self) -> None:
        with pytest.raises(IntentParseError):
            parse_intent_response("I think this is a research question.")


class TestIntentDetector:
    """End-to-end detection with a fake chat model."""

    @pytest.mark.asyncio
    async def test_uses_model_output(self) -> None:
        llm = FakeChatModel(_llm_payload())
        intent = await IntentDetector(llm).detect_intent("recent advances in battery chemistry")
        assert intent.strategy == "research"
        assert len(llm.calls) == 1

    @pytest.mark.asyncio
    async def test_empty_query_skips_model(self) -> None:
        llm = FakeChatModel(_llm_payload())
        intent = await detect_intent("   ", llm)
        assert llm.calls == []
        assert intent.strategy == "quickAnswer"

    @pytest.mark.asyncio
    async def test_model_error_falls_back(self) -> None:
        llm = FakeChatModel(RuntimeError("rate limited"))
        intent = await detect_intent("how to bake chocolate cake", llm)
        assert intent == heuristic_intent("how to bake chocolate cake")

    @pytest.mark.asyncio
    async def test_unparseable_output_falls_back(self) -> None:
        llm = FakeChatModel('{"strategy": "research"}')
        intent = await detect_intent("What is quantum computing", llm)
        assert intent.strategy == "quickAnswer"
        assert intent.reasoning.startswith("Keyword analysis")


def test_fallback_intent_is_single_query() -> None:
    intent = fallback_intent()
    assert intent.strategy == "quickAnswer"
    assert intent.complexity == "simple"
    assert intent.temporal == "timeless"
    assert intent.recommendations.search_queries == 1
    assert intent.confidence.strategy == 0.0
