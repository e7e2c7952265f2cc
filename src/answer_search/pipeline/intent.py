"""Stage Q helper: four-dimensional intent detection (chat model + keyword fallback)."""

from __future__ import annotations

import json
import re
from datetime import date
from typing import Any

import structlog
from pydantic import ValidationError

from answer_search.exceptions import IntentParseError
from answer_search.models import (
    Complexity,
    ContentPreferences,
    IntentConfidence,
    IntentRecommendations,
    MediaImportance,
    SearchIntent,
    Strategy,
    Temporal,
)
from answer_search.services.protocols import ChatModel
from answer_search.utils.text import contains_phrase

logger = structlog.get_logger(__name__)

_REQUIRED_KEYS = ("strategy", "complexity", "temporal", "contentPreferences")
_JSON_BLOCK = re.compile(r"\{[\s\S]*\}")

_INTENT_PROMPT = """Analyze the search query below and classify it along four dimensions.

Query: "{query}"

1. strategy - one of:
   quickAnswer (a fact or definition), research (in-depth study), comparison (X vs Y),
   tutorial (how-to or step-by-step), news (recent events), reference (specifications,
   documentation), creative (ideas, inspiration)
2. complexity - simple, medium or complex
3. temporal - current, historical, trending or timeless
4. contentPreferences - whether images or videos would help, how important media is
   (low, medium, high) and whether the user learns visually

Examples:
- "what is photosynthesis" -> quickAnswer, simple, timeless, no media
- "iphone 16 vs pixel 9 camera" -> comparison, medium, current, images helpful
- "how to tie a bowline knot" -> tutorial, simple, timeless, videos helpful, visual learning

Respond with JSON only, in exactly this shape:
{{
  "strategy": "quickAnswer",
  "complexity": "simple",
  "temporal": "timeless",
  "contentPreferences": {{
    "needsImages": false,
    "needsVideos": false,
    "mediaImportance": "low",
    "visualLearning": false
  }},
  "confidence": {{"strategy": 0.9, "complexity": 0.8, "temporal": 0.8, "contentPreferences": 0.7}},
  "reasoning": "one sentence",
  "recommendations": {{
    "searchQueries": 3,
    "searchDepth": "medium",
    "parallelization": true,
    "earlyTermination": false,
    "relevanceThreshold": 0.4,
    "timeoutMultiplier": 1.0
  }}
}}"""

# ---------------------------------------------------------------------------
# Keyword tables for the heuristic classifier. Order matters: ties go to the
# earlier entry.
# ---------------------------------------------------------------------------

_STRATEGY_KEYWORDS: dict[Strategy, tuple[str, ...]] = {
    "quickAnswer": ("what is", "what are", "define", "definition", "meaning", "explain"),
    "research": ("research", "study", "studies", "analysis", "comprehensive", "detailed", "academic"),
    "comparison": ("vs", "versus", "compare", "comparison", "difference", "better", "best"),
    "tutorial": ("how to", "tutorial", "guide", "step", "steps", "learn", "teach", "instructions"),
    "news": ("news", "latest", "recent", "breaking", "update", "current events", "today"),
    "reference": ("specs", "specification", "documentation", "manual", "technical", "details"),
    "creative": ("ideas", "inspiration", "creative", "brainstorm", "suggest", "examples"),
}

_HISTORICAL_KEYWORDS = ("history", "past", "historical", "ancient", "old", "traditional")
_TRENDING_KEYWORDS = ("trending", "viral", "popular", "hot", "buzz")

_IMAGE_KEYWORDS = (
    "image", "images", "picture", "pictures", "photo", "photos",
    "visual", "show me", "looks like", "appearance",
)
_VIDEO_KEYWORDS = ("video", "videos", "watch", "tutorial", "demonstration", "movie", "clip", "clips")
_VISUAL_LEARNING_KEYWORDS = ("how to", "tutorial", "guide", "demonstration", "example", "examples")

_COMPLEX_CONNECTORS = ("and", "or", "but", "versus")
_SIMPLE_MAX_WORDS = 4
_COMPLEX_MIN_WORDS = 9


def _current_keywords() -> tuple[str, ...]:
    year = date.today().year
    return ("latest", "recent", "now", "today", "current", "new", str(year), str(year - 1))


def _count_hits(text: str, keywords: tuple[str, ...]) -> int:
    return sum(1 for kw in keywords if contains_phrase(text, kw))


# ---------------------------------------------------------------------------
# Heuristic classifier
# ---------------------------------------------------------------------------


def heuristic_intent(query: str) -> SearchIntent:
    """Classify *query* with keyword tables only. Deterministic; never calls a model.

    Args:
        query: Raw user query (may be empty).

    Returns:
        A fully populated :class:`SearchIntent`.
    """
    text = " ".join(query.lower().split())
    words = text.split()

    scores = {name: _count_hits(text, kws) for name, kws in _STRATEGY_KEYWORDS.items()}
    best = max(scores, key=scores.__getitem__)
    strategy: Strategy = best if scores[best] > 0 else "quickAnswer"

    complexity: Complexity
    if len(words) <= _SIMPLE_MAX_WORDS:
        complexity = "simple"
    elif len(words) >= _COMPLEX_MIN_WORDS or any(w in _COMPLEX_CONNECTORS for w in words):
        complexity = "complex"
    else:
        complexity = "medium"

    temporal: Temporal = "timeless"
    temporal_hit = True
    if _count_hits(text, _current_keywords()):
        temporal = "current"
    elif _count_hits(text, _HISTORICAL_KEYWORDS):
        temporal = "historical"
    elif _count_hits(text, _TRENDING_KEYWORDS):
        temporal = "trending"
    else:
        temporal_hit = False

    needs_images = _count_hits(text, _IMAGE_KEYWORDS) > 0
    needs_videos = _count_hits(text, _VIDEO_KEYWORDS) > 0
    visual_learning = _count_hits(text, _VISUAL_LEARNING_KEYWORDS) > 0

    importance: MediaImportance = "low"
    if needs_images or needs_videos:
        importance = "medium"
    if visual_learning or strategy == "tutorial":
        importance = "high"

    if strategy == "quickAnswer":
        threshold = 0.5
    elif strategy == "research":
        threshold = 0.3
    else:
        threshold = 0.4

    return SearchIntent(
        strategy=strategy,
        complexity=complexity,
        temporal=temporal,
        content_preferences=ContentPreferences(
            needs_images=needs_images,
            needs_videos=needs_videos,
            media_importance=importance,
            visual_learning=visual_learning,
        ),
        confidence=IntentConfidence(
            strategy=0.7 if scores[best] > 0 else 0.5,
            complexity=0.6,
            temporal=0.7 if temporal_hit else 0.5,
            content_preferences=0.6,
        ),
        reasoning=(
            f"Keyword analysis: {strategy} strategy, {complexity} complexity, "
            f"{temporal} temporal focus"
        ),
        recommendations=IntentRecommendations(
            search_queries={"simple": 2, "medium": 3, "complex": 4}[complexity],
            search_depth={"simple": "shallow", "medium": "medium", "complex": "deep"}[complexity],
            parallelization=True,
            early_termination=strategy == "quickAnswer" and complexity == "simple",
            relevance_threshold=threshold,
            timeout_multiplier={"simple": 0.8, "medium": 1.0, "complex": 1.5}[complexity],
        ),
    )


# ---------------------------------------------------------------------------
# Model-backed detection
# ---------------------------------------------------------------------------


def parse_intent_response(raw_text: str) -> SearchIntent:
    """Turn a chat-model reply into a clamped :class:`SearchIntent`.

    Raises:
        IntentParseError: If no JSON object is present, a required dimension is
            missing, or a value fails validation.
    """
    text = re.sub(r"^```(?:json)?\s*", "", raw_text.strip())
    text = re.sub(r"\s*```$", "", text)

    match = _JSON_BLOCK.search(text)
    if match is None:
        raise IntentParseError("no JSON object in model response")

    try:
        data: Any = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise IntentParseError(f"invalid JSON: {exc}") from exc

    if not isinstance(data, dict):
        raise IntentParseError("intent JSON is not an object")
    missing = [key for key in _REQUIRED_KEYS if key not in data]
    if missing:
        raise IntentParseError(f"missing keys: {', '.join(missing)}")

    data.setdefault("reasoning", "LLM-based comprehensive analysis")
    try:
        return SearchIntent.model_validate(data)
    except ValidationError as exc:
        raise IntentParseError(str(exc)) from exc


class IntentDetector:
    """Classifies queries with a chat model, degrading to :func:`heuristic_intent`.

    Args:
        llm: Chat model used for classification.
    """

    def __init__(self, llm: ChatModel) -> None:
        self._llm = llm

    async def detect_intent(self, query: str) -> SearchIntent:
        """Return the intent for *query*. Never raises.

        Empty or whitespace-only queries skip the model call entirely.
        """
        if not query.strip():
            intent = heuristic_intent(query)
            logger.info("intent.detected", method="heuristic", reason="empty_query")
            return intent

        try:
            response = await self._llm.invoke(
                [{"role": "user", "content": _INTENT_PROMPT.format(query=query)}]
            )
            intent = parse_intent_response(response.content)
        except Exception as exc:  # noqa: BLE001
            logger.warning("intent.llm_failed", query=query[:80], error=str(exc))
            intent = heuristic_intent(query)
            logger.info(
                "intent.detected",
                method="heuristic",
                strategy=intent.strategy,
                complexity=intent.complexity,
            )
            return intent

        logger.info(
            "intent.detected",
            method="llm",
            strategy=intent.strategy,
            complexity=intent.complexity,
            temporal=intent.temporal,
        )
        return intent


async def detect_intent(query: str, llm: ChatModel) -> SearchIntent:
    """Convenience wrapper around :meth:`IntentDetector.detect_intent`."""
    return await IntentDetector(llm).detect_intent(query)


def fallback_intent() -> SearchIntent:
    """Minimal single-query intent used when detection or the pipeline fails."""
    return SearchIntent(
        strategy="quickAnswer",
        complexity="simple",
        temporal="timeless",
        content_preferences=ContentPreferences(),
        confidence=IntentConfidence(
            strategy=0.0, complexity=0.0, temporal=0.0, content_preferences=0.0
        ),
        reasoning="Fallback intent",
        recommendations=IntentRecommendations(search_queries=1, early_termination=False),
    )
