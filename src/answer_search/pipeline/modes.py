"""Mode configuration resolver: (mode, intent) -> OrchestratorConfig."""

from __future__ import annotations

import math
from typing import Optional

from answer_search.models import (
    FusionConfig,
    Mode,
    OrchestratorConfig,
    RerankingConfig,
    SearchConfig,
    SearchIntent,
    StreamingConfig,
    TimeoutConfig,
)

_MODE_ALIASES: dict[str, Mode] = {
    "quick": "quick",
    "pro": "pro",
    "prosearch": "pro",
    "ultra": "ultra",
    "ultrasearch": "ultra",
}

# (query, search, rerank, response, total) in milliseconds.
_BASE_TIMEOUTS: dict[Mode, tuple[int, int, int, int, int]] = {
    "quick": (500, 3000, 1200, 8000, 15000),
    "pro": (800, 4500, 2000, 10000, 18000),
    "ultra": (1200, 6000, 3500, 12000, 25000),
}

_DEFAULT_QUERIES: dict[Mode, int] = {"quick": 3, "pro": 4, "ultra": 5}
_ULTRA_MAX_QUERIES = 8

_BASE_BATCH_SIZE: dict[Mode, int] = {"quick": 20, "pro": 25, "ultra": 30}
_BASE_CHUNK_SIZE: dict[Mode, int] = {"quick": 600, "pro": 800, "ultra": 1000}
_BASE_MAX_CHUNKS: dict[Mode, int] = {"quick": 4, "pro": 6, "ultra": 8}
_OVERLAP: dict[Mode, int] = {"quick": 80, "pro": 120, "ultra": 200}
_FUSION_BATCH: dict[Mode, int] = {"quick": 3, "pro": 4, "ultra": 3}

# Result ceilings are generous on purpose; relevance filtering does the trimming.
_LIMITS: dict[Mode, tuple[int, int, int]] = {
    "quick": (200, 200, 200),
    "pro": (300, 300, 300),
    "ultra": (500, 400, 400),
}

_MODE_THRESHOLDS: dict[Mode, float] = {"quick": 0.5, "pro": 0.4, "ultra": 0.3}
_STRATEGY_THRESHOLDS: dict[str, float] = {
    "quickAnswer": 0.6,
    "research": 0.25,
    "news": 0.4,
    "comparison": 0.35,
}

_STREAMING: dict[Mode, tuple[int, int, bool]] = {
    "quick": (5, 100, False),
    "pro": (8, 150, False),
    "ultra": (10, 200, True),
}


def resolve_mode(mode: str) -> Mode:
    """Map a mode name (including ``proSearch``/``ultraSearch`` aliases) to a Mode.

    Raises:
        ValueError: If *mode* is not recognised.
    """
    resolved = _MODE_ALIASES.get(mode.strip().lower())
    if resolved is None:
        raise ValueError(f"unknown search mode: {mode!r}")
    return resolved


def get_config(mode: str, intent: Optional[SearchIntent] = None) -> OrchestratorConfig:
    """Build the immutable pipeline configuration for *mode*, adapted to *intent*.

    Pure function: the same arguments always produce an equal config.

    Args:
        mode:   ``quick``, ``pro`` or ``ultra`` (aliases accepted).
        intent: Detected intent, or ``None`` for plain mode defaults.

    Returns:
        A new frozen :class:`OrchestratorConfig`.

    Raises:
        ValueError: If *mode* is not recognised.
    """
    resolved = resolve_mode(mode)
    max_sources, max_images, max_videos = _LIMITS[resolved]
    stream_min, stream_delay, stream_early = _STREAMING[resolved]

    parallel = intent.recommendations.parallelization if intent is not None else True

    return OrchestratorConfig(
        mode=resolved,
        max_sources=max_sources,
        max_images=max_images,
        max_videos=max_videos,
        timeout_config=_timeouts(resolved, intent),
        search_config=SearchConfig(
            max_queries=_query_count(resolved, intent),
            parallel_searches=parallel,
            batch_size=_batch_size(resolved, intent),
        ),
        streaming_config=StreamingConfig(
            enable_streaming=True,
            min_sources_for_response=stream_min,
            max_response_delay=stream_delay,
            progressive_enhancement=True,
            early_termination=stream_early,
            parallel_processing=True,
        ),
        reranking_config=RerankingConfig(
            min_relevance_threshold=_relevance_threshold(resolved, intent),
            semantic_weight=0.5,
            keyword_weight=0.3,
            quality_weight=0.1,
            freshness_weight=_freshness_weight(intent),
            diversity_weight=_diversity_weight(intent),
            adaptive_scoring=True,
        ),
        fusion_config=FusionConfig(
            max_chunk_size=_chunk_size(resolved, intent),
            overlap_size=_OVERLAP[resolved],
            max_chunks=_max_chunks(resolved, intent),
            semantic_grouping=True,
            deduplication=True,
            skip_enhancement=resolved == "quick",
            batch_size=_FUSION_BATCH[resolved],
            enable_parallel_processing=resolved != "quick",
        ),
    )


# ---------------------------------------------------------------------------
# Individual knobs
# ---------------------------------------------------------------------------


def _scaled(value: int, factor: float) -> int:
    # Tolerate float error such as 600 * 0.7 == 419.99999999999994.
    return math.floor(value * factor + 1e-9)


def _depth(intent: Optional[SearchIntent]) -> str:
    return intent.recommendations.search_depth if intent is not None else "medium"


def _relevance_threshold(mode: Mode, intent: Optional[SearchIntent]) -> float:
    if intent is not None:
        if intent.recommendations.relevance_threshold is not None:
            return intent.recommendations.relevance_threshold
        if intent.strategy in _STRATEGY_THRESHOLDS:
            return _STRATEGY_THRESHOLDS[intent.strategy]
    return _MODE_THRESHOLDS[mode]


def _freshness_weight(intent: Optional[SearchIntent]) -> float:
    if intent is None:
        return 0.05
    if intent.temporal == "current":
        return 0.2
    if intent.temporal == "trending":
        return 0.15
    if intent.strategy == "news":
        return 0.25
    return 0.05


def _diversity_weight(intent: Optional[SearchIntent]) -> float:
    if intent is None:
        return 0.05
    if intent.strategy == "research":
        return 0.15
    if intent.strategy == "comparison":
        return 0.12
    if intent.complexity == "complex":
        return 0.1
    return 0.05


def _timeouts(mode: Mode, intent: Optional[SearchIntent]) -> TimeoutConfig:
    multiplier = intent.recommendations.timeout_multiplier if intent is not None else 1.0
    query, search, rerank, response, total = (
        _scaled(value, multiplier) for value in _BASE_TIMEOUTS[mode]
    )
    return TimeoutConfig(
        query_timeout=query,
        search_timeout=search,
        rerank_timeout=rerank,
        response_timeout=response,
        total_timeout=total,
    )


def _query_count(mode: Mode, intent: Optional[SearchIntent]) -> int:
    count = intent.recommendations.search_queries if intent is not None else _DEFAULT_QUERIES[mode]
    if mode == "ultra":
        return min(count + 1, _ULTRA_MAX_QUERIES)
    return count


def _batch_size(mode: Mode, intent: Optional[SearchIntent]) -> int:
    base = _BASE_BATCH_SIZE[mode]
    depth = _depth(intent)
    if depth == "shallow":
        return _scaled(base, 0.8)
    if depth == "deep":
        return _scaled(base, 1.3)
    return base


def _chunk_size(mode: Mode, intent: Optional[SearchIntent]) -> int:
    base = _BASE_CHUNK_SIZE[mode]
    depth = _depth(intent)
    if depth == "shallow":
        return _scaled(base, 0.7)
    if depth == "deep":
        return _scaled(base, 1.4)
    return base


def _max_chunks(mode: Mode, intent: Optional[SearchIntent]) -> int:
    base = _BASE_MAX_CHUNKS[mode]
    depth = _depth(intent)
    if depth == "shallow":
        return max(base - 1, 2)
    if depth == "deep":
        return base + 2
    return base
