"""Pydantic v2 data models for the answering pipeline."""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

Strategy = Literal[
    "quickAnswer", "research", "comparison", "tutorial", "news", "reference", "creative"
]
Complexity = Literal["simple", "medium", "complex"]
Temporal = Literal["current", "historical", "trending", "timeless"]
MediaImportance = Literal["low", "medium", "high"]
SearchDepth = Literal["shallow", "medium", "deep"]
Mode = Literal["quick", "pro", "ultra"]
StageName = Literal["Q", "S", "R", "E", "D"]
StageStatus = Literal["pending", "running", "completed", "error"]

STAGE_ORDER: tuple[StageName, ...] = ("Q", "S", "R", "E", "D")

STAGE_NAMES: dict[str, str] = {
    "Q": "Query Understanding",
    "S": "Search",
    "R": "Ranking",
    "E": "Extraction",
    "D": "Delivery",
}


def _clamp(value: Any, lo: float, hi: float, default: float) -> float:  # noqa: ANN401
    """Coerce *value* to a float inside ``[lo, hi]``, or *default* if unusable."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(number):
        return default
    return min(hi, max(lo, number))


# ---------------------------------------------------------------------------
# Intent models
# ---------------------------------------------------------------------------


class _IntentPart(BaseModel):
    """Shared config: accepts the camelCase keys the chat model emits."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class ContentPreferences(_IntentPart):
    needs_images: bool = False
    needs_videos: bool = False
    media_importance: MediaImportance = "low"
    visual_learning: bool = False

    @field_validator("media_importance", mode="before")
    @classmethod
    def _known_importance(cls, value: Any) -> Any:  # noqa: ANN401
        return value if value in ("low", "medium", "high") else "low"


class IntentConfidence(_IntentPart):
    """Per-dimension confidence, each in [0, 1]."""

    strategy: float = 0.7
    complexity: float = 0.7
    temporal: float = 0.7
    content_preferences: float = 0.7

    @field_validator("*", mode="before")
    @classmethod
    def _clamp_unit(cls, value: Any) -> float:  # noqa: ANN401
        return _clamp(value, 0.0, 1.0, 0.7)


class IntentRecommendations(_IntentPart):
    """Execution hints attached to an intent.

    ``relevance_threshold`` is ``None`` when the source of the intent did not
    suggest one; the mode resolver then falls back to strategy defaults.
    """

    search_queries: int = 3
    search_depth: SearchDepth = "medium"
    parallelization: bool = True
    early_termination: bool = True
    relevance_threshold: Optional[float] = None
    timeout_multiplier: float = 1.0

    @field_validator("search_queries", mode="before")
    @classmethod
    def _clamp_queries(cls, value: Any) -> int:  # noqa: ANN401
        return int(round(_clamp(value, 1, 6, 3)))

    @field_validator("search_depth", mode="before")
    @classmethod
    def _known_depth(cls, value: Any) -> Any:  # noqa: ANN401
        return value if value in ("shallow", "medium", "deep") else "medium"

    @field_validator("parallelization", "early_termination", mode="before")
    @classmethod
    def _not_false(cls, value: Any) -> bool:  # noqa: ANN401
        return value is not False

    @field_validator("relevance_threshold", mode="before")
    @classmethod
    def _clamp_threshold(cls, value: Any) -> Optional[float]:  # noqa: ANN401
        if value is None:
            return None
        return _clamp(value, 0.2, 0.8, 0.4)

    @field_validator("timeout_multiplier", mode="before")
    @classmethod
    def _clamp_multiplier(cls, value: Any) -> float:  # noqa: ANN401
        return _clamp(value, 0.5, 2.0, 1.0)


class SearchIntent(_IntentPart):
    """Four-dimensional classification of a user query.

    Instances are immutable. Every numeric recommendation is clamped by the
    validators above, so values coming from a chat model are safe to use once
    :meth:`model_validate` has accepted them.
    """

    strategy: Strategy
    complexity: Complexity
    temporal: Temporal
    content_preferences: ContentPreferences
    confidence: IntentConfidence = Field(default_factory=IntentConfidence)
    reasoning: str = ""
    recommendations: IntentRecommendations = Field(default_factory=IntentRecommendations)

    @property
    def needs_images(self) -> bool:
        return self.content_preferences.needs_images

    @property
    def needs_videos(self) -> bool:
        return self.content_preferences.needs_videos

    @property
    def primary_intent(self) -> Literal["documents", "images", "videos", "mixed"]:
        prefs = self.content_preferences
        if prefs.needs_images and prefs.needs_videos:
            return "mixed"
        if prefs.needs_images:
            return "images"
        if prefs.needs_videos:
            return "videos"
        return "documents"


# ---------------------------------------------------------------------------
# Orchestrator configuration
# ---------------------------------------------------------------------------


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class TimeoutConfig(_Frozen):
    """Per-operation timeouts in milliseconds."""

    query_timeout: int
    search_timeout: int
    rerank_timeout: int
    response_timeout: int
    total_timeout: int


class SearchConfig(_Frozen):
    """Search fan-out settings.

    ``max_queries`` records the mode's query budget for logging; Stage Q caps
    its query list at the intent's ``search_queries`` recommendation.
    """

    max_queries: int
    parallel_searches: bool = True
    batch_size: int = 20


class StreamingConfig(_Frozen):
    enable_streaming: bool = True
    min_sources_for_response: int = 5
    max_response_delay: int = 100
    progressive_enhancement: bool = True
    early_termination: bool = False
    parallel_processing: bool = True


class RerankingConfig(_Frozen):
    min_relevance_threshold: float = 0.3
    semantic_weight: float = 0.5
    keyword_weight: float = 0.3
    quality_weight: float = 0.1
    freshness_weight: float = 0.05
    diversity_weight: float = 0.05
    adaptive_scoring: bool = True


class FusionConfig(_Frozen):
    """Chunking and enhancement settings. Sizes are counted in words."""

    max_chunk_size: int = 2000
    overlap_size: int = 200
    max_chunks: int = 10
    semantic_grouping: bool = True
    deduplication: bool = True
    skip_enhancement: bool = False
    batch_size: int = 3
    enable_parallel_processing: bool = True


class OrchestratorConfig(_Frozen):
    """Immutable per-request pipeline configuration produced by ``get_config``."""

    mode: Mode
    max_sources: int
    max_images: int
    max_videos: int
    timeout_config: TimeoutConfig
    search_config: SearchConfig
    streaming_config: StreamingConfig
    reranking_config: RerankingConfig
    fusion_config: FusionConfig


# ---------------------------------------------------------------------------
# Documents, chunks and media
# ---------------------------------------------------------------------------


class Document(BaseModel):
    """A unit of retrieved text plus its metadata (title, url, source, snippet...)."""

    page_content: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class RerankedDocument(Document):
    relevance_score: float = Field(..., ge=0.0, le=1.0)
    original_rank: int


class ContextChunk(BaseModel):
    """A fused passage of context handed to answer synthesis."""

    id: str
    content: str
    sources: list[str]
    relevance_score: float = 0.0
    metadata: dict[str, Any] = Field(default_factory=dict)


class ImageResult(BaseModel):
    img_src: str
    url: str
    title: str = ""


class VideoResult(BaseModel):
    img_src: str = ""
    url: str
    title: str = ""
    iframe_src: str = ""


class WebResult(BaseModel):
    """A single hit returned by a search backend."""

    url: str
    title: str = ""
    content: str = ""


class SearchBackendResponse(BaseModel):
    results: list[WebResult] = Field(default_factory=list)


class ChatResponse(BaseModel):
    content: str


# ---------------------------------------------------------------------------
# Pipeline state and results
# ---------------------------------------------------------------------------


class PipelineStage(BaseModel):
    """Progress record for one Q-S-R-E-D stage. Times are epoch milliseconds."""

    stage: StageName
    name: str
    status: StageStatus = "pending"
    progress: float = Field(default=0.0, ge=0.0, le=100.0)
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    data: Any = None
    error: Optional[str] = None


class SearchResult(BaseModel):
    """Final outcome of one pipeline execution."""

    message: str
    sources: list[RerankedDocument] = Field(default_factory=list)
    images: list[ImageResult] = Field(default_factory=list)
    videos: list[VideoResult] = Field(default_factory=list)
    search_intent: SearchIntent
    pipeline_stages: list[PipelineStage]
    execution_time: float
    mode: Mode
    success: bool
    error: Optional[str] = None


class StreamEvent(BaseModel):
    """One record published on the streaming channel."""

    type: str
    data: Any = None
    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )


# ---------------------------------------------------------------------------
# API models
# ---------------------------------------------------------------------------


class SearchRequest(BaseModel):
    """Body of POST /search."""

    query: str = Field(..., min_length=1, max_length=4000)
    history: list[tuple[str, str]] = Field(default_factory=list)
    mode: Optional[str] = None
    stream: bool = False
    system_instructions: str = ""
    file_ids: list[str] = Field(default_factory=list)


class HealthResponse(BaseModel):
    """Response from GET /health."""

    status: str
    redis: str
    searxng: str
    embeddings: str
    uptime_seconds: float


class StatsResponse(BaseModel):
    """Response from GET /stats."""

    queries_total: int
    errors_total: int
    avg_latency_ms: float
    queries_by_strategy: dict[str, int]
    queries_by_mode: dict[str, int]
