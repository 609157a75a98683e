"""Shared domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal


class MemoryLayer(str, Enum):
    """Knowledge sources a query can be routed to."""

    SESSION = "session"
    PROJECT = "project"
    VECTOR = "vector"
    USER = "user"
    HISTORICAL = "historical"
    GENERAL = "general"


class QueryType(str, Enum):
    """Kinds of questions the classifier distinguishes."""

    PROCEDURAL = "procedural"
    FACTUAL = "factual"
    ARCHITECTURAL = "architectural"
    USER = "user"
    HISTORICAL = "historical"
    GENERAL = "general"


ExecutionStrategy = Literal["sequential", "parallel", "hybrid"]
ClassificationSource = Literal["rules", "inference", "fallback"]


@dataclass(slots=True)
class LayerItem:
    """A raw fragment returned by a memory layer."""

    content: str
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class LayerResponse:
    """Everything one layer returned for a query."""

    items: list[LayerItem] = field(default_factory=list)


@dataclass(slots=True)
class ClassificationResult:
    """Outcome of classifying one query."""

    query: str
    type: QueryType
    confidence: float
    layers: frozenset[MemoryLayer]
    weights: dict[MemoryLayer, float]
    reasoning: str
    source: ClassificationSource = "rules"


@dataclass(slots=True)
class LayerResult:
    """One layer's response within a routing call.

    Either `items` holds the layer output or `error` explains why there is
    none; a failed layer always carries an empty item list.
    """

    layer: MemoryLayer
    items: list[LayerItem]
    elapsed_ms: float
    weight: float
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(slots=True)
class RoutingStats:
    total_time_ms: float
    layers_queried: int
    cache_hit: bool = False
    failed_layers: int = 0


@dataclass(slots=True)
class RoutingResult:
    """Outcome of one routing call across the selected layers."""

    query: str
    classification: ClassificationResult
    layers: list[LayerResult]
    stats: RoutingStats


@dataclass(slots=True)
class FusedItem:
    """A ranked context fragment; `score` is the post-fusion value."""

    content: str
    score: float
    layer: MemoryLayer
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class FusionStats:
    total_items: int
    deduplicated_items: int
    final_items: int
    estimated_tokens: int
    fusion_time_ms: float = 0.0
    failed_layers: int = 0
    below_min_score: int = 0


@dataclass(slots=True)
class FusedResult:
    items: list[FusedItem]
    stats: FusionStats


@dataclass(slots=True)
class SubQuery:
    """A decomposed unit of a compound query."""

    id: str
    query: str
    dependencies: list[str] = field(default_factory=list)
    priority: int = 1


@dataclass(slots=True)
class DecompositionResult:
    is_complex: bool
    original_query: str
    sub_queries: list[SubQuery]
    strategy: ExecutionStrategy
    reasoning: str = ""
    complexity_indicators: list[str] = field(default_factory=list)


@dataclass(slots=True)
class HopResult:
    """Outcome of executing one sub-query through the single-hop pipeline."""

    sub_query_id: str
    sub_query: str
    classification: ClassificationResult
    context: list[FusedItem]
    relevance_score: float
    execution_time_ms: float
    error: str | None = None
    started_at: float = 0.0
    finished_at: float = 0.0
    wave: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(slots=True)
class MultiHopStats:
    total_hops: int
    failed_hops: int
    total_time_ms: float
    decomposition_time_ms: float
    execution_time_ms: float
    combination_time_ms: float
    results_per_hop: float
    deduplication_rate: float
    tokens_estimated: int


@dataclass(slots=True)
class CombinerStats:
    pooled_items: int
    deduplicated_items: int
    final_items: int
    deduplication_rate: float
    estimated_tokens: int


@dataclass(slots=True)
class CombinedContext:
    items: list[FusedItem]
    stats: CombinerStats


@dataclass(slots=True)
class MultiHopResult:
    """Final outcome of a decomposed query; one hop per sub-query."""

    original_query: str
    decomposition: DecompositionResult
    hops: list[HopResult]
    waves: list[list[str]]
    combined_context: list[FusedItem]
    stats: MultiHopStats


@dataclass(slots=True)
class ContextStats:
    classification_time_ms: float
    retrieval_time_ms: float
    fusion_time_ms: float
    total_time_ms: float
    tokens_estimated: int


@dataclass(slots=True)
class ContextResponse:
    """Single-hop answer of `ContextRouter.route_query`."""

    query: str
    classification: ClassificationResult
    routing: RoutingResult
    context: list[FusedItem]
    fusion_stats: FusionStats
    stats: ContextStats
