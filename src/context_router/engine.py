"""Query routing entry point wiring every stage together."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any

from context_router.cancellation import CancellationToken
from context_router.classify.classifier import (
    Classifier,
    ClassifierChain,
    InferenceClassifier,
)
from context_router.config import (
    CombinerOptions,
    ContextRouterConfig,
    DecomposerOptions,
    FusionOptions,
    MultiHopOptions,
    coerce_options,
)
from context_router.errors import InvalidInputError, QueryCancelledError
from context_router.fusion.engine import FusionEngine
from context_router.inference import InferenceClient
from context_router.layers.base import MemoryLayerSource
from context_router.obs.tracing import QueryStatsTracker, Timer
from context_router.reasoning.combiner import ResultCombiner
from context_router.reasoning.decomposer import QueryDecomposer
from context_router.reasoning.multi_hop import MultiHopRouter
from context_router.routing.cache import RoutingCache
from context_router.routing.router import MemoryRouter
from context_router.types import (
    ClassificationResult,
    CombinedContext,
    ContextResponse,
    ContextStats,
    DecompositionResult,
    FusedResult,
    HopResult,
    LayerResult,
    MemoryLayer,
    MultiHopResult,
    RoutingResult,
)

logger = logging.getLogger(__name__)


class ContextRouter:
    """Classifies, routes, fuses and, for compound queries, decomposes.

    `route_query` is the primary entry point. Every stage is also exposed on
    its own so callers can drive the pipeline step by step.
    """

    def __init__(
        self,
        layers: Mapping[MemoryLayer, MemoryLayerSource],
        *,
        config: ContextRouterConfig | None = None,
        classifier: Classifier | None = None,
        inference_client: InferenceClient | None = None,
        cache: RoutingCache | None = None,
        stats_tracker: QueryStatsTracker | None = None,
    ) -> None:
        self.config = config or ContextRouterConfig()
        self.inference_client = inference_client

        if classifier is None:
            inference = (
                InferenceClassifier(inference_client, self.config.classifier)
                if inference_client is not None
                else None
            )
            classifier = ClassifierChain(inference=inference, config=self.config.classifier)
        self.classifier = classifier

        self.router = MemoryRouter(layers, config=self.config.router, cache=cache)
        self.fusion = FusionEngine(self.config.fusion)
        self.decomposer = QueryDecomposer(
            self.config.decomposer, inference_client=inference_client
        )
        self.combiner = ResultCombiner(self.config.combiner)
        self.multi_hop = MultiHopRouter(
            self, combiner=self.combiner, options=self.config.multi_hop
        )
        self.stats_tracker = stats_tracker or QueryStatsTracker()

        logger.info(
            "Context router ready: %d layers, inference=%s, cache=%s",
            len(self.router.layers),
            inference_client is not None,
            self.router.cache is not None,
        )

    async def classify(
        self, query: str, *, token: CancellationToken | None = None
    ) -> ClassificationResult:
        return await self.classifier.classify(_require_query(query), token=token)

    async def route(
        self,
        query: str,
        classification: ClassificationResult | None = None,
        *,
        token: CancellationToken | None = None,
    ) -> RoutingResult:
        query = _require_query(query)
        if classification is None:
            classification = await self.classify(query, token=token)
        return await self.router.route(query, classification, token=token)

    def fuse(
        self,
        layer_results: Sequence[LayerResult],
        options: FusionOptions | None = None,
        **overrides: Any,
    ) -> FusedResult:
        return self.fusion.fuse(layer_results, options, **overrides)

    async def decompose(
        self,
        query: str,
        options: DecomposerOptions | None = None,
        *,
        token: CancellationToken | None = None,
    ) -> DecompositionResult:
        return await self.decomposer.decompose(query, options, token=token)

    async def run_multi_hop(
        self,
        decomposition: DecompositionResult,
        options: MultiHopOptions | None = None,
        *,
        token: CancellationToken | None = None,
    ) -> MultiHopResult:
        return await self.multi_hop.run(decomposition, options, token=token)

    def combine(
        self,
        hops: Sequence[HopResult],
        options: CombinerOptions | None = None,
        **overrides: Any,
    ) -> CombinedContext:
        return self.combiner.combine(hops, options, **overrides)

    async def run_single_hop(
        self,
        query: str,
        *,
        token: CancellationToken,
        fusion_options: FusionOptions | None = None,
    ) -> ContextResponse:
        """Classify, route and fuse one query."""

        with Timer() as total:
            if token.cancelled:
                raise QueryCancelledError(f"query cancelled before classification: {query!r}")
            with Timer() as classify_timer:
                classification = await self.classifier.classify(query, token=token)
            if classification.source == "fallback" and token.cancelled:
                raise QueryCancelledError(f"query cancelled during classification: {query!r}")

            routing = await self.router.route(query, classification, token=token)
            fused = self.fusion.fuse(routing.layers, fusion_options)

        return ContextResponse(
            query=query,
            classification=classification,
            routing=routing,
            context=fused.items,
            fusion_stats=fused.stats,
            stats=ContextStats(
                classification_time_ms=classify_timer.elapsed_ms,
                retrieval_time_ms=routing.stats.total_time_ms,
                fusion_time_ms=fused.stats.fusion_time_ms,
                total_time_ms=total.elapsed_ms,
                tokens_estimated=fused.stats.estimated_tokens,
            ),
        )

    async def route_query(
        self,
        query: str,
        *,
        max_tokens: int | None = None,
        timeout: float | None = None,
        token: CancellationToken | None = None,
    ) -> ContextResponse | MultiHopResult:
        """Answer `query` with fused context from the relevant memory layers.

        Compound queries are decomposed and executed hop by hop, returning a
        `MultiHopResult`; everything else returns a single `ContextResponse`.
        Only invalid input and cancellation before classification raise.
        """

        query = _require_query(query)
        if timeout is not None and timeout <= 0:
            raise InvalidInputError(f"timeout must be positive, got {timeout}")
        if token is not None and timeout is not None:
            raise InvalidInputError("pass either a cancellation token or a timeout, not both")
        fusion_options = coerce_options(
            FusionOptions, self.config.fusion, {"max_tokens": max_tokens}
        )
        combiner_options = coerce_options(
            CombinerOptions, self.config.combiner, {"max_tokens": max_tokens}
        )
        token = token or CancellationToken.with_timeout(timeout)

        with Timer() as decompose_timer:
            decomposition = await self.decomposer.decompose(query, token=token)
        if token.cancelled:
            raise QueryCancelledError(f"query cancelled before classification: {query!r}")

        if not decomposition.is_complex:
            response = await self.run_single_hop(
                query, token=token, fusion_options=fusion_options
            )
            self.stats_tracker.record(
                query=query,
                multi_hop=False,
                classification_time_ms=response.stats.classification_time_ms,
                retrieval_time_ms=response.stats.retrieval_time_ms,
                fusion_time_ms=response.stats.fusion_time_ms,
                total_time_ms=decompose_timer.elapsed_ms + response.stats.total_time_ms,
                tokens_estimated=response.stats.tokens_estimated,
                failed_units=response.routing.stats.failed_layers,
                cache_hit=response.routing.stats.cache_hit,
            )
            return response

        logger.debug(
            "Routing %r as %d hops (%s)",
            query,
            len(decomposition.sub_queries),
            decomposition.strategy,
        )
        result = await self.multi_hop.run(
            decomposition,
            token=token,
            decomposition_time_ms=decompose_timer.elapsed_ms,
            combiner_options=combiner_options,
        )
        self.stats_tracker.record(
            query=query,
            multi_hop=True,
            classification_time_ms=decompose_timer.elapsed_ms,
            retrieval_time_ms=result.stats.execution_time_ms,
            fusion_time_ms=result.stats.combination_time_ms,
            total_time_ms=result.stats.total_time_ms,
            tokens_estimated=result.stats.tokens_estimated,
            failed_units=result.stats.failed_hops,
        )
        return result

    def stats(self) -> dict[str, Any]:
        """Aggregate timings across processed queries plus cache state."""
        summary: dict[str, Any] = dict(self.stats_tracker.summary())
        summary["cache"] = (
            self.router.cache.stats() if self.router.cache is not None else {"size": 0}
        )
        if self.inference_client is not None:
            summary["rate_limiter"] = self.inference_client.rate_limiter.stats()
        return summary

    def clear_cache(self) -> None:
        self.router.clear_cache()


def _require_query(query: Any) -> str:
    if not isinstance(query, str) or not query.strip():
        raise InvalidInputError("query must be a non-empty string")
    return query.strip()
