"""Concurrent fan-out of one query to the classified memory layers."""

from __future__ import annotations

import asyncio
import copy
import logging
import math
from collections.abc import Mapping
from dataclasses import replace
from typing import Any

from context_router.cancellation import CancellationToken
from context_router.config import RouterConfig
from context_router.errors import LayerFailure, LayerNotRegisteredError
from context_router.layers.base import LayerQueryOptions, MemoryLayerSource
from context_router.obs.tracing import Timer
from context_router.routing.cache import RoutingCache
from context_router.types import (
    ClassificationResult,
    LayerItem,
    LayerResponse,
    LayerResult,
    MemoryLayer,
    RoutingResult,
    RoutingStats,
)

logger = logging.getLogger(__name__)

_LAYER_ORDER = list(MemoryLayer)


class MemoryRouter:
    """Queries every selected layer concurrently and isolates failures.

    Each layer call runs under its own timeout and error boundary, so one slow
    or broken layer only produces an error entry in its `LayerResult`. The
    result always contains exactly one entry per selected layer.
    """

    def __init__(
        self,
        layers: Mapping[MemoryLayer, MemoryLayerSource],
        *,
        config: RouterConfig | None = None,
        cache: RoutingCache | None = None,
    ) -> None:
        self.layers = dict(layers)
        self.config = config or RouterConfig()
        if cache is None and self.config.cache_enabled:
            cache = RoutingCache(
                max_size=self.config.cache_max_size,
                ttl_seconds=self.config.cache_ttl_seconds,
            )
        self.cache = cache if self.config.cache_enabled else None

    async def route(
        self,
        query: str,
        classification: ClassificationResult,
        *,
        token: CancellationToken | None = None,
    ) -> RoutingResult:
        token = token or CancellationToken()

        if self.cache is not None:
            cached = self.cache.get(query, classification.type, classification.layers)
            if cached is not None:
                logger.debug("Routing cache hit for %r", query)
                return _from_cache(cached, query, classification)

        selected = sorted(classification.layers, key=_LAYER_ORDER.index)
        with Timer() as timer:
            layer_results = await asyncio.gather(
                *(
                    self._query_layer(
                        layer, query, classification.weights.get(layer, 0.0), token
                    )
                    for layer in selected
                )
            )

        failed = sum(1 for result in layer_results if not result.ok)
        if selected and failed == len(selected):
            logger.warning("All %d layers failed for %r", failed, query)

        result = RoutingResult(
            query=query,
            classification=classification,
            layers=list(layer_results),
            stats=RoutingStats(
                total_time_ms=timer.elapsed_ms,
                layers_queried=len(selected),
                cache_hit=False,
                failed_layers=failed,
            ),
        )

        if self.cache is not None and failed == 0:
            self.cache.put_if_absent(
                query, classification.type, copy.deepcopy(result), classification.layers
            )
        return result

    async def _query_layer(
        self,
        layer: MemoryLayer,
        query: str,
        weight: float,
        token: CancellationToken,
    ) -> LayerResult:
        items: list[LayerItem] = []
        error: str | None = None
        timeout = self.config.layer_timeout_seconds

        with Timer() as timer:
            try:
                source = self.layers.get(layer)
                if source is None:
                    raise LayerNotRegisteredError(f"no source registered for layer '{layer.value}'")
                options = LayerQueryOptions(limit=self.config.layer_limit, timeout_seconds=timeout)
                async with token.scope(timeout):
                    response = await source.query(query, options)
                items = coerce_layer_items(response)
            except asyncio.TimeoutError:
                error = "cancelled" if token.cancelled else f"timeout after {timeout}s"
            except Exception as exc:
                error = f"{type(exc).__name__}: {exc}"

        if error is not None:
            logger.warning("Layer %s failed for %r: %s", layer.value, query, error)
            items = []
        return LayerResult(
            layer=layer,
            items=items,
            elapsed_ms=timer.elapsed_ms,
            weight=weight,
            error=error,
        )

    def clear_cache(self) -> None:
        if self.cache is not None:
            self.cache.clear()

    def cache_size(self) -> int:
        return len(self.cache) if self.cache is not None else 0


def _from_cache(
    cached: RoutingResult, query: str, classification: ClassificationResult
) -> RoutingResult:
    layers = copy.deepcopy(cached.layers)
    for layer_result in layers:
        layer_result.weight = classification.weights.get(layer_result.layer, 0.0)
    return RoutingResult(
        query=query,
        classification=classification,
        layers=layers,
        stats=replace(cached.stats, cache_hit=True),
    )


def coerce_layer_items(response: Any) -> list[LayerItem]:
    """Accept a `LayerResponse`, a `{"items": [...]}` mapping or a plain list.

    Items may be `LayerItem`s or `{content, score, metadata}` mappings; any
    other shape is a `LayerFailure`.
    """

    if isinstance(response, LayerResponse):
        raw_items: Any = response.items
    elif isinstance(response, Mapping):
        raw_items = response.get("items")
    else:
        raw_items = response
    if not isinstance(raw_items, list):
        raise LayerFailure(f"malformed layer response: {type(response).__name__}")

    items: list[LayerItem] = []
    for raw in raw_items:
        if isinstance(raw, LayerItem):
            item = raw
        elif isinstance(raw, Mapping) and isinstance(raw.get("content"), str):
            item = LayerItem(
                content=raw["content"],
                score=float(raw.get("score", 0.0)),
                metadata=dict(raw.get("metadata") or {}),
            )
        else:
            raise LayerFailure(f"malformed layer item: {raw!r:.80}")
        if not math.isfinite(item.score):
            raise LayerFailure(f"non-finite score in layer item: {item.content[:40]!r}")
        items.append(item)
    return items
