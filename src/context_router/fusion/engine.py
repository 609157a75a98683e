"""Cross-layer fusion: normalize, re-weight, deduplicate, budget."""

from __future__ import annotations

import logging
import math
import time
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from context_router.config import FusionOptions, coerce_options
from context_router.errors import InvalidInputError
from context_router.fusion.dedup import SemanticDeduplicator
from context_router.fusion.scoring import normalize_scores, recency_score
from context_router.obs.tracing import Timer, estimate_token_count
from context_router.types import (
    FusedItem,
    FusedResult,
    FusionStats,
    LayerResult,
    MemoryLayer,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Candidate:
    """A fragment competing for a place in the fused context.

    `group` is the unit diversity is measured over: the source layer within
    one routing call, the hop when combining a multi-hop run.
    """

    content: str
    base_score: float
    layer: MemoryLayer
    group: str
    metadata: dict[str, Any] = field(default_factory=dict)
    score: float = 0.0


@dataclass(slots=True)
class RankOutcome:
    items: list[FusedItem]
    above_min_score: int
    below_min_score: int
    deduplicated: int
    estimated_tokens: int


def rank_candidates(
    candidates: Sequence[Candidate],
    *,
    max_tokens: int,
    min_score: float,
    diversity_weight: float,
    deduplication_threshold: float,
    max_results: int | None = None,
) -> RankOutcome:
    """Re-weight, filter, deduplicate, sort and budget `candidates`.

    The diversity bonus is `diversity_weight * (1 - share)` where `share` is
    the fraction of already-accepted candidates from the same group; the
    candidates are visited by descending base score so the bonus shrinks as a
    group accumulates accepted items.
    """

    accepted: list[Candidate] = []
    per_group: Counter[str] = Counter()
    below = 0
    for candidate in sorted(candidates, key=lambda c: c.base_score, reverse=True):
        share = per_group[candidate.group] / len(accepted) if accepted else 0.0
        candidate.score = min(1.0, candidate.base_score + diversity_weight * (1.0 - share))
        if candidate.score < min_score:
            below += 1
            continue
        accepted.append(candidate)
        per_group[candidate.group] += 1

    unique = SemanticDeduplicator(deduplication_threshold).deduplicate(accepted)
    unique.sort(key=lambda c: c.score, reverse=True)

    items: list[FusedItem] = []
    tokens = 0
    for candidate in unique:
        if max_results is not None and len(items) >= max_results:
            break
        cost = estimate_token_count(candidate.content)
        if tokens + cost > max_tokens:
            break
        items.append(
            FusedItem(
                content=candidate.content,
                score=candidate.score,
                layer=candidate.layer,
                metadata=candidate.metadata,
            )
        )
        tokens += cost

    return RankOutcome(
        items=items,
        above_min_score=len(accepted),
        below_min_score=below,
        deduplicated=len(unique),
        estimated_tokens=tokens,
    )


class FusionEngine:
    """Fuses the layer results of one routing call into ranked context.

    Fusion is pure: the same layer results and options always produce the
    same items in the same order. Layers that reported an error are skipped
    and counted in `FusionStats.failed_layers`. A non-zero `recency_weight`
    blends in the age of `metadata["timestamp"]`; pin `reference_time` to
    keep such runs reproducible.
    """

    def __init__(self, defaults: FusionOptions | None = None) -> None:
        self.defaults = defaults or FusionOptions()

    def fuse(
        self,
        layer_results: Sequence[LayerResult],
        options: FusionOptions | None = None,
        **overrides: Any,
    ) -> FusedResult:
        opts = coerce_options(FusionOptions, options or self.defaults, overrides)

        now = opts.reference_time if opts.reference_time is not None else time.time()
        recency_weight = opts.recency_weight

        with Timer() as timer:
            candidates: list[Candidate] = []
            failed = 0
            for result in layer_results:
                if not isinstance(result, LayerResult):
                    raise InvalidInputError(f"expected LayerResult, got {type(result).__name__}")
                if not result.ok:
                    failed += 1
                    continue
                if not math.isfinite(result.weight) or result.weight < 0:
                    raise InvalidInputError(
                        f"layer {result.layer.value} has invalid weight {result.weight}"
                    )
                raw_scores = [item.score for item in result.items]
                if not all(math.isfinite(score) for score in raw_scores):
                    raise InvalidInputError(f"layer {result.layer.value} reported a non-finite score")

                normalized = normalize_scores(raw_scores, opts.normalization)
                for item, score in zip(result.items, normalized, strict=True):
                    if recency_weight:
                        recency = recency_score(
                            item.metadata.get("timestamp"),
                            now=now,
                            window_seconds=opts.recency_window_seconds,
                        )
                        score = (1.0 - recency_weight) * score + recency_weight * recency
                    candidates.append(
                        Candidate(
                            content=item.content,
                            base_score=score * result.weight,
                            layer=result.layer,
                            group=result.layer.value,
                            metadata=dict(item.metadata),
                        )
                    )

            outcome = rank_candidates(
                candidates,
                max_tokens=opts.max_tokens,
                min_score=opts.min_score,
                diversity_weight=opts.diversity_weight,
                deduplication_threshold=opts.deduplication_threshold,
            )

        stats = FusionStats(
            total_items=len(candidates),
            deduplicated_items=outcome.deduplicated,
            final_items=len(outcome.items),
            estimated_tokens=outcome.estimated_tokens,
            fusion_time_ms=timer.elapsed_ms,
            failed_layers=failed,
            below_min_score=outcome.below_min_score,
        )
        logger.debug(
            "Fused %d -> %d items (%d tokens)",
            stats.total_items,
            stats.final_items,
            stats.estimated_tokens,
        )
        return FusedResult(items=outcome.items, stats=stats)
