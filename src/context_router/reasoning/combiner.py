"""Merges the fused context of several hops into one narrative."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from context_router.config import CombinerOptions, coerce_options
from context_router.fusion.engine import Candidate, rank_candidates
from context_router.types import CombinedContext, CombinerStats, FusedItem, HopResult

logger = logging.getLogger(__name__)


def is_separator(item: FusedItem) -> bool:
    return item.metadata.get("type") == "separator"


class ResultCombiner:
    """Pools hop contexts, ranks them jointly and regroups them by hop.

    Ranking reuses the fusion pipeline with the hop as diversity group, so a
    single hop cannot crowd out the others and duplicates found by two hops
    are kept once, under the higher score. The output lists hops in their
    original order; separators carry no tokens and do not count towards
    `max_results`.
    """

    def __init__(self, options: CombinerOptions | None = None) -> None:
        self.options = options or CombinerOptions()

    def combine(
        self,
        hops: Sequence[HopResult],
        options: CombinerOptions | None = None,
        **overrides: Any,
    ) -> CombinedContext:
        opts = coerce_options(CombinerOptions, options or self.options, overrides)

        hop_order = {hop.sub_query_id: index for index, hop in enumerate(hops)}
        candidates: list[Candidate] = []
        for hop in hops:
            for item in hop.context:
                if is_separator(item):
                    continue
                metadata = dict(item.metadata)
                metadata["hop_id"] = hop.sub_query_id
                metadata["sub_query"] = hop.sub_query
                candidates.append(
                    Candidate(
                        content=item.content,
                        base_score=min(1.0, max(0.0, item.score)),
                        layer=item.layer,
                        group=hop.sub_query_id,
                        metadata=metadata,
                    )
                )

        outcome = rank_candidates(
            candidates,
            max_tokens=opts.max_tokens,
            min_score=opts.min_score,
            diversity_weight=opts.diversity_weight,
            deduplication_threshold=opts.deduplication_threshold,
            max_results=opts.max_results,
        )

        # Stable sort keeps score order within each hop.
        ranked = sorted(outcome.items, key=lambda item: hop_order[item.metadata["hop_id"]])
        contributing = list(dict.fromkeys(item.metadata["hop_id"] for item in ranked))

        items: list[FusedItem] = []
        by_id = {hop.sub_query_id: hop for hop in hops}
        for item in ranked:
            hop_id = item.metadata["hop_id"]
            starts_group = not items or items[-1].metadata.get("hop_id") != hop_id
            if opts.include_separators and len(contributing) > 1 and starts_group:
                hop = by_id[hop_id]
                items.append(
                    FusedItem(
                        content=f"--- Hop {hop_id}: {hop.sub_query} ---",
                        score=0.0,
                        layer=item.layer,
                        metadata={"type": "separator", "hop_id": hop_id},
                    )
                )
            items.append(item)

        pooled = len(candidates)
        removed = pooled - outcome.deduplicated - outcome.below_min_score
        stats = CombinerStats(
            pooled_items=pooled,
            deduplicated_items=outcome.deduplicated,
            final_items=len(ranked),
            deduplication_rate=removed / pooled if pooled else 0.0,
            estimated_tokens=outcome.estimated_tokens,
        )
        logger.debug(
            "Combined %d hops: %d pooled -> %d items", len(hops), pooled, stats.final_items
        )
        return CombinedContext(items=items, stats=stats)
