"""Wave-ordered execution of decomposed sub-queries."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Sequence
from graphlib import TopologicalSorter
from typing import Any, Protocol

from context_router.cancellation import CancellationToken
from context_router.classify.classifier import general_classification
from context_router.config import CombinerOptions, MultiHopOptions, coerce_options
from context_router.errors import HopFailure, InvalidInputError, QueryCancelledError
from context_router.fusion.scoring import term_coverage
from context_router.obs.tracing import Timer, tokenize_terms
from context_router.reasoning.combiner import ResultCombiner
from context_router.types import (
    ContextResponse,
    DecompositionResult,
    FusedItem,
    HopResult,
    MultiHopResult,
    MultiHopStats,
    SubQuery,
)

logger = logging.getLogger(__name__)


class HopPipeline(Protocol):
    """The single-hop pipeline (classify, route, fuse) run for every hop."""

    async def run_single_hop(
        self, query: str, *, token: CancellationToken
    ) -> ContextResponse: ...


def plan_waves(decomposition: DecompositionResult) -> list[list[str]]:
    """Partition sub-query ids into waves that may run concurrently.

    Every sub-query lands in a later wave than all of its dependencies.
    """

    sub_queries = decomposition.sub_queries
    has_dependencies = any(sq.dependencies for sq in sub_queries)
    if decomposition.strategy == "parallel" and not has_dependencies:
        return [[sq.id for sq in sub_queries]] if sub_queries else []
    if decomposition.strategy == "sequential":
        return [[sub_query_id] for sub_query_id in _priority_order(sub_queries)]

    position = {sq.id: index for index, sq in enumerate(sub_queries)}
    sorter = TopologicalSorter({sq.id: sq.dependencies for sq in sub_queries})
    sorter.prepare()
    waves: list[list[str]] = []
    while sorter.is_active():
        ready = sorted(sorter.get_ready(), key=position.__getitem__)
        waves.append(ready)
        sorter.done(*ready)
    return waves


def _priority_order(sub_queries: Sequence[SubQuery]) -> list[str]:
    position = {sq.id: index for index, sq in enumerate(sub_queries)}
    by_id = {sq.id: sq for sq in sub_queries}
    sorter = TopologicalSorter({sq.id: sq.dependencies for sq in sub_queries})
    sorter.prepare()
    order: list[str] = []
    ready: list[str] = []
    while sorter.is_active():
        ready.extend(sorter.get_ready())
        ready.sort(key=lambda sq_id: (-by_id[sq_id].priority, position[sq_id]))
        chosen = ready.pop(0)
        order.append(chosen)
        sorter.done(chosen)
    return order


def _check_decomposition(decomposition: DecompositionResult) -> None:
    seen: set[str] = set()
    known = {sq.id for sq in decomposition.sub_queries}
    for sq in decomposition.sub_queries:
        if sq.id in seen:
            raise InvalidInputError(f"duplicate sub-query id {sq.id!r}")
        seen.add(sq.id)
        unknown = [dep for dep in sq.dependencies if dep not in known]
        if unknown:
            raise InvalidInputError(f"sub-query {sq.id!r} depends on unknown ids {unknown}")


class MultiHopRouter:
    """Runs each sub-query through the single-hop pipeline, wave by wave.

    Waves run strictly one after another; hops inside a wave run concurrently,
    at most `max_concurrent_hops` at a time. A hop that raises, times out or
    is cancelled is recorded with an error and empty context, and its
    dependants simply receive no extra context from it.
    """

    def __init__(
        self,
        pipeline: HopPipeline,
        *,
        combiner: ResultCombiner | None = None,
        options: MultiHopOptions | None = None,
    ) -> None:
        self.pipeline = pipeline
        self.combiner = combiner or ResultCombiner()
        self.options = options or MultiHopOptions()

    async def run(
        self,
        decomposition: DecompositionResult,
        options: MultiHopOptions | None = None,
        *,
        token: CancellationToken | None = None,
        decomposition_time_ms: float = 0.0,
        combiner_options: CombinerOptions | None = None,
        **overrides: Any,
    ) -> MultiHopResult:
        opts = coerce_options(MultiHopOptions, options or self.options, overrides)
        _check_decomposition(decomposition)
        token = token or CancellationToken()

        try:
            waves = plan_waves(decomposition)
        except ValueError as exc:
            raise InvalidInputError(f"sub-query dependencies are not acyclic: {exc}") from exc

        by_id = {sq.id: sq for sq in decomposition.sub_queries}
        semaphore = asyncio.Semaphore(opts.max_concurrent_hops)
        completed: dict[str, HopResult] = {}

        with Timer() as execution:
            for wave_index, wave in enumerate(waves):
                results = await asyncio.gather(
                    *(
                        self._run_hop(by_id[sq_id], wave_index, completed, semaphore, opts, token)
                        for sq_id in wave
                    )
                )
                for hop in results:
                    completed[hop.sub_query_id] = hop

        hops = [completed[sq.id] for sq in decomposition.sub_queries]

        with Timer() as combination:
            combined = self.combiner.combine(hops, combiner_options)

        failed = sum(1 for hop in hops if not hop.ok)
        if failed:
            logger.warning(
                "%d of %d hops failed for %r", failed, len(hops), decomposition.original_query
            )
        stats = MultiHopStats(
            total_hops=len(hops),
            failed_hops=failed,
            total_time_ms=decomposition_time_ms + execution.elapsed_ms + combination.elapsed_ms,
            decomposition_time_ms=decomposition_time_ms,
            execution_time_ms=execution.elapsed_ms,
            combination_time_ms=combination.elapsed_ms,
            results_per_hop=sum(len(hop.context) for hop in hops) / len(hops) if hops else 0.0,
            deduplication_rate=combined.stats.deduplication_rate,
            tokens_estimated=combined.stats.estimated_tokens,
        )
        return MultiHopResult(
            original_query=decomposition.original_query,
            decomposition=decomposition,
            hops=hops,
            waves=waves,
            combined_context=combined.items,
            stats=stats,
        )

    async def _run_hop(
        self,
        sub_query: SubQuery,
        wave: int,
        completed: dict[str, HopResult],
        semaphore: asyncio.Semaphore,
        opts: MultiHopOptions,
        token: CancellationToken,
    ) -> HopResult:
        dependencies = [completed[dep] for dep in sub_query.dependencies if dep in completed]
        error: str | None = None
        async with semaphore:
            started_at = time.perf_counter()
            with Timer() as timer:
                try:
                    response = await self._execute(sub_query, opts, token)
                except HopFailure as exc:
                    response = None
                    error = str(exc)
                    logger.warning("Hop %s (%r) failed: %s", sub_query.id, sub_query.query, error)
            finished_at = time.perf_counter()

        if response is None:
            return HopResult(
                sub_query_id=sub_query.id,
                sub_query=sub_query.query,
                classification=general_classification(sub_query.query, f"hop failed: {error}"),
                context=[],
                relevance_score=0.0,
                execution_time_ms=timer.elapsed_ms,
                error=error,
                started_at=started_at,
                finished_at=finished_at,
                wave=wave,
            )

        return HopResult(
            sub_query_id=sub_query.id,
            sub_query=sub_query.query,
            classification=response.classification,
            context=response.context,
            relevance_score=self._relevance(sub_query, response.context, dependencies),
            execution_time_ms=timer.elapsed_ms,
            started_at=started_at,
            finished_at=finished_at,
            wave=wave,
        )

    async def _execute(
        self, sub_query: SubQuery, opts: MultiHopOptions, token: CancellationToken
    ) -> ContextResponse:
        timeout = opts.hop_timeout_seconds
        try:
            async with token.scope(timeout):
                return await self.pipeline.run_single_hop(sub_query.query, token=token)
        except asyncio.TimeoutError as exc:
            reason = "cancelled" if token.cancelled else f"timeout after {timeout}s"
            raise HopFailure(reason) from exc
        except QueryCancelledError as exc:
            raise HopFailure("cancelled") from exc
        except Exception as exc:
            raise HopFailure(f"{type(exc).__name__}: {exc}") from exc

    @staticmethod
    def _relevance(
        sub_query: SubQuery, context: list[FusedItem], dependencies: list[HopResult]
    ) -> float:
        """Share of the hop's terms covered by its own and its dependencies' context."""
        if not context:
            return 0.0
        extra_terms = [term for dep in dependencies for term in tokenize_terms(dep.sub_query)]
        texts = [item.content for item in context]
        texts.extend(item.content for dep in dependencies for item in dep.context)
        return term_coverage(sub_query.query, texts, extra_terms=extra_terms)
