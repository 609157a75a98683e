"""Timers, token estimates and aggregate query statistics."""

from __future__ import annotations

import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone

_TOKEN_PATTERN = re.compile(r"\w+|[^\w\s]", flags=re.UNICODE)


@dataclass(slots=True)
class QueryRecord:
    timestamp_utc: str
    query: str
    multi_hop: bool
    classification_time_ms: float
    retrieval_time_ms: float
    fusion_time_ms: float
    total_time_ms: float
    tokens_estimated: int
    failed_units: int
    cache_hit: bool


class QueryStatsTracker:
    """In-memory record of processed queries for monitoring.

    Records are kept in a bounded window; the oldest are discarded first.
    """

    def __init__(self, *, max_records: int = 1000) -> None:
        self._records: list[QueryRecord] = []
        self._max_records = max_records

    def record(
        self,
        *,
        query: str,
        multi_hop: bool,
        classification_time_ms: float,
        retrieval_time_ms: float,
        fusion_time_ms: float,
        total_time_ms: float,
        tokens_estimated: int,
        failed_units: int = 0,
        cache_hit: bool = False,
    ) -> QueryRecord:
        record = QueryRecord(
            timestamp_utc=datetime.now(timezone.utc).isoformat(),
            query=query,
            multi_hop=multi_hop,
            classification_time_ms=classification_time_ms,
            retrieval_time_ms=retrieval_time_ms,
            fusion_time_ms=fusion_time_ms,
            total_time_ms=total_time_ms,
            tokens_estimated=tokens_estimated,
            failed_units=failed_units,
            cache_hit=cache_hit,
        )
        self._records.append(record)
        if len(self._records) > self._max_records:
            del self._records[: len(self._records) - self._max_records]
        return record

    def list_recent(self, limit: int = 20) -> list[QueryRecord]:
        return self._records[-limit:]

    def summary(self) -> dict[str, float | int]:
        """Aggregate timing metrics across recorded queries."""
        records = list(self._records)
        total = len(records)
        if total == 0:
            return {
                "total_queries": 0,
                "multi_hop_queries": 0,
                "cache_hits": 0,
                "avg_classification_time_ms": 0.0,
                "avg_retrieval_time_ms": 0.0,
                "avg_fusion_time_ms": 0.0,
                "avg_total_time_ms": 0.0,
                "p95_total_time_ms": 0.0,
                "total_failed_units": 0,
            }

        latencies = sorted(record.total_time_ms for record in records)
        p95_index = max(0, int((len(latencies) * 0.95) - 1))

        return {
            "total_queries": total,
            "multi_hop_queries": sum(1 for record in records if record.multi_hop),
            "cache_hits": sum(1 for record in records if record.cache_hit),
            "avg_classification_time_ms": sum(r.classification_time_ms for r in records) / total,
            "avg_retrieval_time_ms": sum(r.retrieval_time_ms for r in records) / total,
            "avg_fusion_time_ms": sum(r.fusion_time_ms for r in records) / total,
            "avg_total_time_ms": sum(latencies) / total,
            "p95_total_time_ms": latencies[p95_index],
            "total_failed_units": sum(record.failed_units for record in records),
        }


class Timer:
    """Simple context timer used by every stage."""

    def __init__(self) -> None:
        self._start = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000.0


def estimate_token_count(text: str) -> int:
    return len(_TOKEN_PATTERN.findall(text))


def tokenize_terms(text: str, *, min_length: int = 3) -> list[str]:
    """Lowercased word terms used for similarity and overlap measures."""
    return [
        token.lower()
        for token in re.findall(r"\w+", text, flags=re.UNICODE)
        if len(token) >= min_length
    ]
