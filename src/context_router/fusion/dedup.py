"""Similarity-based deduplication of scored fragments."""

from __future__ import annotations

from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol, TypeVar

from context_router.fusion.scoring import cosine, term_vector


class Scored(Protocol):
    content: str
    score: float


ScoredT = TypeVar("ScoredT", bound=Scored)


@dataclass(slots=True)
class DedupStats:
    original_count: int
    deduplicated_count: int
    removed_count: int
    deduplication_rate: float


class SemanticDeduplicator:
    """Collapses near-duplicate fragments onto their best-scoring member.

    Two fragments are duplicates when the cosine similarity of their term
    frequencies reaches `threshold`. Items are visited from the highest score
    down and kept only if they are not a duplicate of anything already kept,
    so no two kept items are ever that similar.
    """

    def __init__(self, threshold: float = 0.85) -> None:
        self.threshold = threshold

    def deduplicate(self, items: Sequence[ScoredT]) -> list[ScoredT]:
        ordered = sorted(items, key=lambda item: item.score, reverse=True)
        kept: list[ScoredT] = []
        kept_vectors: list[Counter[str]] = []
        for item in ordered:
            vector = term_vector(item.content)
            if vector and any(cosine(vector, other) >= self.threshold for other in kept_vectors):
                continue
            kept.append(item)
            kept_vectors.append(vector)
        return kept

    def find_duplicate_groups(self, items: Sequence[ScoredT]) -> list[list[ScoredT]]:
        """Group items with their duplicates, for debugging and analysis."""
        vectors = [term_vector(item.content) for item in items]
        processed: set[int] = set()
        groups: list[list[ScoredT]] = []
        for i, item in enumerate(items):
            if i in processed or not vectors[i]:
                continue
            processed.add(i)
            group = [item]
            for j in range(i + 1, len(items)):
                if j in processed or not vectors[j]:
                    continue
                if cosine(vectors[i], vectors[j]) >= self.threshold:
                    group.append(items[j])
                    processed.add(j)
            if len(group) > 1:
                groups.append(group)
        return groups

    @staticmethod
    def stats(original: Sequence[Scored], deduplicated: Sequence[Scored]) -> DedupStats:
        removed = len(original) - len(deduplicated)
        return DedupStats(
            original_count=len(original),
            deduplicated_count=len(deduplicated),
            removed_count=removed,
            deduplication_rate=removed / len(original) if original else 0.0,
        )
