"""In-process memory layers used for tests, demos and local prototyping."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from hashlib import blake2b
from math import sqrt
from typing import Any, Protocol

from context_router.layers.base import LayerQueryOptions
from context_router.obs.tracing import tokenize_terms
from context_router.types import LayerItem, LayerResponse


class Embedder(Protocol):
    def embed(self, text: str) -> list[float]:
        """Embed one text."""


class HashingEmbedder:
    """Deterministic feature-hashing embedding without external model calls.

    Production deployments plug a real embedding provider into `VectorLayer`
    instead; this one keeps tests reproducible.
    """

    def __init__(self, dimension: int = 256) -> None:
        self.dimension = dimension

    def embed(self, text: str) -> list[float]:
        vector = [0.0] * self.dimension
        for term in tokenize_terms(text, min_length=1):
            digest = blake2b(term.encode("utf-8"), digest_size=8).digest()
            idx = int.from_bytes(digest[:4], "little") % self.dimension
            vector[idx] += -1.0 if digest[4] % 2 else 1.0

        norm = sqrt(sum(value * value for value in vector))
        if norm == 0:
            return vector
        return [value / norm for value in vector]


@dataclass(slots=True)
class StoredFragment:
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)
    embedding: list[float] = field(default_factory=list)


class InMemoryLayer:
    """Lexical-overlap layer over a fixed list of fragments.

    The score of a fragment is the fraction of query terms it contains, so
    results are in [0, 1] and fully deterministic.
    """

    def __init__(
        self,
        fragments: list[str | StoredFragment] | None = None,
        *,
        latency_seconds: float = 0.0,
    ) -> None:
        self._fragments: list[StoredFragment] = []
        self._latency = latency_seconds
        for fragment in fragments or []:
            self.add(fragment)

    def add(self, fragment: str | StoredFragment) -> None:
        if isinstance(fragment, str):
            fragment = StoredFragment(content=fragment)
        self._fragments.append(fragment)

    def __len__(self) -> int:
        return len(self._fragments)

    async def query(self, text: str, options: LayerQueryOptions) -> LayerResponse:
        if self._latency:
            await asyncio.sleep(self._latency)

        query_terms = set(tokenize_terms(text))
        scored: list[LayerItem] = []
        for fragment in self._fragments:
            if not _metadata_match(fragment.metadata, options.metadata_filter):
                continue
            overlap = len(query_terms & set(tokenize_terms(fragment.content)))
            if overlap == 0:
                continue
            scored.append(
                LayerItem(
                    content=fragment.content,
                    score=overlap / max(1, len(query_terms)),
                    metadata=dict(fragment.metadata),
                )
            )

        scored.sort(key=lambda item: item.score, reverse=True)
        return LayerResponse(items=scored[: options.limit])


class VectorLayer:
    """Semantic layer ranking fragments by embedding cosine similarity."""

    def __init__(
        self,
        embedder: Embedder | None = None,
        *,
        min_similarity: float = 0.0,
    ) -> None:
        self._embedder = embedder or HashingEmbedder()
        self._min_similarity = min_similarity
        self._fragments: list[StoredFragment] = []

    def upsert(self, texts: list[str], metadata: list[dict[str, Any]] | None = None) -> None:
        metadata = metadata or [{} for _ in texts]
        if len(metadata) != len(texts):
            raise ValueError("texts and metadata must have the same length")
        for text, meta in zip(texts, metadata, strict=True):
            self._fragments.append(
                StoredFragment(content=text, metadata=meta, embedding=self._embedder.embed(text))
            )

    async def query(self, text: str, options: LayerQueryOptions) -> LayerResponse:
        query_embedding = self._embedder.embed(text)
        ranked = sorted(
            (
                LayerItem(
                    content=fragment.content,
                    score=cosine_similarity(query_embedding, fragment.embedding),
                    metadata=dict(fragment.metadata),
                )
                for fragment in self._fragments
                if _metadata_match(fragment.metadata, options.metadata_filter)
            ),
            key=lambda item: item.score,
            reverse=True,
        )
        return LayerResponse(
            items=[item for item in ranked[: options.limit] if item.score > self._min_similarity]
        )


def cosine_similarity(a: list[float], b: list[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    numerator = sum(x * y for x, y in zip(a, b, strict=True))
    norm_a = sqrt(sum(x * x for x in a))
    norm_b = sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return numerator / (norm_a * norm_b)


def _metadata_match(metadata: dict[str, Any], metadata_filter: dict[str, Any] | None) -> bool:
    if not metadata_filter:
        return True
    return all(metadata.get(key) == value for key, value in metadata_filter.items())
