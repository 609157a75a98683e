import pytest

from context_router.layers.base import LayerQueryOptions, MemoryLayerSource
from context_router.layers.in_memory import (
    HashingEmbedder,
    InMemoryLayer,
    StoredFragment,
    VectorLayer,
    cosine_similarity,
)


def test_hashing_embedder_is_deterministic_and_normalized() -> None:
    embedder = HashingEmbedder(dimension=64)

    first = embedder.embed("refresh token rotation")
    second = embedder.embed("refresh token rotation")

    assert first == second
    assert len(first) == 64
    assert cosine_similarity(first, second) == pytest.approx(1.0)
    assert embedder.embed("") == [0.0] * 64


@pytest.mark.asyncio
async def test_in_memory_layer_scores_by_term_overlap() -> None:
    layer = InMemoryLayer(
        [
            "Session tokens are stored in redis",
            StoredFragment(content="Redis cluster runs three nodes", metadata={"team": "infra"}),
            "Unrelated note about lunch",
        ]
    )

    response = await layer.query("redis session tokens", LayerQueryOptions(limit=5))

    assert isinstance(layer, MemoryLayerSource)
    assert [item.content for item in response.items] == [
        "Session tokens are stored in redis",
        "Redis cluster runs three nodes",
    ]
    assert response.items[0].score == pytest.approx(1.0)
    assert all(0.0 <= item.score <= 1.0 for item in response.items)

    filtered = await layer.query(
        "redis", LayerQueryOptions(metadata_filter={"team": "infra"})
    )
    assert [item.content for item in filtered.items] == ["Redis cluster runs three nodes"]


@pytest.mark.asyncio
async def test_vector_layer_ranks_closest_fragment_first() -> None:
    layer = VectorLayer()
    layer.upsert(
        ["JWT signature verification with RS256", "Sidebar colour palette"],
        [{"source": "docs"}, {"source": "design"}],
    )

    response = await layer.query("JWT signature verification", LayerQueryOptions(limit=1))

    assert len(response.items) == 1
    assert response.items[0].content == "JWT signature verification with RS256"
    assert response.items[0].metadata == {"source": "docs"}

    with pytest.raises(ValueError):
        layer.upsert(["a", "b"], [{}])
