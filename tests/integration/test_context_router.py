import pytest

from context_router import CancellationToken, ContextResponse, ContextRouter, MultiHopResult
from context_router.errors import InvalidInputError, QueryCancelledError
from context_router.layers.in_memory import InMemoryLayer, VectorLayer
from context_router.obs.tracing import estimate_token_count
from context_router.types import MemoryLayer, QueryType


def _layers(latency: float = 0.0) -> dict[MemoryLayer, object]:
    vector = VectorLayer()
    vector.upsert(
        [
            "What is JWT? JWT is a compact signed token format",
            "bcrypt hashes passwords adaptively",
        ]
    )
    return {
        MemoryLayer.SESSION: InMemoryLayer(
            ["Currently working on authentication refresh tokens"], latency_seconds=latency
        ),
        MemoryLayer.PROJECT: InMemoryLayer(
            ["auth dependencies: jwt, bcrypt, redis", "authentication module lives in src/auth"],
            latency_seconds=latency,
        ),
        MemoryLayer.VECTOR: vector,
        MemoryLayer.USER: InMemoryLayer(["I prefer FastAPI for services"]),
        MemoryLayer.HISTORICAL: InMemoryLayer(["We chose JWT over server sessions in 2023"]),
        MemoryLayer.GENERAL: InMemoryLayer(),
    }


@pytest.mark.asyncio
async def test_simple_query_returns_single_hop_response() -> None:
    router = ContextRouter(_layers())

    response = await router.route_query("what is JWT?")

    assert isinstance(response, ContextResponse)
    assert response.classification.type is QueryType.FACTUAL
    assert [r.layer for r in response.routing.layers] == [MemoryLayer.VECTOR]
    assert response.context
    assert response.context[0].content.startswith("What is JWT?")
    assert response.stats.total_time_ms >= response.stats.fusion_time_ms


@pytest.mark.asyncio
async def test_procedural_query_fuses_session_and_project_context() -> None:
    router = ContextRouter(_layers())

    response = await router.route_query("Continue working on authentication")

    assert isinstance(response, ContextResponse)
    assert response.classification.type is QueryType.PROCEDURAL
    assert {r.layer for r in response.routing.layers} == {MemoryLayer.SESSION, MemoryLayer.PROJECT}
    assert {item.layer for item in response.context} <= {MemoryLayer.SESSION, MemoryLayer.PROJECT}


@pytest.mark.asyncio
async def test_compound_query_returns_multi_hop_result() -> None:
    router = ContextRouter(_layers())

    result = await router.route_query("Implement auth, write tests for it, and update the docs")

    assert isinstance(result, MultiHopResult)
    assert result.waves == [["1"], ["2", "3"]]
    assert len(result.hops) == 3
    assert result.stats.decomposition_time_ms >= 0.0


@pytest.mark.asyncio
async def test_max_tokens_bounds_the_context() -> None:
    router = ContextRouter(_layers())

    response = await router.route_query("show auth dependencies and authentication module", max_tokens=8)

    context = response.context if isinstance(response, ContextResponse) else response.combined_context
    assert sum(estimate_token_count(item.content) for item in context) <= 8


@pytest.mark.asyncio
async def test_repeated_query_hits_routing_cache_and_is_tracked() -> None:
    router = ContextRouter(_layers())

    await router.route_query("what is JWT?")
    second = await router.route_query("What is JWT")

    assert isinstance(second, ContextResponse)
    assert second.routing.stats.cache_hit is True
    stats = router.stats()
    assert stats["total_queries"] == 2
    assert stats["cache_hits"] == 1
    assert stats["cache"]["size"] == 1

    router.clear_cache()
    assert router.stats()["cache"]["size"] == 0


@pytest.mark.asyncio
async def test_deadline_returns_partial_response_with_cancelled_layers() -> None:
    router = ContextRouter(_layers(latency=1.0))

    response = await router.route_query("Continue working on authentication", timeout=0.1)

    assert isinstance(response, ContextResponse)
    assert response.routing.stats.failed_layers == 2
    assert {r.error for r in response.routing.layers} == {"cancelled"}
    assert response.context == []


@pytest.mark.asyncio
async def test_cancellation_before_classification_raises() -> None:
    router = ContextRouter(_layers())
    token = CancellationToken()
    token.cancel()

    with pytest.raises(QueryCancelledError):
        await router.route_query("what is JWT?", token=token)


@pytest.mark.asyncio
async def test_invalid_input_raises() -> None:
    router = ContextRouter(_layers())

    with pytest.raises(InvalidInputError):
        await router.route_query("")
    with pytest.raises(InvalidInputError):
        await router.route_query("what is JWT?", max_tokens=-5)
    with pytest.raises(InvalidInputError):
        await router.route_query("what is JWT?", timeout=0)
    with pytest.raises(InvalidInputError):
        await router.classify("   ")


@pytest.mark.asyncio
async def test_stage_methods_compose_manually() -> None:
    router = ContextRouter(_layers())

    classification = await router.classify("Show me auth dependencies")
    routing = await router.route("Show me auth dependencies", classification)
    fused = router.fuse(routing.layers, min_score=0.0)

    assert classification.type is QueryType.ARCHITECTURAL
    assert routing.stats.layers_queried == len(classification.layers)
    assert fused.items[0].content == "auth dependencies: jwt, bcrypt, redis"
