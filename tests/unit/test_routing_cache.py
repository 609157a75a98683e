from context_router.routing.cache import RoutingCache, normalize_query
from context_router.types import (
    ClassificationResult,
    MemoryLayer,
    QueryType,
    RoutingResult,
    RoutingStats,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _result(query: str) -> RoutingResult:
    classification = ClassificationResult(
        query=query,
        type=QueryType.FACTUAL,
        confidence=0.9,
        layers=frozenset(),
        weights={},
        reasoning="test",
    )
    return RoutingResult(
        query=query,
        classification=classification,
        layers=[],
        stats=RoutingStats(total_time_ms=1.0, layers_queried=0),
    )


def test_normalize_query_ignores_case_whitespace_and_trailing_punctuation() -> None:
    assert normalize_query("  What is   JWT?? ") == "what is jwt"
    assert normalize_query("what is jwt") == normalize_query("What is JWT?")


def test_cache_entries_expire_after_ttl() -> None:
    clock = FakeClock()
    cache = RoutingCache(max_size=4, ttl_seconds=10, timer=clock)
    cache.put_if_absent("what is JWT?", QueryType.FACTUAL, _result("what is JWT?"))

    clock.now = 9.0
    assert cache.get("What is jwt", QueryType.FACTUAL) is not None

    clock.now = 10.5
    assert cache.get("What is jwt", QueryType.FACTUAL) is None
    assert len(cache) == 0
    assert cache.stats() == {"size": 0, "hits": 1, "misses": 1}


def test_cache_is_keyed_by_classification_type() -> None:
    cache = RoutingCache()
    cache.put_if_absent("auth", QueryType.FACTUAL, _result("auth"))

    assert cache.get("auth", QueryType.FACTUAL) is not None
    assert cache.get("auth", QueryType.PROCEDURAL) is None


def test_put_if_absent_keeps_first_entry_and_evicts_at_capacity() -> None:
    cache = RoutingCache(max_size=2, ttl_seconds=60)
    first = _result("a")
    stored = cache.put_if_absent("a", QueryType.FACTUAL, first)
    again = cache.put_if_absent("a", QueryType.FACTUAL, _result("a"))

    assert stored is first
    assert again is first

    cache.put_if_absent("b", QueryType.FACTUAL, _result("b"))
    cache.put_if_absent("c", QueryType.FACTUAL, _result("c"))
    assert len(cache) == 2

    cache.clear()
    assert cache.keys() == []


def test_entries_are_keyed_by_selected_layers() -> None:
    cache = RoutingCache()
    cache.put_if_absent("auth", QueryType.GENERAL, _result("auth"), MemoryLayer)

    assert cache.get("auth", QueryType.GENERAL, MemoryLayer) is not None
    assert cache.get("auth", QueryType.GENERAL, {MemoryLayer.SESSION}) is None
