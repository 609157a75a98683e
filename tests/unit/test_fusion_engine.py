from collections import defaultdict
from datetime import datetime, timezone

import pytest

from context_router.errors import InvalidInputError
from context_router.fusion.dedup import SemanticDeduplicator
from context_router.fusion.engine import FusionEngine
from context_router.fusion.scoring import (
    NEUTRAL_RECENCY,
    normalize_scores,
    recency_score,
    text_similarity,
)
from context_router.obs.tracing import estimate_token_count
from context_router.types import FusedItem, LayerItem, LayerResult, MemoryLayer


def _layer(layer: MemoryLayer, items: list[tuple[str, float]], weight: float = 1.0) -> LayerResult:
    return LayerResult(
        layer=layer,
        items=[LayerItem(content=content, score=score) for content, score in items],
        elapsed_ms=1.0,
        weight=weight,
    )


def _refuse_input(items: list[FusedItem]) -> list[LayerResult]:
    grouped: dict[MemoryLayer, list[tuple[str, float]]] = defaultdict(list)
    for item in items:
        grouped[item.layer].append((item.content, item.score))
    return [_layer(layer, pairs) for layer, pairs in grouped.items()]


def _mixed_results() -> list[LayerResult]:
    return [
        _layer(
            MemoryLayer.SESSION,
            [
                ("Refresh tokens rotate on every login request", 0.92),
                ("The auth middleware validates JWT signatures", 0.81),
                ("The auth middleware validates JWT signatures!", 0.64),
                ("Sidebar colours follow the design system", 0.12),
            ],
            weight=0.6,
        ),
        _layer(
            MemoryLayer.PROJECT,
            [
                ("src/auth/session.py defines SessionStore", 0.75),
                ("Password hashing uses bcrypt with cost twelve", 0.55),
            ],
            weight=0.4,
        ),
    ]


def test_token_budget_stops_at_first_overflow() -> None:
    items = [
        (" ".join(f"w{i}x{j}" for j in range(100)), 0.5 + i * 0.005) for i in range(50)
    ]
    assert estimate_token_count(items[0][0]) == 100

    result = FusionEngine().fuse([_layer(MemoryLayer.VECTOR, items)], max_tokens=1000)

    assert len(result.items) == 10
    assert result.stats.estimated_tokens == 1000
    assert result.stats.final_items == 10


def test_fused_output_is_bounded_sorted_and_unique() -> None:
    result = FusionEngine().fuse(_mixed_results(), max_tokens=30)

    stats = result.stats
    assert stats.final_items <= stats.deduplicated_items <= stats.total_items
    assert sum(estimate_token_count(item.content) for item in result.items) <= 30
    assert [item.score for item in result.items] == sorted(
        (item.score for item in result.items), reverse=True
    )
    for i, first in enumerate(result.items):
        for second in result.items[i + 1 :]:
            assert text_similarity(first.content, second.content) < 0.85


def test_fuse_is_idempotent_on_its_own_output() -> None:
    engine = FusionEngine()
    first = engine.fuse(_mixed_results())

    second = engine.fuse(_refuse_input(first.items))

    assert {item.content for item in second.items} == {item.content for item in first.items}


def test_near_duplicates_keep_the_higher_score() -> None:
    result = FusionEngine().fuse(_mixed_results())
    contents = [item.content for item in result.items]

    assert "The auth middleware validates JWT signatures" in contents
    assert "The auth middleware validates JWT signatures!" not in contents
    assert "Sidebar colours follow the design system" not in contents
    assert result.stats.below_min_score >= 1


def test_diversity_bonus_lifts_underrepresented_layers() -> None:
    results = [
        _layer(
            MemoryLayer.SESSION,
            [("alpha session note", 0.9), ("beta session note", 0.85), ("gamma session note", 0.8)],
        ),
        _layer(MemoryLayer.PROJECT, [("delta project file", 0.7)]),
    ]

    result = FusionEngine().fuse(results, min_score=0.0)

    assert [item.layer for item in result.items][:2] == [MemoryLayer.SESSION, MemoryLayer.PROJECT]
    assert result.items[1].score == pytest.approx(0.9)


def test_errored_layers_are_skipped_and_counted() -> None:
    broken = LayerResult(
        layer=MemoryLayer.USER, items=[], elapsed_ms=3.0, weight=1.0, error="timeout after 0.5s"
    )

    result = FusionEngine().fuse([*_mixed_results(), broken])

    assert result.stats.failed_layers == 1
    assert all(item.layer is not MemoryLayer.USER for item in result.items)


def test_out_of_range_scores_are_min_max_normalized() -> None:
    assert normalize_scores([10.0, 5.0, 0.0]) == [1.0, 0.5, 0.0]
    assert normalize_scores([0.4, 0.2]) == [0.4, 0.2]
    assert normalize_scores([0.4, 0.2], "minmax") == [1.0, 0.0]
    assert normalize_scores([3.0, 3.0]) == [1.0, 1.0]

    result = FusionEngine().fuse(
        [_layer(MemoryLayer.VECTOR, [("top hit", 10.0), ("middle hit", 5.0), ("bottom", 0.0)])]
    )
    assert [item.content for item in result.items] == ["top hit", "middle hit"]
    assert all(0.0 <= item.score <= 1.0 for item in result.items)


def test_invalid_inputs_raise() -> None:
    engine = FusionEngine()

    with pytest.raises(InvalidInputError):
        engine.fuse(_mixed_results(), max_tokens=-1)
    with pytest.raises(InvalidInputError):
        engine.fuse([_layer(MemoryLayer.VECTOR, [("a", 0.5)], weight=-0.5)])
    with pytest.raises(InvalidInputError):
        engine.fuse([_layer(MemoryLayer.VECTOR, [("a", float("inf"))])])


def test_duplicate_groups_are_reported() -> None:
    items = [
        FusedItem(content="cache keys are normalized queries", score=0.9, layer=MemoryLayer.PROJECT),
        FusedItem(content="Cache keys are normalized queries.", score=0.5, layer=MemoryLayer.SESSION),
        FusedItem(content="rate limiting uses a token bucket", score=0.7, layer=MemoryLayer.PROJECT),
    ]
    dedup = SemanticDeduplicator(threshold=0.85)

    kept = dedup.deduplicate(items)
    groups = dedup.find_duplicate_groups(items)
    stats = SemanticDeduplicator.stats(items, kept)

    assert [item.score for item in kept] == [0.9, 0.7]
    assert len(groups) == 1 and len(groups[0]) == 2
    assert stats.removed_count == 1
    assert stats.deduplication_rate == pytest.approx(1 / 3)


NOW = 1_700_000_000.0
DAY = 24 * 3600.0


def _dated_results() -> list[LayerResult]:
    return [
        LayerResult(
            layer=MemoryLayer.SESSION,
            items=[
                LayerItem(
                    "Sessions were stored in Postgres originally",
                    0.6,
                    {"timestamp": NOW - 40 * DAY},
                ),
                LayerItem("Cookie flags are strict and secure", 0.6, {}),
                LayerItem("Session tokens moved to Redis last sprint", 0.6, {"timestamp": NOW - DAY}),
            ],
            elapsed_ms=1.0,
            weight=1.0,
        )
    ]


def test_recency_weight_prefers_newer_fragments() -> None:
    result = FusionEngine().fuse(
        _dated_results(),
        recency_weight=0.5,
        reference_time=NOW,
        diversity_weight=0.0,
        min_score=0.0,
    )

    assert [item.content for item in result.items] == [
        "Session tokens moved to Redis last sprint",
        "Cookie flags are strict and secure",
        "Sessions were stored in Postgres originally",
    ]
    assert result.items[0].score == pytest.approx(0.3 + 0.5 * (1 - 1 / 30))
    assert result.items[1].score == pytest.approx(0.3 + 0.5 * NEUTRAL_RECENCY)
    assert result.items[2].score == pytest.approx(0.3)


def test_timestamps_are_ignored_without_recency_weight() -> None:
    result = FusionEngine().fuse(_dated_results(), diversity_weight=0.0, min_score=0.0)

    assert len(result.items) == 3
    assert all(item.score == pytest.approx(0.6) for item in result.items)


def test_recency_score_accepts_epoch_datetime_and_iso_timestamps() -> None:
    window = 30 * DAY
    halfway = datetime.fromtimestamp(NOW - 15 * DAY, tz=timezone.utc)

    assert recency_score(NOW - 15 * DAY, now=NOW, window_seconds=window) == pytest.approx(0.5)
    assert recency_score(halfway, now=NOW, window_seconds=window) == pytest.approx(0.5)
    assert recency_score(halfway.isoformat(), now=NOW, window_seconds=window) == pytest.approx(0.5)
    assert recency_score(NOW + DAY, now=NOW, window_seconds=window) == 1.0
    assert recency_score(NOW - 90 * DAY, now=NOW, window_seconds=window) == 0.0
    assert recency_score("last tuesday", now=NOW, window_seconds=window) == NEUTRAL_RECENCY
    assert recency_score(True, now=NOW, window_seconds=window) == NEUTRAL_RECENCY
