"""Score normalization and content similarity measures."""

from __future__ import annotations

from collections import Counter
from collections.abc import Sequence
from datetime import datetime
from math import isfinite, sqrt
from typing import Any, Literal

from context_router.obs.tracing import tokenize_terms

NormalizationMode = Literal["auto", "minmax"]


def normalize_scores(scores: Sequence[float], mode: NormalizationMode = "auto") -> list[float]:
    """Map one layer's raw scores onto [0, 1].

    `auto` keeps scores that are already in range (layers that report
    probabilities or cosine similarities) and min-max rescales anything else;
    `minmax` always rescales. Equal scores normalize to 1.0.
    """

    if not scores:
        return []
    if mode == "auto" and all(0.0 <= score <= 1.0 for score in scores):
        return list(scores)

    high = max(scores)
    low = min(scores)
    if high == low:
        return [1.0 for _ in scores]
    return [(score - low) / (high - low) for score in scores]


NEUTRAL_RECENCY = 0.5


def recency_score(timestamp: Any, *, now: float, window_seconds: float) -> float:
    """Linear decay from 1.0 (just written) to 0.0 at `window_seconds` old.

    `timestamp` may be epoch seconds, a `datetime` or an ISO-8601 string.
    Missing or unreadable timestamps score `NEUTRAL_RECENCY`.
    """

    seconds = _epoch_seconds(timestamp)
    if seconds is None:
        return NEUTRAL_RECENCY
    age = max(0.0, now - seconds)
    return 1.0 - min(age, window_seconds) / window_seconds


def _epoch_seconds(timestamp: Any) -> float | None:
    if isinstance(timestamp, bool):
        return None
    if isinstance(timestamp, (int, float)):
        return float(timestamp) if isfinite(timestamp) else None
    if isinstance(timestamp, datetime):
        return timestamp.timestamp()
    if isinstance(timestamp, str):
        try:
            return datetime.fromisoformat(timestamp).timestamp()
        except ValueError:
            return None
    return None


def term_vector(text: str) -> Counter[str]:
    """Length-normalized term frequencies of `text`."""
    terms = tokenize_terms(text)
    counts: Counter[str] = Counter(terms)
    total = len(terms)
    if total == 0:
        return counts
    return Counter({term: count / total for term, count in counts.items()})


def cosine(a: Counter[str], b: Counter[str]) -> float:
    if not a or not b:
        return 0.0
    if len(a) > len(b):
        a, b = b, a
    dot = sum(weight * b[term] for term, weight in a.items() if term in b)
    norm_a = sqrt(sum(weight * weight for weight in a.values()))
    norm_b = sqrt(sum(weight * weight for weight in b.values()))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def text_similarity(a: str, b: str) -> float:
    """Token cosine similarity between two texts, in [0, 1]."""
    return cosine(term_vector(a), term_vector(b))


def term_coverage(query: str, texts: Sequence[str], *, extra_terms: Sequence[str] = ()) -> float:
    """Fraction of the query's content terms found anywhere in `texts`."""
    wanted = set(tokenize_terms(query)) | {term.lower() for term in extra_terms}
    if not wanted:
        return 0.0
    found: set[str] = set()
    for text in texts:
        found.update(wanted.intersection(tokenize_terms(text)))
        if len(found) == len(wanted):
            break
    return len(found) / len(wanted)
