"""Static routing table and lexical classification rules."""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType

from context_router.types import MemoryLayer, QueryType


@dataclass(frozen=True, slots=True)
class LayerRoutingRule:
    """Layers queried for a query type and the weight of each."""

    weights: Mapping[MemoryLayer, float]

    @property
    def layers(self) -> frozenset[MemoryLayer]:
        return frozenset(self.weights)


ROUTING_RULES: Mapping[QueryType, LayerRoutingRule] = MappingProxyType(
    {
        QueryType.PROCEDURAL: LayerRoutingRule(
            MappingProxyType({MemoryLayer.SESSION: 0.6, MemoryLayer.PROJECT: 0.4})
        ),
        QueryType.FACTUAL: LayerRoutingRule(MappingProxyType({MemoryLayer.VECTOR: 1.0})),
        QueryType.ARCHITECTURAL: LayerRoutingRule(MappingProxyType({MemoryLayer.PROJECT: 1.0})),
        QueryType.USER: LayerRoutingRule(MappingProxyType({MemoryLayer.USER: 1.0})),
        QueryType.HISTORICAL: LayerRoutingRule(
            MappingProxyType({MemoryLayer.HISTORICAL: 0.6, MemoryLayer.PROJECT: 0.4})
        ),
    }
)


def routing_rule(query_type: QueryType, *, general_weight: float = 0.5) -> LayerRoutingRule:
    """Routing rule for `query_type`; GENERAL fans out to every layer."""
    if query_type is QueryType.GENERAL:
        return LayerRoutingRule({layer: general_weight for layer in MemoryLayer})
    return ROUTING_RULES[query_type]


@dataclass(frozen=True, slots=True)
class LexicalRule:
    query_type: QueryType
    phrases: tuple[str, ...]
    keywords: tuple[str, ...]


# Ordered; on equal scores the earlier rule wins.
LEXICAL_RULES: tuple[LexicalRule, ...] = (
    LexicalRule(
        QueryType.PROCEDURAL,
        phrases=("continue working", "working on", "pick up where", "next step", "let's"),
        keywords=(
            "continue", "resume", "implement", "add", "create", "build", "fix",
            "refactor", "write", "finish", "set up", "setup", "migrate", "update",
            "deploy", "review",
        ),
    ),
    LexicalRule(
        QueryType.FACTUAL,
        phrases=("what is", "what are", "how does", "how do", "tell me about", "what does"),
        keywords=("explain", "define", "definition", "meaning", "describe"),
    ),
    LexicalRule(
        QueryType.ARCHITECTURAL,
        phrases=("depends on", "call graph", "module structure", "code structure"),
        keywords=(
            "dependencies", "dependency", "imports", "import", "structure",
            "architecture", "modules", "module", "dependents", "layout",
        ),
    ),
    LexicalRule(
        QueryType.USER,
        phrases=(
            "my preferred", "my preference", "my expertise", "i like", "i prefer",
            "i use", "i usually", "my favorite", "my favourite",
        ),
        keywords=("preferences", "preference"),
    ),
    LexicalRule(
        QueryType.HISTORICAL,
        phrases=("why did we", "why did i", "what decisions", "decided to", "last time", "used to"),
        keywords=("decision", "decisions", "history", "historical", "previously", "changelog"),
    ),
)


@dataclass(frozen=True, slots=True)
class RuleMatch:
    query_type: QueryType
    confidence: float
    hits: tuple[str, ...]


_PHRASE_SCORE = 0.85
_KEYWORD_SCORE = 0.7
_EXTRA_HIT_BONUS = 0.05
_CONFLICT_PENALTY = 0.15


def match_rules(query: str) -> RuleMatch | None:
    """Score every lexical rule against `query` and return the best match.

    Phrase hits are stronger evidence than single keywords; each additional
    hit adds a small bonus and every competing type that also fired lowers the
    confidence.
    """

    text = " ".join(query.lower().split())
    scored: list[tuple[float, int, LexicalRule, tuple[str, ...]]] = []
    for order, rule in enumerate(LEXICAL_RULES):
        phrase_hits = tuple(p for p in rule.phrases if _contains(text, p))
        keyword_hits = tuple(k for k in rule.keywords if _contains(text, k))
        hits = phrase_hits + keyword_hits
        if not hits:
            continue
        base = _PHRASE_SCORE if phrase_hits else _KEYWORD_SCORE
        score = min(0.95, base + _EXTRA_HIT_BONUS * (len(hits) - 1))
        scored.append((score, -order, rule, hits))

    if not scored:
        return None

    scored.sort(key=lambda entry: (entry[0], entry[1]), reverse=True)
    best_score, _, best_rule, hits = scored[0]
    confidence = max(0.0, best_score - _CONFLICT_PENALTY * (len(scored) - 1))
    return RuleMatch(query_type=best_rule.query_type, confidence=confidence, hits=hits)


def _contains(text: str, term: str) -> bool:
    return re.search(rf"(?<!\w){re.escape(term)}(?!\w)", text) is not None
