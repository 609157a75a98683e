"""Query classification strategies.

Rules are tried first; when they are not confident enough the query goes to
the external inference service; when that fails too the query is routed as
GENERAL to every layer. `ClassifierChain.classify` never raises.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from langchain_core.prompts import ChatPromptTemplate
from pydantic import BaseModel, ConfigDict, Field, field_validator

from context_router.cancellation import CancellationToken
from context_router.classify.rules import match_rules, routing_rule
from context_router.config import ClassifierConfig
from context_router.errors import ClassificationFailure, InferenceError
from context_router.inference import InferenceClient
from context_router.types import (
    ClassificationResult,
    ClassificationSource,
    MemoryLayer,
    QueryType,
)

logger = logging.getLogger(__name__)

CLASSIFICATION_PROMPT = """
Classify the developer query into ONE type: PROCEDURAL, FACTUAL, ARCHITECTURAL, USER, or HISTORICAL.

Types:
- PROCEDURAL: Do/create/continue a task ("implement auth", "continue working")
- FACTUAL: Explain a concept ("what is JWT?", "how does bcrypt work?")
- ARCHITECTURAL: Code structure ("show dependencies", "what imports X?")
- USER: Personal preferences ("my preferred framework", "my expertise")
- HISTORICAL: Past decisions ("why did we choose X?", "what decisions were made?")

Return ONLY JSON: {{"type": "TYPE", "confidence": 0.0-1.0, "reasoning": "short reason"}}
""".strip()


class ClassificationPayload(BaseModel):
    """Strict output schema expected from the inference service."""

    model_config = ConfigDict(extra="ignore")

    type: QueryType
    confidence: float = Field(allow_inf_nan=False)
    reasoning: str = ""

    @field_validator("type", mode="before")
    @classmethod
    def _parse_type(cls, value: object) -> QueryType:
        if isinstance(value, QueryType):
            return value
        if not isinstance(value, str):
            raise ValueError(f"type must be a string, got {type(value).__name__}")
        try:
            return QueryType[value.strip().upper()]
        except KeyError as exc:
            raise ValueError(f"unknown query type: {value!r}") from exc


class Classifier(ABC):
    """A single classification strategy."""

    def __init__(self, config: ClassifierConfig | None = None) -> None:
        self.config = config or ClassifierConfig()

    @abstractmethod
    async def classify(
        self, query: str, *, token: CancellationToken | None = None
    ) -> ClassificationResult | None:
        """Classify `query`, or return None when the strategy has no opinion."""

    def build_result(
        self,
        query: str,
        query_type: QueryType,
        confidence: float,
        reasoning: str,
        source: ClassificationSource,
    ) -> ClassificationResult:
        rule = routing_rule(query_type, general_weight=self.config.general_weight)
        return ClassificationResult(
            query=query,
            type=query_type,
            confidence=min(1.0, max(0.0, confidence)),
            layers=rule.layers,
            weights=dict(rule.weights),
            reasoning=reasoning,
            source=source,
        )


class RuleBasedClassifier(Classifier):
    """Keyword/phrase heuristics from the static lexical rule table."""

    async def classify(
        self, query: str, *, token: CancellationToken | None = None
    ) -> ClassificationResult | None:
        match = match_rules(query)
        if match is None:
            return None
        return self.build_result(
            query,
            match.query_type,
            match.confidence,
            f"Matched {match.query_type.name.lower()} cues: {', '.join(match.hits)}",
            "rules",
        )


class InferenceClassifier(Classifier):
    """Delegates to the inference service under a strict output schema."""

    def __init__(self, client: InferenceClient, config: ClassifierConfig | None = None) -> None:
        super().__init__(config)
        self.client = client
        self.prompt = ChatPromptTemplate.from_messages(
            [("system", CLASSIFICATION_PROMPT), ("human", "Query: {query}")]
        )

    async def classify(
        self, query: str, *, token: CancellationToken | None = None
    ) -> ClassificationResult:
        try:
            payload = await self.client.generate(
                self.prompt, {"query": query}, ClassificationPayload, token=token
            )
        except InferenceError as exc:
            raise ClassificationFailure(str(exc)) from exc

        query_type = payload.type
        if payload.confidence < self.config.min_inference_confidence:
            query_type = QueryType.GENERAL
        return self.build_result(
            query,
            query_type,
            payload.confidence,
            payload.reasoning or "Classified by inference",
            "inference",
        )


class ClassifierChain(Classifier):
    """Rules first, inference second, GENERAL fallback last."""

    def __init__(
        self,
        *,
        rules: Classifier | None = None,
        inference: Classifier | None = None,
        config: ClassifierConfig | None = None,
    ) -> None:
        super().__init__(config)
        self.rules = rules or RuleBasedClassifier(self.config)
        self.inference = inference

    async def classify(
        self, query: str, *, token: CancellationToken | None = None
    ) -> ClassificationResult:
        by_rules = await self.rules.classify(query, token=token)
        if by_rules is not None and by_rules.confidence >= self.config.confidence_threshold:
            return by_rules

        if self.inference is None:
            return self.fallback(query, "no confident rule and no inference backend")

        try:
            result = await self.inference.classify(query, token=token)
        except ClassificationFailure as exc:
            logger.warning("Classification fell back to GENERAL for %r: %s", query, exc)
            return self.fallback(query, f"inference failed: {exc}")
        if result is None:
            return self.fallback(query, "inference returned no classification")
        return result

    def fallback(self, query: str, reason: str) -> ClassificationResult:
        return general_classification(query, reason, general_weight=self.config.general_weight)

    def suggested_layers(self, query_type: QueryType) -> frozenset[MemoryLayer]:
        return routing_rule(query_type, general_weight=self.config.general_weight).layers

    def layer_weights(self, query_type: QueryType) -> dict[MemoryLayer, float]:
        return dict(routing_rule(query_type, general_weight=self.config.general_weight).weights)


def general_classification(
    query: str, reason: str, *, general_weight: float = 0.5
) -> ClassificationResult:
    """Zero-confidence GENERAL classification spanning every layer."""
    rule = routing_rule(QueryType.GENERAL, general_weight=general_weight)
    return ClassificationResult(
        query=query,
        type=QueryType.GENERAL,
        confidence=0.0,
        layers=rule.layers,
        weights=dict(rule.weights),
        reasoning=reason,
        source="fallback",
    )
