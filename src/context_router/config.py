"""Configuration models for the context router."""

from __future__ import annotations

from typing import Any, Literal, TypeVar

from pydantic import BaseModel, Field, ValidationError

from context_router.errors import InvalidInputError

OptionsT = TypeVar("OptionsT", bound=BaseModel)


class ClassifierConfig(BaseModel):
    """Configures the rule table / inference strategy chain."""

    confidence_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    min_inference_confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    general_weight: float = Field(default=0.5, gt=0.0, le=1.0)


class InferenceConfig(BaseModel):
    """Configures calls to the external inference service."""

    timeout_seconds: float = Field(default=2.0, gt=0.0)
    requests_per_second: float = Field(default=5.0, gt=0.0)
    burst: int = Field(default=5, ge=1)
    rate_limit_wait_seconds: float = Field(default=1.0, ge=0.0)


class RouterConfig(BaseModel):
    """Configures layer fan-out and the routing cache."""

    layer_timeout_seconds: float = Field(default=0.5, gt=0.0)
    layer_limit: int = Field(default=20, ge=1)
    cache_enabled: bool = True
    cache_ttl_seconds: float = Field(default=300.0, gt=0.0)
    cache_max_size: int = Field(default=256, ge=1)


class FusionOptions(BaseModel):
    """Configures normalization, re-weighting, dedup and the token budget."""

    max_tokens: int = Field(default=10000, ge=0)
    min_score: float = Field(default=0.3, ge=0.0, le=1.0)
    diversity_weight: float = Field(default=0.2, ge=0.0, le=1.0)
    deduplication_threshold: float = Field(default=0.85, gt=0.0, le=1.0)
    normalization: Literal["auto", "minmax"] = "auto"
    recency_weight: float = Field(default=0.0, ge=0.0, le=1.0)
    recency_window_seconds: float = Field(default=30 * 24 * 3600.0, gt=0.0)
    reference_time: float | None = None


class DecomposerOptions(BaseModel):
    max_sub_queries: int = Field(default=4, ge=2)
    min_complexity_indicators: int = Field(default=2, ge=1)


class MultiHopOptions(BaseModel):
    max_concurrent_hops: int = Field(default=3, ge=1)
    hop_timeout_seconds: float = Field(default=10.0, gt=0.0)


class CombinerOptions(BaseModel):
    """Configures cross-hop merging of fused context."""

    max_results: int = Field(default=20, ge=1)
    include_separators: bool = True
    max_tokens: int = Field(default=10000, ge=0)
    min_score: float = Field(default=0.0, ge=0.0, le=1.0)
    diversity_weight: float = Field(default=0.2, ge=0.0, le=1.0)
    deduplication_threshold: float = Field(default=0.85, gt=0.0, le=1.0)


class ContextRouterConfig(BaseModel):
    """Aggregates every stage's defaults for `ContextRouter`."""

    classifier: ClassifierConfig = Field(default_factory=ClassifierConfig)
    inference: InferenceConfig = Field(default_factory=InferenceConfig)
    router: RouterConfig = Field(default_factory=RouterConfig)
    fusion: FusionOptions = Field(default_factory=FusionOptions)
    decomposer: DecomposerOptions = Field(default_factory=DecomposerOptions)
    multi_hop: MultiHopOptions = Field(default_factory=MultiHopOptions)
    combiner: CombinerOptions = Field(default_factory=CombinerOptions)


def coerce_options(
    model: type[OptionsT],
    options: OptionsT | None,
    overrides: dict[str, Any] | None = None,
) -> OptionsT:
    """Merge per-call overrides into options and validate the result.

    Validation problems are caller errors and surface as `InvalidInputError`.
    """

    payload: dict[str, Any] = options.model_dump() if options is not None else {}
    if overrides:
        payload.update({key: value for key, value in overrides.items() if value is not None})
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise InvalidInputError(f"Invalid {model.__name__}: {exc}") from exc
