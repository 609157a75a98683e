"""FastAPI entrypoint for routing, classification and decomposition."""

from __future__ import annotations

import os
from dataclasses import asdict
from typing import Any

from fastapi import FastAPI, HTTPException
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, Field

from context_router.config import ContextRouterConfig
from context_router.engine import ContextRouter
from context_router.errors import InvalidInputError, QueryCancelledError
from context_router.inference import InferenceClient
from context_router.layers.in_memory import InMemoryLayer, StoredFragment, VectorLayer
from context_router.types import MemoryLayer, MultiHopResult


def _create_llm() -> Any:
    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        return None

    from langchain_openai import ChatOpenAI

    return ChatOpenAI(model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"), temperature=0)


class RouteRequest(BaseModel):
    query: str = Field(min_length=1)
    max_tokens: int | None = Field(default=None, ge=0)
    timeout_seconds: float | None = Field(default=None, gt=0)


class QueryRequest(BaseModel):
    query: str = Field(min_length=1)


class MemoryRequest(BaseModel):
    layer: MemoryLayer
    content: str = Field(min_length=1)
    metadata: dict[str, Any] = Field(default_factory=dict)


app = FastAPI(title="Context Router", version="0.1.0")

_vector_layer = VectorLayer()
_lexical_layers: dict[MemoryLayer, InMemoryLayer] = {
    layer: InMemoryLayer() for layer in MemoryLayer if layer is not MemoryLayer.VECTOR
}

_config = ContextRouterConfig()
_llm = _create_llm()
_inference_client = (
    InferenceClient(_llm, config=_config.inference) if _llm is not None else None
)
_router = ContextRouter(
    {**_lexical_layers, MemoryLayer.VECTOR: _vector_layer},
    config=_config,
    inference_client=_inference_client,
)


def _payload(result: Any) -> dict[str, Any]:
    return jsonable_encoder(asdict(result))


@app.get("/health")
def health() -> dict[str, Any]:
    return {
        "status": "ok",
        "llm_configured": _llm is not None,
        "classifier_mode": "rules+inference" if _llm is not None else "rules",
        "layers": [layer.value for layer in MemoryLayer],
        "cache_size": _router.router.cache_size(),
    }


@app.post("/memory")
def add_memory(request: MemoryRequest) -> dict[str, Any]:
    if request.layer is MemoryLayer.VECTOR:
        _vector_layer.upsert([request.content], [request.metadata])
    else:
        _lexical_layers[request.layer].add(
            StoredFragment(content=request.content, metadata=request.metadata)
        )
    _router.clear_cache()
    return {"layer": request.layer.value, "stored": True}


@app.post("/route")
async def route(request: RouteRequest) -> dict[str, Any]:
    try:
        result = await _router.route_query(
            request.query,
            max_tokens=request.max_tokens,
            timeout=request.timeout_seconds,
        )
    except InvalidInputError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except QueryCancelledError as exc:
        raise HTTPException(status_code=504, detail=str(exc)) from exc

    kind = "multi_hop" if isinstance(result, MultiHopResult) else "single_hop"
    return {"kind": kind, "result": _payload(result)}


@app.post("/classify")
async def classify(request: QueryRequest) -> dict[str, Any]:
    try:
        classification = await _router.classify(request.query)
    except InvalidInputError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _payload(classification)


@app.post("/decompose")
async def decompose(request: QueryRequest) -> dict[str, Any]:
    try:
        decomposition = await _router.decompose(request.query)
    except InvalidInputError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _payload(decomposition)


@app.get("/metrics")
def metrics() -> dict[str, Any]:
    return jsonable_encoder(_router.stats())


@app.delete("/cache")
def clear_cache() -> dict[str, Any]:
    _router.clear_cache()
    return {"cleared": True, "cache_size": _router.router.cache_size()}
