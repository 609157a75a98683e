"""Memory layer contract consumed by the router."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from context_router.types import LayerResponse


@dataclass(slots=True)
class LayerQueryOptions:
    """Per-call options handed to a memory layer.

    `timeout_seconds` is informational; the router enforces it regardless of
    whether the layer honours it, by cancelling the awaiting task.
    """

    limit: int = 20
    timeout_seconds: float | None = None
    metadata_filter: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class MemoryLayerSource(Protocol):
    """Uniform query capability every memory layer exposes.

    Implementations must be safe to call concurrently and must tolerate being
    cancelled at any await point.
    """

    async def query(self, text: str, options: LayerQueryOptions) -> LayerResponse:
        """Return scored fragments relevant to `text`."""
