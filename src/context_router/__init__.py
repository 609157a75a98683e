"""Query routing and context fusion across memory layers."""

from .cancellation import CancellationToken
from .config import ContextRouterConfig, FusionOptions
from .engine import ContextRouter
from .types import ContextResponse, MemoryLayer, MultiHopResult, QueryType

__all__ = [
    "CancellationToken",
    "ContextResponse",
    "ContextRouter",
    "ContextRouterConfig",
    "FusionOptions",
    "MemoryLayer",
    "MultiHopResult",
    "QueryType",
]
