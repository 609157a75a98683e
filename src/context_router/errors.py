"""Error taxonomy.

Only `InvalidInputError` and `QueryCancelledError` ever reach callers of the
public entry points. Every other error is raised inside a stage and converted
into data (an `error` field or a fallback result) by the stage that owns it.
"""

from __future__ import annotations


class ContextRouterError(Exception):
    """Base class for all errors raised by this package."""


class InvalidInputError(ContextRouterError, ValueError):
    """Malformed options or inputs; a hard caller error."""


class QueryCancelledError(ContextRouterError):
    """The query was cancelled before classification completed."""


class InferenceError(ContextRouterError):
    """The external inference service could not produce a usable answer."""


class InferenceUnavailableError(InferenceError):
    pass


class InferenceTimeoutError(InferenceError):
    pass


class InferenceSchemaError(InferenceError):
    """The model answered, but not in the requested structure."""


class RateLimitExceededError(InferenceError):
    pass


class ClassificationFailure(ContextRouterError):
    pass


class LayerFailure(ContextRouterError):
    pass


class LayerNotRegisteredError(LayerFailure):
    pass


class DecompositionFailure(ContextRouterError):
    pass


class HopFailure(ContextRouterError):
    pass
