"""Structured calls to the external inference service.

`InferenceClient` wraps any LangChain chat model exposing `ainvoke`. Every
call is rate limited, bounded by a timeout and validated against a pydantic
schema; all three failure modes surface as `InferenceError` subclasses so the
consuming stage can recover with a typed fallback.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Callable
from typing import Any, TypeVar

from langchain_core.prompts import ChatPromptTemplate
from pydantic import TypeAdapter, ValidationError

from context_router.cancellation import CancellationToken
from context_router.config import InferenceConfig
from context_router.errors import (
    InferenceSchemaError,
    InferenceTimeoutError,
    InferenceUnavailableError,
    RateLimitExceededError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TokenBucketRateLimiter:
    """Token bucket shared by every caller of one inference endpoint."""

    def __init__(
        self,
        tokens_per_second: float,
        max_tokens: int,
        *,
        name: str = "inference",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.tokens_per_second = tokens_per_second
        self.max_tokens = max_tokens
        self.name = name
        self._clock = clock
        self._tokens = float(max_tokens)
        self._last_update = clock()
        self._lock = asyncio.Lock()
        self.granted = 0
        self.rejected = 0

        logger.info(
            "Rate limiter '%s' initialized: rate=%s/s, burst=%s",
            name,
            tokens_per_second,
            max_tokens,
        )

    async def acquire(self, tokens: int = 1, *, timeout_seconds: float = 1.0) -> bool:
        """Take `tokens` from the bucket, waiting up to `timeout_seconds`.

        Returns False when the bucket did not refill in time.
        """
        start = self._clock()
        while True:
            async with self._lock:
                self._refill()
                if self._tokens >= tokens:
                    self._tokens -= tokens
                    self.granted += 1
                    return True

            if self._clock() - start >= timeout_seconds:
                self.rejected += 1
                logger.warning(
                    "Rate limiter '%s': no capacity after %.2fs", self.name, timeout_seconds
                )
                return False

            await asyncio.sleep(min(tokens / self.tokens_per_second, 0.05))

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_update
        self._tokens = min(self.max_tokens, self._tokens + elapsed * self.tokens_per_second)
        self._last_update = now

    def stats(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "tokens_per_second": self.tokens_per_second,
            "max_tokens": self.max_tokens,
            "current_tokens": self._tokens,
            "granted": self.granted,
            "rejected": self.rejected,
        }


class InferenceClient:
    """Prompt -> strict structured output, or a typed `InferenceError`."""

    def __init__(
        self,
        llm: Any,
        *,
        config: InferenceConfig | None = None,
        rate_limiter: TokenBucketRateLimiter | None = None,
    ) -> None:
        self.llm = llm
        self.config = config or InferenceConfig()
        self.rate_limiter = rate_limiter or TokenBucketRateLimiter(
            self.config.requests_per_second, self.config.burst
        )

    async def generate(
        self,
        prompt: ChatPromptTemplate,
        variables: dict[str, Any],
        schema: type[T] | TypeAdapter[T],
        *,
        token: CancellationToken | None = None,
    ) -> T:
        token = token or CancellationToken()
        wait = self.config.rate_limit_wait_seconds
        remaining = token.remaining()
        if remaining is not None:
            wait = min(wait, remaining)
        if not await self.rate_limiter.acquire(timeout_seconds=wait):
            raise RateLimitExceededError("inference endpoint is rate limited")

        messages = prompt.format_messages(**variables)
        try:
            async with token.scope(self.config.timeout_seconds):
                response = await self.llm.ainvoke(messages)
        except asyncio.TimeoutError as exc:
            raise InferenceTimeoutError(
                f"inference call exceeded {self.config.timeout_seconds}s"
            ) from exc
        except Exception as exc:
            raise InferenceUnavailableError(f"inference call failed: {exc}") from exc

        return parse_structured(_response_text(response), schema)


def parse_structured(raw: str, schema: type[T] | TypeAdapter[T]) -> T:
    """Parse a JSON answer (optionally fenced in markdown) into `schema`."""

    cleaned = raw.strip()
    if "```json" in cleaned:
        cleaned = cleaned.split("```json", 1)[1].split("```", 1)[0]
    elif cleaned.startswith("```"):
        cleaned = cleaned.strip("`").strip()

    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise InferenceSchemaError(f"inference output is not JSON: {raw[:120]!r}") from exc

    adapter = schema if isinstance(schema, TypeAdapter) else TypeAdapter(schema)
    try:
        return adapter.validate_python(payload)
    except ValidationError as exc:
        raise InferenceSchemaError(f"inference output violates schema: {exc}") from exc


def _response_text(response: Any) -> str:
    if isinstance(response, str):
        return response
    content = getattr(response, "content", response)
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict) and "text" in item:
                parts.append(str(item["text"]))
            else:
                parts.append(str(item))
        return "".join(parts)
    return str(content)
