import asyncio

import pytest
from langchain_core.messages import AIMessage
from langchain_core.prompts import ChatPromptTemplate
from pydantic import BaseModel

from context_router.config import InferenceConfig
from context_router.errors import (
    InferenceSchemaError,
    InferenceTimeoutError,
    InferenceUnavailableError,
    RateLimitExceededError,
)
from context_router.inference import InferenceClient, TokenBucketRateLimiter, parse_structured

PROMPT = ChatPromptTemplate.from_messages([("human", "Query: {query}")])


class Verdict(BaseModel):
    label: str
    score: float


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class FakeChatModel:
    def __init__(self, content: str = '{"label": "ok", "score": 0.5}', *, delay: float = 0.0,
                 error: Exception | None = None) -> None:
        self.content = content
        self.delay = delay
        self.error = error
        self.messages: list[object] = []

    async def ainvoke(self, messages: list[object]) -> AIMessage:
        self.messages.append(messages)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return AIMessage(content=self.content)


@pytest.mark.asyncio
async def test_generate_renders_prompt_and_validates_schema() -> None:
    llm = FakeChatModel()
    client = InferenceClient(llm)

    verdict = await client.generate(PROMPT, {"query": "auth"}, Verdict)

    assert verdict == Verdict(label="ok", score=0.5)
    assert "Query: auth" in llm.messages[0][0].content


@pytest.mark.asyncio
async def test_generate_maps_failures_to_inference_errors() -> None:
    slow = InferenceClient(FakeChatModel(delay=1.0), config=InferenceConfig(timeout_seconds=0.02))
    broken = InferenceClient(FakeChatModel(error=ConnectionError("refused")))
    garbled = InferenceClient(FakeChatModel(content='{"label": "ok"}'))

    with pytest.raises(InferenceTimeoutError):
        await slow.generate(PROMPT, {"query": "auth"}, Verdict)
    with pytest.raises(InferenceUnavailableError):
        await broken.generate(PROMPT, {"query": "auth"}, Verdict)
    with pytest.raises(InferenceSchemaError):
        await garbled.generate(PROMPT, {"query": "auth"}, Verdict)


@pytest.mark.asyncio
async def test_rate_limiter_refills_over_time() -> None:
    clock = FakeClock()
    limiter = TokenBucketRateLimiter(1.0, 1, clock=clock)

    assert await limiter.acquire(timeout_seconds=0) is True
    assert await limiter.acquire(timeout_seconds=0) is False

    clock.now += 1.0
    assert await limiter.acquire(timeout_seconds=0) is True
    assert limiter.stats()["granted"] == 2
    assert limiter.stats()["rejected"] == 1


@pytest.mark.asyncio
async def test_generate_rejects_when_rate_limited() -> None:
    clock = FakeClock()
    client = InferenceClient(
        FakeChatModel(),
        config=InferenceConfig(rate_limit_wait_seconds=0.0),
        rate_limiter=TokenBucketRateLimiter(1.0, 1, clock=clock),
    )

    await client.generate(PROMPT, {"query": "auth"}, Verdict)
    with pytest.raises(RateLimitExceededError):
        await client.generate(PROMPT, {"query": "auth"}, Verdict)


def test_parse_structured_handles_fences_and_rejects_prose() -> None:
    fenced = '```json\n{"label": "fenced", "score": 1}\n```'

    assert parse_structured(fenced, Verdict).label == "fenced"
    with pytest.raises(InferenceSchemaError):
        parse_structured("no json here", Verdict)
