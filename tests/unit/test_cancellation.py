import asyncio

import pytest

from context_router.cancellation import CancellationToken


@pytest.mark.asyncio
async def test_scope_honours_local_timeout() -> None:
    token = CancellationToken()

    with pytest.raises(asyncio.TimeoutError):
        async with token.scope(0.02):
            await asyncio.sleep(1)
    assert token.cancelled is False


@pytest.mark.asyncio
async def test_deadline_bounds_every_scope() -> None:
    token = CancellationToken.with_timeout(0.02)

    with pytest.raises(asyncio.TimeoutError):
        async with token.scope(10):
            await asyncio.sleep(1)
    assert token.cancelled is True
    assert token.remaining() == 0.0


@pytest.mark.asyncio
async def test_cancel_expires_open_scopes() -> None:
    token = CancellationToken()
    outcomes: list[str] = []

    async def worker() -> None:
        try:
            async with token.scope(10):
                await asyncio.sleep(5)
            outcomes.append("finished")
        except asyncio.TimeoutError:
            outcomes.append("cancelled")

    tasks = [asyncio.create_task(worker()) for _ in range(3)]
    await asyncio.sleep(0.01)
    token.cancel()
    await asyncio.wait_for(asyncio.gather(*tasks), timeout=1)

    assert outcomes == ["cancelled"] * 3
    assert token.cancelled is True


@pytest.mark.asyncio
async def test_scope_entered_after_cancel_expires_immediately() -> None:
    token = CancellationToken()
    token.cancel()

    with pytest.raises(asyncio.TimeoutError):
        async with token.scope(10):
            await asyncio.sleep(1)


@pytest.mark.asyncio
async def test_unbounded_token_reports_no_deadline() -> None:
    token = CancellationToken()

    assert token.deadline is None
    assert token.remaining() is None
    async with token.scope():
        await asyncio.sleep(0)
