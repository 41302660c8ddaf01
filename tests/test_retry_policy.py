from __future__ import annotations

import asyncio

import pytest

from catalog_extraction.services.extraction.errors import (
    ImageQualityRejectedError,
    RateLimitedError,
    RemoteServiceError,
    TransientNetworkError,
)
from catalog_extraction.services.extraction.retry import RetryPolicy

from conftest import RecordingSleep


def test_delay_schedule() -> None:
    policy = RetryPolicy()

    assert policy.delay_for(1, RateLimitedError("slow down")) == 2.0
    assert policy.delay_for(2, RateLimitedError("slow down")) == 2.0
    assert policy.delay_for(1, TransientNetworkError("reset")) == 1.0
    assert policy.delay_for(2, TransientNetworkError("reset")) == 2.0
    assert policy.delay_for(3, TransientNetworkError("reset")) is None


@pytest.mark.parametrize(
    "error",
    [ImageQualityRejectedError("blurry"), RemoteServiceError("401", 401), ValueError("not ours")],
)
def test_terminal_errors_are_not_retried(error) -> None:
    assert RetryPolicy().delay_for(1, error) is None


def test_run_retries_until_success() -> None:
    sleep = RecordingSleep()
    attempts = []

    async def operation(attempt: int) -> str:
        attempts.append(attempt)
        if attempt < 3:
            raise TransientNetworkError("connection reset")
        return "ok"

    result = asyncio.run(RetryPolicy().run(operation, sleep=sleep))

    assert result == "ok"
    assert attempts == [1, 2, 3]
    assert sleep.delays == [1.0, 2.0]


def test_run_gives_up_after_max_attempts() -> None:
    sleep = RecordingSleep()
    attempts = []

    async def operation(attempt: int) -> str:
        attempts.append(attempt)
        raise RateLimitedError("429")

    with pytest.raises(RateLimitedError):
        asyncio.run(RetryPolicy().run(operation, sleep=sleep))

    assert attempts == [1, 2, 3]
    assert sleep.delays == [2.0, 2.0]


def test_run_does_not_retry_terminal_errors() -> None:
    sleep = RecordingSleep()
    attempts = []

    async def operation(attempt: int) -> str:
        attempts.append(attempt)
        raise ImageQualityRejectedError("too small")

    with pytest.raises(ImageQualityRejectedError):
        asyncio.run(RetryPolicy().run(operation, sleep=sleep))

    assert attempts == [1]
    assert sleep.delays == []
