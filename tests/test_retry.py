from __future__ import annotations

import asyncio
from typing import List

import pytest

from resilient_rag.errors import TransportError
from resilient_rag.retry import call_with_retry
from resilient_rag.settings import RetrySettings


class Flaky:
    def __init__(self, failures: List[BaseException], result: str = "ok") -> None:
        self.failures = list(failures)
        self.result = result
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return self.result


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def boom() -> TransportError:
    return TransportError("HTTP 503: Service Unavailable", status_code=503)


@pytest.mark.asyncio
async def test_fails_twice_then_succeeds_with_exponential_backoff():
    fn = Flaky([boom(), boom()])
    sleep = SleepRecorder()

    result = await call_with_retry(fn, RetrySettings(max_retries=2, initial_delay_s=1.0), sleep=sleep)

    assert result == "ok"
    assert fn.calls == 3
    assert sleep.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_constant_backoff():
    fn = Flaky([boom(), boom()])
    sleep = SleepRecorder()

    settings = RetrySettings(max_retries=2, initial_delay_s=0.5, exponential_backoff=False)
    await call_with_retry(fn, settings, sleep=sleep)

    assert sleep.delays == [0.5, 0.5]


@pytest.mark.asyncio
async def test_exhausted_retries_reraise_last_error():
    last = boom()
    fn = Flaky([boom(), boom(), last])
    sleep = SleepRecorder()

    with pytest.raises(TransportError) as exc_info:
        await call_with_retry(fn, RetrySettings(max_retries=2), sleep=sleep)

    assert exc_info.value is last
    assert fn.calls == 3


@pytest.mark.parametrize("status", [401, 429])
@pytest.mark.asyncio
async def test_auth_and_rate_limit_are_not_retried(status):
    fn = Flaky([TransportError("denied", status_code=status)])
    sleep = SleepRecorder()

    with pytest.raises(TransportError):
        await call_with_retry(fn, RetrySettings(max_retries=5), sleep=sleep)

    assert fn.calls == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_zero_retries_means_single_attempt():
    fn = Flaky([boom()])

    with pytest.raises(TransportError):
        await call_with_retry(fn, RetrySettings(max_retries=0), sleep=SleepRecorder())

    assert fn.calls == 1


@pytest.mark.asyncio
async def test_attempt_deadline_is_retried():
    calls = 0

    async def hangs_once() -> str:
        nonlocal calls
        calls += 1
        if calls == 1:
            await asyncio.sleep(10)
        return "late but fine"

    result = await call_with_retry(
        hangs_once,
        RetrySettings(max_retries=1, initial_delay_s=0.0),
        timeout_s=0.05,
        sleep=SleepRecorder(),
    )

    assert result == "late but fine"
    assert calls == 2


@pytest.mark.asyncio
async def test_cancelled_attempt_is_not_retried():
    calls = 0
    started = asyncio.Event()

    async def slow() -> str:
        nonlocal calls
        calls += 1
        started.set()
        await asyncio.sleep(10)
        return "too late"

    task = asyncio.ensure_future(
        call_with_retry(slow, RetrySettings(max_retries=3, initial_delay_s=0.0), sleep=SleepRecorder())
    )
    await started.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    assert calls == 1
