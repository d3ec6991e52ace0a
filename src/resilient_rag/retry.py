"""
Retry policy for live backend calls.

  - attempts are strictly sequential: 1 initial call + max_retries retries
  - delay before retry n (0-based) is initial * 2**n, or a constant initial
  - auth and rate-limit failures are never retried
  - each attempt runs under a deadline; expiry counts as a retryable network error
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
)

from resilient_rag.errors import is_retryable
from resilient_rag.settings import RetrySettings

T = TypeVar("T")

logger = logging.getLogger(__name__)


def _make_logger_hook(log: logging.Logger) -> Callable[[RetryCallState], None]:
    def _log_retry(retry_state: RetryCallState) -> None:
        wait_time = retry_state.next_action.sleep if retry_state.next_action else 0
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        log.warning(
            "Backend call failed (attempt %d), retrying in %.2fs: %s",
            retry_state.attempt_number,
            wait_time,
            exc,
        )

    return _log_retry


def build_retrying(
    settings: RetrySettings,
    *,
    log: Optional[logging.Logger] = None,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> AsyncRetrying:
    if settings.exponential_backoff:
        wait = wait_exponential(multiplier=settings.initial_delay_s, exp_base=2)
    else:
        wait = wait_fixed(settings.initial_delay_s)

    kwargs = {}
    if sleep is not None:
        kwargs["sleep"] = sleep

    return AsyncRetrying(
        stop=stop_after_attempt(settings.max_retries + 1),
        wait=wait,
        retry=retry_if_exception(is_retryable),
        before_sleep=_make_logger_hook(log or logger),
        reraise=True,
        **kwargs,
    )


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    settings: RetrySettings,
    *,
    timeout_s: Optional[float] = None,
    log: Optional[logging.Logger] = None,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> T:
    """Run fn under the retry policy; the last failure is re-raised unchanged."""
    retrying = build_retrying(settings, log=log, sleep=sleep)
    async for attempt in retrying:
        with attempt:
            if timeout_s is None:
                return await fn()
            return await asyncio.wait_for(fn(), timeout=timeout_s)
    raise RuntimeError("retry loop exited without a result")  # pragma: no cover
