# retry.py
import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from tenacity import (
    AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt,
    wait_exponential_jitter, wait_fixed,
)
from tenacity.wait import wait_base

log = logging.getLogger(__name__)

Classifier = Callable[[BaseException], bool]


def fixed_delay(seconds: float) -> wait_base:
    """Same pause after every failed attempt."""
    return wait_fixed(seconds)


def exponential_backoff(base: float, jitter: float = 1.0, cap: Optional[float] = None) -> wait_base:
    """base * 2**n after the n-th failure (0-based) plus up to `jitter` seconds of noise."""
    if cap is None:
        return wait_exponential_jitter(initial=base, jitter=jitter)
    return wait_exponential_jitter(initial=base, jitter=jitter, max=cap)


def always(exc: BaseException) -> bool:
    return True


async def retry_async(
    operation: Callable[[int], Awaitable[Any]],
    *,
    max_attempts: int,
    delay: wait_base,
    should_retry: Classifier = always,
    label: str = "operation",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Any:
    """
    Runs `operation(attempt)` until it succeeds or the attempts run out.

    Args:
        operation: Coroutine factory; receives the 0-based attempt number so
            callers can change strategy between attempts (e.g. switch model).
        max_attempts: Total attempts, including the first one.
        delay: tenacity wait strategy used between attempts.
        should_retry: Error classifier. A False answer re-raises immediately.
        label: Used in log messages.

    Raises:
        The last exception raised by `operation`.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    def log_retry(state: RetryCallState) -> None:
        log.warning(
            f"{label} failed (attempt {state.attempt_number}/{max_attempts}): "
            f"{state.outcome.exception()}. Retrying in {state.next_action.sleep:.1f}s"
        )

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=delay,
        retry=retry_if_exception(should_retry),
        before_sleep=log_retry,
        sleep=sleep,
        reraise=True,
    )
    attempts = 0
    try:
        async for attempt in retrying:
            with attempt:
                attempts = attempt.retry_state.attempt_number
                result = await operation(attempts - 1)
    except Exception as e:
        log.error(f"{label} failed after {attempts} attempt(s): {e}")
        raise
    return result
