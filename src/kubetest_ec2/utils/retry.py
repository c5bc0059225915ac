"""Retry and polling utilities for kubetest-ec2."""

from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
)

from kubetest_ec2.core.exceptions import GateNotReadyError
from kubetest_ec2.utils.logging import get_logger

logger = get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Any])
T = TypeVar("T")


def retry_on_exception(
    exceptions: tuple[type[Exception], ...] = (Exception,),
    max_attempts: int = 3,
    min_wait: float = 1,
    max_wait: float = 10,
) -> Callable[[F], F]:
    """Decorator to retry a function on specific exceptions.

    Args:
        exceptions: Tuple of exception types to retry on
        max_attempts: Maximum number of retry attempts
        min_wait: Minimum wait time between retries (seconds)
        max_wait: Maximum wait time between retries (seconds)

    Returns:
        Decorated function with retry logic
    """

    def before_sleep(retry_state: RetryCallState) -> None:
        """Log before sleeping between retries."""
        if retry_state.outcome and retry_state.outcome.failed:
            exception = retry_state.outcome.exception()
            logger.warning(
                "retry_attempt",
                attempt=retry_state.attempt_number,
                max_attempts=max_attempts,
                exception=type(exception).__name__,
                message=str(exception),
            )

    return retry(
        retry=retry_if_exception_type(exceptions),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
        before_sleep=before_sleep,
        reraise=True,
    )


async def poll_until(
    check: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    interval: float,
    description: str,
    retry_on: tuple[type[Exception], ...] = (GateNotReadyError,),
) -> T:
    """Call ``check`` until it returns, retrying while it raises ``retry_on``.

    Every readiness loop in the project goes through here: a fixed number of
    attempts separated by a fixed sleep. Any exception outside ``retry_on``
    aborts immediately.

    Args:
        check: Coroutine function that returns a value when ready and raises
            one of ``retry_on`` when not ready yet
        attempts: Maximum number of calls
        interval: Seconds to sleep between calls
        description: What is being polled, for logging
        retry_on: Exception types that mean "not yet"

    Returns:
        Whatever ``check`` returned on the successful attempt

    Raises:
        Exception: The last ``retry_on`` error once the budget is exhausted,
            or any other error raised by ``check``
    """

    def before_sleep(retry_state: RetryCallState) -> None:
        exception = retry_state.outcome.exception() if retry_state.outcome else None
        logger.info(
            "poll_not_ready",
            target=description,
            attempt=retry_state.attempt_number,
            max_attempts=attempts,
            reason=str(exception),
        )

    retrying = AsyncRetrying(
        retry=retry_if_exception_type(retry_on),
        stop=stop_after_attempt(attempts),
        wait=wait_fixed(interval),
        before_sleep=before_sleep,
        reraise=True,
    )
    # tenacity only awaits callables it recognises as coroutine functions;
    # lambdas and partials returning a coroutine must still be awaited
    async def attempt() -> T:
        return await check()

    return await retrying(attempt)
