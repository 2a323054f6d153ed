"""
Retry Utilities
Exponential backoff for transient backend failures
"""

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from filegate.exceptions import StorageProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient(error: BaseException) -> bool:
    """Only provider errors flagged retryable are worth another attempt"""
    return isinstance(error, StorageProviderError) and error.retryable


def _log_retry(operation_name: str, max_retries: int) -> Callable[[RetryCallState], None]:
    def before_sleep(state: RetryCallState) -> None:
        error = state.outcome.exception()
        logger.warning(
            f"{operation_name} failed ({error}), retry {state.attempt_number}/{max_retries} "
            f"in {state.next_action.sleep:.2f}s"
        )
    return before_sleep


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    base_delay: float = 0.5,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    operation_name: str = "operation"
) -> T:
    """
    Run an async operation, retrying transient failures

    The n-th retry waits base_delay * 2**(n-1) seconds.

    Args:
        operation: Zero-argument coroutine factory
        max_retries: Retries after the first attempt
        base_delay: Delay before the first retry, in seconds
        sleep: Sleep function (injectable for tests)
        operation_name: Label used in log messages

    Returns:
        The operation's result

    Raises:
        StorageError: The last error once the budget is spent, or any
            non-transient error immediately
    """
    retrying = AsyncRetrying(
        retry=retry_if_exception(is_transient),
        stop=stop_after_attempt(max_retries + 1),
        wait=wait_exponential(multiplier=base_delay, exp_base=2),
        sleep=sleep,
        before_sleep=_log_retry(operation_name, max_retries),
        reraise=True,
    )
    return await retrying(operation)
