"""Retry policy for agent invocations.

Only failures the process layer marks as retryable (timeouts, interruptions,
exit code 1) are attempted again; everything else propagates on the first
failure. Delays follow ``RetryConfiguration.delay``.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from autopilot.config.models import RetryConfiguration
from autopilot.core.exceptions import AgentProcessError, RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RetryCallback = Callable[[int, float, BaseException], None]
SleepFunction = Callable[[float], Awaitable[None]]


def is_retryable(error: BaseException) -> bool:
    """Check whether a failure is worth another attempt."""
    return isinstance(error, AgentProcessError) and error.retryable


class RetryStrategy:
    """Runs async operations with bounded attempts and capped exponential backoff."""

    def __init__(
        self,
        config: Optional[RetryConfiguration] = None,
        sleep: Optional[SleepFunction] = None,
    ):
        """Initialize retry strategy.

        Args:
            config: Retry configuration (uses defaults if None)
            sleep: Coroutine used to wait between attempts (asyncio.sleep if None)
        """
        self.config = config or RetryConfiguration()
        self.sleep = sleep or asyncio.sleep

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str = "operation",
        should_continue: Optional[Callable[[], bool]] = None,
        on_retry: Optional[RetryCallback] = None,
    ) -> T:
        """Run an operation, retrying retryable failures.

        Args:
            operation: Zero-argument coroutine factory, called once per attempt
            operation_name: Name used in messages
            should_continue: Checked before every retry; False re-raises the
                last failure unchanged (used for pause, stop and handoff)
            on_retry: Called with (attempt, delay, error) before each wait

        Returns:
            Result of the first successful attempt

        Raises:
            RetryExhaustedError: If every attempt failed with a retryable error
            Exception: Any non-retryable failure, unchanged
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except Exception as e:
                if not is_retryable(e):
                    raise
                if should_continue is not None and not should_continue():
                    raise
                if attempt >= self.config.max_attempts:
                    logger.warning(
                        "%s failed after %d attempt(s): %s", operation_name, attempt, e
                    )
                    raise RetryExhaustedError(operation_name, attempt, e) from e

                delay = self.config.delay(attempt)
                logger.info(self.get_retry_message(operation_name, attempt, delay, e))
                if on_retry is not None:
                    on_retry(attempt, delay, e)
                await self.sleep(delay)

                if should_continue is not None and not should_continue():
                    raise

    def get_retry_message(
        self, operation_name: str, attempt: int, delay: float, error: BaseException
    ) -> str:
        """Human-readable message about an upcoming retry."""
        return (
            f"{operation_name} failed (attempt {attempt}/{self.config.max_attempts}): "
            f"{error}. Retrying in {delay:g}s"
        )


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfiguration,
    operation_name: str = "operation",
    sleep: Optional[SleepFunction] = None,
) -> T:
    """Run an operation with the retry schedule of ``config``."""
    return await RetryStrategy(config, sleep=sleep).run(operation, operation_name)
