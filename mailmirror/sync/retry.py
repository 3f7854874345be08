"""
Retry with exponential backoff for remote calls.

A single RetryHandler wraps every remote operation the engine issues:
- 429 responses wait for the server's Retry-After hint (or a default)
- 5xx and transport failures back off exponentially with jitter
- Anything else propagates on the first attempt
- A pending backoff ends early when the bound cancel event is set
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import httpx

from mailmirror.providers.base import (
    RateLimitError,
    TransientRemoteError,
    RetryExhaustedError,
)

logger = logging.getLogger(__name__)


class SyncCancelledError(Exception):
    """Raised when a cancellation request is observed."""
    pass


@dataclass
class RetryPolicy:
    """Backoff parameters."""
    max_attempts: int = 5
    initial_delay_ms: int = 1000
    max_delay_seconds: float = 120.0
    jitter_factor: float = 0.2
    rate_limit_default_seconds: float = 30.0

    def compute_delay(
        self,
        attempt: int,
        error: Exception,
        rand: Callable[[], float] = random.random,
    ) -> float:
        """
        Seconds to wait before the next attempt.

        Args:
            attempt: 1-based number of the attempt that just failed
            error: The failure being retried
            rand: Source of uniform [0, 1) values for jitter

        Returns:
            Delay in seconds, never above max_delay_seconds
        """
        if isinstance(error, RateLimitError):
            if error.retry_after is not None:
                return min(float(error.retry_after), self.max_delay_seconds)
            return min(self.rate_limit_default_seconds, self.max_delay_seconds)

        base = (self.initial_delay_ms / 1000.0) * (2 ** (attempt - 1))
        jitter = rand() * self.jitter_factor * base
        return min(base + jitter, self.max_delay_seconds)


def is_retryable(error: BaseException) -> bool:
    """Classify an error as worth retrying."""
    return isinstance(error, (RateLimitError, TransientRemoteError, httpx.TransportError))


class RetryHandler:
    """
    Runs coroutine factories under a retry policy.

    The classifier decides which errors are retried; sleeps go through
    asyncio.sleep so task cancellation interrupts a pending backoff. When a
    cancel event is bound, setting it aborts a pending backoff with
    SyncCancelledError.
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        classifier: Callable[[BaseException], bool] = is_retryable,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        cancel_event: Optional[asyncio.Event] = None,
    ):
        self.policy = policy or RetryPolicy()
        self.classifier = classifier
        self.cancel_event = cancel_event
        self._sleep = sleep

    async def _backoff(self, delay: float, operation_name: str) -> None:
        """Sleep for delay seconds unless the cancel event fires first."""
        if self.cancel_event is None:
            await self._sleep(delay)
            return

        if self.cancel_event.is_set():
            raise SyncCancelledError(f"{operation_name} cancelled before retry")

        sleeper = asyncio.ensure_future(self._sleep(delay))
        waiter = asyncio.ensure_future(self.cancel_event.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, waiter):
                if not task.done():
                    task.cancel()

        if self.cancel_event.is_set():
            logger.info(f"{operation_name}: backoff interrupted by cancellation")
            raise SyncCancelledError(f"{operation_name} cancelled during backoff")
        sleeper.result()

    async def run(
        self,
        operation: Callable[[], Awaitable[Any]],
        operation_name: str = "operation",
    ) -> Any:
        """
        Execute an operation with retries.

        Args:
            operation: Zero-argument callable returning a fresh awaitable per attempt
            operation_name: Name used in log lines and the exhaustion error

        Returns:
            The operation's result

        Raises:
            RetryExhaustedError: If every attempt failed with a retryable error
            SyncCancelledError: If the cancel event is set while backing off
            Exception: Any non-retryable error, unchanged
        """
        last_error: Optional[Exception] = None

        for attempt in range(1, self.policy.max_attempts + 1):
            try:
                return await operation()
            except Exception as e:
                if not self.classifier(e):
                    raise
                last_error = e
                if attempt >= self.policy.max_attempts:
                    break
                delay = self.policy.compute_delay(attempt, e)
                logger.warning(
                    f"{operation_name} failed ({type(e).__name__}: {e}), "
                    f"retrying in {delay:.1f}s (attempt {attempt}/{self.policy.max_attempts})"
                )
                await self._backoff(delay, operation_name)

        logger.error(f"{operation_name} failed after {self.policy.max_attempts} attempts")
        raise RetryExhaustedError(operation_name, self.policy.max_attempts, last_error) from last_error
