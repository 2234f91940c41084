"""Bounded retries with exponential backoff."""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from functools import wraps
from typing import Any, Awaitable, Callable, Optional, TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from ..errors import FetchError, NonRetriableError, ScrapeTimeoutError

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_ERROR_CODES = frozenset(
    {
        "ECONNRESET",
        "ECONNREFUSED",
        "ETIMEDOUT",
        "ENOTFOUND",
        "EAI_AGAIN",
        "EPIPE",
        "ECONNABORTED",
    }
)

RETRYABLE_STATUS_CODES = frozenset(
    {
        408,  # Request Timeout
        429,  # Too Many Requests
        500,
        502,
        503,
        504,
        520,  # Cloudflare: unknown error
        521,  # Cloudflare: web server is down
        522,  # Cloudflare: connection timed out
        523,  # Cloudflare: origin is unreachable
        524,  # Cloudflare: a timeout occurred
    }
)

NETWORK_ERROR_PATTERNS = (
    "network error",
    "connection refused",
    "connection reset",
    "timeout",
    "timed out",
    "socket hang up",
    "net::err_",
    "getaddrinfo",
)


@dataclass
class RetryPolicy:
    """Retry budget and backoff shape."""

    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.1  # Up to 10% extra delay to avoid thundering herds

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def compute_delay(self, attempt: int) -> float:
        """Delay to wait after failed attempt number ``attempt`` (1-based)."""
        delay = self.base_delay * (self.multiplier ** max(attempt - 1, 0))
        if self.jitter > 0:
            delay += delay * self.jitter * random.random()
        # Cap last so jittered delays never exceed max_delay
        return min(delay, self.max_delay)


def default_is_retryable(exc: BaseException) -> bool:
    """Treat every failure as transient except explicit client errors."""
    if isinstance(exc, NonRetriableError):
        return False
    if isinstance(exc, FetchError) and exc.status_code is not None:
        if 400 <= exc.status_code < 500 and exc.status_code not in (408, 429):
            return False
    return True


def is_retryable_error(exc: BaseException) -> bool:
    """Strict classification: only known transient network failures."""
    if isinstance(exc, NonRetriableError):
        return False

    code = getattr(exc, "code", None)
    if isinstance(code, str) and code.upper() in RETRYABLE_ERROR_CODES:
        return True

    status = getattr(exc, "status_code", None)
    if status is not None:
        return status in RETRYABLE_STATUS_CODES

    if isinstance(exc, (asyncio.TimeoutError, ConnectionError)):
        return True

    message = str(exc).lower()
    return any(pattern in message for pattern in NETWORK_ERROR_PATTERNS)


class RetryExecutor:
    """Runs an async operation with attempt-bounded retries.

    On exhaustion the last exception propagates unchanged.
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        *,
        is_retryable: Optional[Callable[[BaseException], bool]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self.is_retryable = is_retryable or default_is_retryable
        self._sleep = sleep

    def _wait(self, retry_state: RetryCallState) -> float:
        return self.policy.compute_delay(retry_state.attempt_number)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        LOGGER.warning(
            "Retrying after error (attempt %d/%d, waiting %.2fs): %s",
            retry_state.attempt_number,
            self.policy.max_attempts,
            delay,
            exc,
        )

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.policy.max_attempts),
            wait=self._wait,
            retry=retry_if_exception(self.is_retryable),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )

    async def execute(
        self,
        operation: Callable[..., Awaitable[T]],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        """Call ``operation`` until it succeeds or the budget is spent."""
        try:
            return await self._retrying()(operation, *args, **kwargs)
        except Exception as exc:
            LOGGER.error(
                "Operation failed (max %d attempts): %s",
                self.policy.max_attempts,
                exc,
            )
            raise

    async def execute_with_timeout(
        self,
        operation: Callable[..., Awaitable[T]],
        timeout: float,
        *args: Any,
        **kwargs: Any,
    ) -> T:
        """Like :meth:`execute`, racing every attempt against ``timeout`` seconds.

        A lost race raises :class:`ScrapeTimeoutError`; the abandoned
        attempt is cancelled.
        """

        async def attempt() -> T:
            try:
                return await asyncio.wait_for(operation(*args, **kwargs), timeout)
            except asyncio.TimeoutError:
                raise ScrapeTimeoutError(
                    f"Scraping timeout exceeded after {timeout:.0f}s"
                ) from None

        return await self.execute(attempt)

    def wrap(self, func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        """Create a retrying version of an async function."""

        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await self.execute(func, *args, **kwargs)

        return wrapper
