"""Error taxonomy for the scraping pipeline."""
from __future__ import annotations

import asyncio
from enum import Enum
from typing import Optional


class FailureKind(str, Enum):
    """Classification of a failed job used for logging and failure markers."""

    TIMEOUT = "timeout"
    CIRCUIT_OPEN = "circuit_open"
    OTHER = "other"


class ScrapeError(Exception):
    """Base class for pipeline errors."""


class NonRetriableError(ScrapeError):
    """Failure that the retry executor must propagate without retrying."""


class CircuitOpenError(NonRetriableError):
    """Domain is currently shunned by the circuit breaker."""

    def __init__(self, domain: str) -> None:
        self.domain = domain
        super().__init__(
            f"[{FailureKind.CIRCUIT_OPEN.value}] Circuit breaker is open for domain: {domain}"
        )


class FetchError(ScrapeError):
    """Page could not be retrieved (network, non-2xx or empty content)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class ScrapeTimeoutError(FetchError):
    """Hard fetch deadline exceeded."""


class PersistenceError(ScrapeError):
    """Upsert against the product store failed."""


def is_timeout(exc: BaseException) -> bool:
    """Return True when ``exc`` represents a deadline or navigation timeout."""
    if isinstance(exc, (ScrapeTimeoutError, TimeoutError, asyncio.TimeoutError)):
        return True
    if type(exc).__name__ == "TimeoutError":
        # playwright.async_api.TimeoutError does not subclass the builtin
        return True
    return "timeout" in str(exc).lower()


def classify_failure(exc: BaseException) -> FailureKind:
    """Map an exception to a :class:`FailureKind`."""
    if isinstance(exc, CircuitOpenError):
        return FailureKind.CIRCUIT_OPEN
    if is_timeout(exc):
        return FailureKind.TIMEOUT
    return FailureKind.OTHER
