"""Per-domain request pacing."""
from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, Dict, Iterable, Optional

from .state import DomainStateStore

LOGGER = logging.getLogger(__name__)

# Seconds between requests to the same domain
DEFAULT_DOMAIN_DELAYS: Dict[str, float] = {
    # Popular e-commerce sites with stricter limits
    "amazon.com": 5.0,
    "amazon.co.uk": 5.0,
    "amazon.ca": 5.0,
    "ebay.com": 3.0,
    "ebay.co.uk": 3.0,
    "walmart.com": 4.0,
    "target.com": 3.0,
    "bestbuy.com": 3.0,
    "homedepot.com": 3.0,
    "lowes.com": 3.0,
    # Shopify stores (more lenient)
    "shopify.com": 1.5,
    # Social commerce
    "etsy.com": 2.5,
    "mercari.com": 2.5,
}


@dataclass
class ThrottleRecord:
    """Pacing state for one domain."""

    last_request_at: Optional[float] = None
    in_flight: int = 0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    slots: Optional[asyncio.Semaphore] = field(default=None, repr=False)


class DomainThrottler:
    """Enforces a minimum interval between requests to the same domain.

    Callers for the same domain are serialized on that domain's lock while
    they wait; callers for different domains never block each other. The
    throttler never rejects work, it only delays it.
    """

    def __init__(
        self,
        default_delay: float = 2.0,
        *,
        domain_delays: Optional[Dict[str, float]] = None,
        max_in_flight: int = 0,
        store: Optional[DomainStateStore[ThrottleRecord]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize throttler.

        Parameters
        ----------
        default_delay : float
            Seconds between requests for domains without a specific delay
        domain_delays : dict[str, float], optional
            Per-domain delays (defaults to the built-in e-commerce table)
        max_in_flight : int
            Concurrent requests allowed per domain inside :meth:`slot`
            (0 disables the bound)
        store : DomainStateStore, optional
            State store; a fresh one is created if not provided
        clock, sleep : callable
            Time source and sleep coroutine (injectable for tests)
        """
        if default_delay < 0:
            raise ValueError("default_delay must not be negative")
        self.default_delay = default_delay
        self.max_in_flight = max_in_flight
        self._delays: Dict[str, float] = {
            DomainStateStore.normalize(domain): delay
            for domain, delay in (
                DEFAULT_DOMAIN_DELAYS if domain_delays is None else domain_delays
            ).items()
        }
        self.store: DomainStateStore[ThrottleRecord] = store or DomainStateStore(ThrottleRecord)
        self._clock = clock
        self._sleep = sleep

    def delay_for(self, domain: str) -> float:
        """Get the configured delay for a domain.

        Exact matches win, then the closest configured parent domain
        (``www.amazon.com`` -> ``amazon.com``), then the default.
        """
        domain = DomainStateStore.normalize(domain)
        if domain in self._delays:
            return self._delays[domain]

        parts = domain.split(".")
        for i in range(1, len(parts) - 1):
            parent = ".".join(parts[i:])
            if parent in self._delays:
                return self._delays[parent]

        return self.default_delay

    async def throttle(self, domain: str) -> None:
        """Suspend until one more request to ``domain`` may be issued."""
        if not domain:
            LOGGER.warning("No domain provided for throttling")
            return

        domain = DomainStateStore.normalize(domain)
        record = self.store.get(domain)
        delay = self.delay_for(domain)

        async with record.lock:
            if record.last_request_at is not None:
                remaining = delay - (self._clock() - record.last_request_at)
                if remaining > 0:
                    LOGGER.info(
                        "Throttling domain %s for %.2fs (configured %.2fs)",
                        domain,
                        remaining,
                        delay,
                    )
                    await self._sleep(remaining)

            record.last_request_at = self._clock()

        LOGGER.debug("Domain throttle check completed for %s", domain)

    @asynccontextmanager
    async def slot(self, domain: str) -> AsyncIterator[None]:
        """Throttle, then hold one of the domain's in-flight slots."""
        record = self.store.get(domain) if domain else None

        if record is None:
            await self.throttle(domain)
            yield
            return

        if self.max_in_flight > 0:
            if record.slots is None:
                record.slots = asyncio.Semaphore(self.max_in_flight)
            async with record.slots:
                await self.throttle(domain)
                record.in_flight += 1
                try:
                    yield
                finally:
                    record.in_flight -= 1
        else:
            await self.throttle(domain)
            record.in_flight += 1
            try:
                yield
            finally:
                record.in_flight -= 1

    async def batch_throttle(self, domains: Iterable[str]) -> None:
        """Throttle several domains sequentially, once each."""
        unique = list(dict.fromkeys(DomainStateStore.normalize(d) for d in domains if d))
        if not unique:
            return
        LOGGER.info("Batch throttling %d domains", len(unique))
        for domain in unique:
            await self.throttle(domain)

    def is_throttled(self, domain: str) -> bool:
        """Check if a request to ``domain`` right now would have to wait."""
        if not domain:
            return False
        record = self.store.peek(domain)
        if record is None or record.last_request_at is None:
            return False
        return self._clock() - record.last_request_at < self.delay_for(domain)

    def clear(self, domain: str) -> bool:
        """Forget the last request time for ``domain``."""
        if not domain:
            return False
        record = self.store.peek(domain)
        if record is None or record.last_request_at is None:
            return False
        record.last_request_at = None
        LOGGER.info("Cleared throttle for domain %s", domain)
        return True

    def set_domain_delay(self, domain: str, delay: float) -> bool:
        """Update the delay configuration for a domain."""
        if not domain or delay < 0:
            return False
        domain = DomainStateStore.normalize(domain)
        self._delays[domain] = delay
        LOGGER.info("Updated delay for domain %s to %.2fs", domain, delay)
        return True

    def domain_delays(self) -> Dict[str, float]:
        return dict(self._delays)

    def stats(self) -> Dict[str, Dict[str, Optional[float]]]:
        """Get throttling statistics for monitoring."""
        now = self._clock()
        out: Dict[str, Dict[str, Optional[float]]] = {}
        for domain, record in self.store.items():
            since = None if record.last_request_at is None else now - record.last_request_at
            out[domain] = {
                "seconds_since_last_request": since,
                "configured_delay": self.delay_for(domain),
                "in_flight": float(record.in_flight),
            }
        return out
