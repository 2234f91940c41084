"""Per-domain circuit breakers for failing upstream sites."""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from ..errors import CircuitOpenError
from .state import DomainStateStore

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing if the domain recovered


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Configuration for circuit breakers."""

    failure_threshold: int = 5  # Open circuit after N consecutive failures
    cooldown: float = 60.0  # Seconds to stay open before a half-open trial
    monitoring_window: float = 300.0  # Failures older than this are forgotten


@dataclass
class CircuitRecord:
    """Breaker state for one domain."""

    state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    opened_at: Optional[float] = None
    last_failure_at: Optional[float] = None
    trial_started_at: Optional[float] = None
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)


class DomainCircuitBreaker:
    """Circuit breaker keyed by hostname.

    Each domain moves independently through CLOSED -> OPEN -> HALF_OPEN.
    A half-open domain admits exactly one trial call; its outcome closes or
    re-opens the circuit.
    """

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        *,
        store: Optional[DomainStateStore[CircuitRecord]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize circuit breaker.

        Parameters
        ----------
        config : CircuitBreakerConfig, optional
            Configuration (uses defaults if not provided)
        store : DomainStateStore, optional
            State store; a fresh one is created if not provided
        clock : callable
            Monotonic time source in seconds
        """
        self.config = config or CircuitBreakerConfig()
        self.store: DomainStateStore[CircuitRecord] = store or DomainStateStore(CircuitRecord)
        self._clock = clock

    def can_execute(self, domain: str) -> bool:
        """Return True if a request to ``domain`` may proceed.

        The only side effect is the OPEN -> HALF_OPEN transition once the
        cool-down has elapsed, which admits the calling request as the trial.
        """
        if not domain:
            return True

        record = self.store.get(domain)
        now = self._clock()
        with record.lock:
            if record.state == CircuitState.CLOSED:
                return True

            if record.state == CircuitState.OPEN:
                if record.opened_at is not None and now - record.opened_at < self.config.cooldown:
                    return False
                LOGGER.info("Circuit breaker half-opened for domain %s", domain)
                record.state = CircuitState.HALF_OPEN
                record.trial_started_at = now
                return True

            # HALF_OPEN: one trial at a time; a trial that never reported back
            # is given up on after another cool-down.
            if (
                record.trial_started_at is not None
                and now - record.trial_started_at < self.config.cooldown
            ):
                return False
            record.trial_started_at = now
            return True

    def record_success(self, domain: str) -> None:
        """Record a successful call to ``domain``."""
        if not domain:
            return

        record = self.store.get(domain)
        with record.lock:
            if record.state == CircuitState.HALF_OPEN:
                LOGGER.info("Circuit breaker closed for domain %s (recovered)", domain)
                self._close(record)
            elif record.state == CircuitState.CLOSED:
                # Reset failure count on success
                record.consecutive_failures = 0
                record.last_failure_at = None

    def record_failure(self, domain: str) -> None:
        """Record a failed call to ``domain``."""
        if not domain:
            return

        record = self.store.get(domain)
        now = self._clock()
        with record.lock:
            if record.state == CircuitState.HALF_OPEN:
                LOGGER.warning("Circuit breaker reopened for domain %s", domain)
                record.state = CircuitState.OPEN
                record.opened_at = now
                record.last_failure_at = now
                record.trial_started_at = None
                return

            if record.state == CircuitState.OPEN:
                return

            if (
                record.last_failure_at is not None
                and now - record.last_failure_at > self.config.monitoring_window
            ):
                record.consecutive_failures = 0

            record.consecutive_failures += 1
            record.last_failure_at = now

            if record.consecutive_failures >= self.config.failure_threshold:
                LOGGER.warning(
                    "Circuit breaker opened for domain %s after %d failures",
                    domain,
                    record.consecutive_failures,
                )
                record.state = CircuitState.OPEN
                record.opened_at = now
            else:
                LOGGER.debug(
                    "Recorded failure for domain %s (%d/%d)",
                    domain,
                    record.consecutive_failures,
                    self.config.failure_threshold,
                )

    async def call(
        self,
        domain: str,
        func: Callable[..., Awaitable[T]],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        """Execute ``func`` with circuit breaker protection.

        Raises
        ------
        CircuitOpenError
            If the circuit for ``domain`` is open
        """
        if not self.can_execute(domain):
            raise CircuitOpenError(domain)

        try:
            result = await func(*args, **kwargs)
        except Exception:
            self.record_failure(domain)
            raise
        self.record_success(domain)
        return result

    def state(self, domain: str) -> CircuitState:
        record = self.store.peek(domain)
        return record.state if record is not None else CircuitState.CLOSED

    def status(self, domain: str) -> Dict[str, Any]:
        """Get circuit breaker status for a domain."""
        record = self.store.peek(domain)
        if record is None:
            record = CircuitRecord()
        with record.lock:
            return {
                "domain": DomainStateStore.normalize(domain),
                "state": record.state.value,
                "failures": record.consecutive_failures,
                "opened_at": record.opened_at,
                "last_failure_at": record.last_failure_at,
                "failure_threshold": self.config.failure_threshold,
                "cooldown": self.config.cooldown,
            }

    def all_statuses(self) -> Dict[str, Dict[str, Any]]:
        return {domain: self.status(domain) for domain, _ in self.store.items()}

    def reset(self, domain: str) -> bool:
        """Manually reset the circuit for ``domain`` to closed state."""
        if not domain:
            return False
        record = self.store.get(domain)
        with record.lock:
            self._close(record)
        LOGGER.info("Circuit breaker manually reset for domain %s", domain)
        return True

    def update_config(self, **changes: Any) -> CircuitBreakerConfig:
        """Replace selected configuration values."""
        known = {f.name for f in fields(CircuitBreakerConfig)}
        unknown = set(changes) - known
        if unknown:
            raise ValueError(f"Unknown circuit breaker options: {sorted(unknown)}")
        self.config = replace(self.config, **changes)
        LOGGER.info("Circuit breaker configuration updated: %s", self.config)
        return self.config

    @staticmethod
    def _close(record: CircuitRecord) -> None:
        record.state = CircuitState.CLOSED
        record.consecutive_failures = 0
        record.opened_at = None
        record.last_failure_at = None
        record.trial_started_at = None
