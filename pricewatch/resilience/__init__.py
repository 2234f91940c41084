"""Resilience toolkit guarding calls to untrusted upstream sites.

- Per-domain request pacing (throttle)
- Per-domain circuit breakers
- Bounded retries with exponential backoff
"""

from .circuit_breaker import CircuitBreakerConfig, CircuitState, DomainCircuitBreaker
from .retry import RetryExecutor, RetryPolicy, is_retryable_error
from .state import DomainStateStore
from .throttle import DomainThrottler

__all__ = [
    "CircuitBreakerConfig",
    "CircuitState",
    "DomainCircuitBreaker",
    "RetryExecutor",
    "RetryPolicy",
    "is_retryable_error",
    "DomainStateStore",
    "DomainThrottler",
]
