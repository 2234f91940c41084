import asyncio

import pytest

from conftest import FakeClock
from pricewatch.errors import CircuitOpenError
from pricewatch.resilience import CircuitBreakerConfig, CircuitState, DomainCircuitBreaker


@pytest.fixture
def breaker(clock):
    return DomainCircuitBreaker(CircuitBreakerConfig(failure_threshold=5, cooldown=60.0), clock=clock)


def _fail(breaker, domain, times):
    for _ in range(times):
        breaker.record_failure(domain)


def test_opens_exactly_at_threshold(breaker):
    _fail(breaker, "shop.example", 4)
    assert breaker.state("shop.example") == CircuitState.CLOSED
    assert breaker.can_execute("shop.example")

    breaker.record_failure("shop.example")
    assert breaker.state("shop.example") == CircuitState.OPEN
    assert not breaker.can_execute("shop.example")


def test_success_resets_failure_count(breaker):
    _fail(breaker, "shop.example", 4)
    breaker.record_success("shop.example")
    _fail(breaker, "shop.example", 4)
    assert breaker.state("shop.example") == CircuitState.CLOSED
    assert breaker.status("shop.example")["failures"] == 4


def test_cooldown_boundary(breaker, clock):
    _fail(breaker, "shop.example", 5)

    clock.advance(60.0 - 0.001)
    assert not breaker.can_execute("shop.example")

    clock.advance(0.002)
    assert breaker.can_execute("shop.example")
    assert breaker.state("shop.example") == CircuitState.HALF_OPEN


def test_half_open_admits_single_trial(breaker, clock):
    _fail(breaker, "shop.example", 5)
    clock.advance(61)

    assert breaker.can_execute("shop.example")
    assert not breaker.can_execute("shop.example")
    assert not breaker.can_execute("shop.example")


def test_half_open_success_closes(breaker, clock):
    _fail(breaker, "shop.example", 5)
    clock.advance(61)
    assert breaker.can_execute("shop.example")

    breaker.record_success("shop.example")
    assert breaker.state("shop.example") == CircuitState.CLOSED
    assert breaker.status("shop.example")["failures"] == 0
    assert breaker.can_execute("shop.example")


def test_half_open_failure_reopens_with_fresh_cooldown(breaker, clock):
    _fail(breaker, "shop.example", 5)
    clock.advance(61)
    assert breaker.can_execute("shop.example")

    breaker.record_failure("shop.example")
    assert breaker.state("shop.example") == CircuitState.OPEN

    clock.advance(59)
    assert not breaker.can_execute("shop.example")
    clock.advance(2)
    assert breaker.can_execute("shop.example")


def test_stale_trial_is_replaced_after_cooldown(breaker, clock):
    _fail(breaker, "shop.example", 5)
    clock.advance(61)
    assert breaker.can_execute("shop.example")

    clock.advance(61)
    assert breaker.can_execute("shop.example")


def test_failures_outside_window_are_forgotten(clock):
    breaker = DomainCircuitBreaker(
        CircuitBreakerConfig(failure_threshold=3, monitoring_window=300.0),
        clock=clock,
    )
    _fail(breaker, "shop.example", 2)
    clock.advance(301)
    breaker.record_failure("shop.example")
    assert breaker.state("shop.example") == CircuitState.CLOSED
    assert breaker.status("shop.example")["failures"] == 1


def test_domains_are_independent(breaker):
    _fail(breaker, "a.example", 5)
    assert not breaker.can_execute("a.example")
    assert breaker.can_execute("b.example")
    assert breaker.state("b.example") == CircuitState.CLOSED


def test_domain_keys_are_case_insensitive(breaker):
    _fail(breaker, "Shop.Example", 5)
    assert not breaker.can_execute("shop.example")


def test_empty_domain_always_allowed(breaker):
    _fail(breaker, "", 10)
    assert breaker.can_execute("")


def test_reset_closes_circuit(breaker):
    _fail(breaker, "shop.example", 5)
    assert breaker.reset("shop.example")
    assert breaker.state("shop.example") == CircuitState.CLOSED


def test_update_config_rejects_unknown_options(breaker):
    breaker.update_config(failure_threshold=2)
    assert breaker.config.failure_threshold == 2
    with pytest.raises(ValueError):
        breaker.update_config(bogus=1)


def test_call_wraps_coroutine():
    breaker = DomainCircuitBreaker(CircuitBreakerConfig(failure_threshold=1), clock=FakeClock())

    async def boom():
        raise RuntimeError("down")

    async def ok():
        return "fine"

    async def scenario():
        assert await breaker.call("shop.example", ok) == "fine"
        with pytest.raises(RuntimeError):
            await breaker.call("shop.example", boom)
        with pytest.raises(CircuitOpenError) as excinfo:
            await breaker.call("shop.example", ok)
        return excinfo.value

    error = asyncio.run(scenario())
    assert error.domain == "shop.example"
    assert str(error).startswith("[circuit_open]")
