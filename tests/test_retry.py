import asyncio

import pytest

from pricewatch.errors import CircuitOpenError, FetchError, ScrapeTimeoutError
from pricewatch.resilience import RetryExecutor, RetryPolicy, is_retryable_error


class Flaky:
    def __init__(self, failures, exc_factory=lambda n: ConnectionError(f"connection reset {n}")):
        self.failures = failures
        self.exc_factory = exc_factory
        self.calls = 0

    async def __call__(self, value="ok"):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc_factory(self.calls)
        return value


def _executor(attempts=3, **policy):
    sleeps = []

    async def sleep(seconds):
        sleeps.append(seconds)

    policy.setdefault("jitter", 0.0)
    executor = RetryExecutor(RetryPolicy(max_attempts=attempts, **policy), sleep=sleep)
    return executor, sleeps


def test_succeeds_after_transient_failures():
    executor, sleeps = _executor(attempts=3)
    op = Flaky(failures=2)

    assert asyncio.run(executor.execute(op, "done")) == "done"
    assert op.calls == 3
    assert sleeps == [pytest.approx(1.0), pytest.approx(2.0)]


def test_exhaustion_propagates_last_error():
    executor, sleeps = _executor(attempts=3)
    op = Flaky(failures=10)

    with pytest.raises(ConnectionError, match="connection reset 3"):
        asyncio.run(executor.execute(op))
    assert op.calls == 3
    assert len(sleeps) == 2


def test_delays_are_monotonic_and_capped():
    policy = RetryPolicy(max_attempts=10, base_delay=1.0, multiplier=2.0, max_delay=30.0, jitter=0.0)
    delays = [policy.compute_delay(n) for n in range(1, 9)]
    assert delays == sorted(delays)
    assert delays[:5] == [1.0, 2.0, 4.0, 8.0, 16.0]
    assert max(delays) == 30.0


def test_jittered_delays_stay_monotonic_past_the_cap():
    policy = RetryPolicy(base_delay=1.0, multiplier=2.0, max_delay=30.0, jitter=0.1)
    for _ in range(200):
        delays = [policy.compute_delay(n) for n in range(1, 10)]
        assert delays == sorted(delays)
        assert max(delays) <= 30.0
        assert delays[-1] == 30.0


def test_jitter_only_adds_delay():
    policy = RetryPolicy(base_delay=1.0, jitter=0.1)
    for _ in range(50):
        assert 1.0 <= policy.compute_delay(1) <= 1.1


def test_non_retriable_error_is_not_retried():
    executor, sleeps = _executor(attempts=5)
    op = Flaky(failures=10, exc_factory=lambda n: CircuitOpenError("shop.example"))

    with pytest.raises(CircuitOpenError):
        asyncio.run(executor.execute(op))
    assert op.calls == 1
    assert sleeps == []


def test_client_errors_are_not_retried():
    executor, _ = _executor(attempts=3)
    op = Flaky(failures=10, exc_factory=lambda n: FetchError("HTTP 404", status_code=404))

    with pytest.raises(FetchError):
        asyncio.run(executor.execute(op))
    assert op.calls == 1


def test_rate_limit_is_retried():
    executor, _ = _executor(attempts=3)
    op = Flaky(failures=1, exc_factory=lambda n: FetchError("HTTP 429", status_code=429))

    assert asyncio.run(executor.execute(op)) == "ok"
    assert op.calls == 2


def test_custom_predicate():
    sleeps = []

    async def sleep(seconds):
        sleeps.append(seconds)

    executor = RetryExecutor(
        RetryPolicy(max_attempts=3, jitter=0.0),
        is_retryable=lambda exc: False,
        sleep=sleep,
    )
    op = Flaky(failures=1)
    with pytest.raises(ConnectionError):
        asyncio.run(executor.execute(op))
    assert op.calls == 1


def test_execute_with_timeout_raises_scrape_timeout():
    executor, _ = _executor(attempts=2)
    calls = 0

    async def slow():
        nonlocal calls
        calls += 1
        await asyncio.sleep(1)
        return "late"

    with pytest.raises(ScrapeTimeoutError, match="timeout"):
        asyncio.run(executor.execute_with_timeout(slow, 0.02))
    assert calls == 2


def test_execute_with_timeout_returns_fast_result():
    executor, _ = _executor(attempts=1)
    op = Flaky(failures=0)
    assert asyncio.run(executor.execute_with_timeout(op, 1.0, "quick")) == "quick"


def test_wrap_preserves_name():
    executor, _ = _executor(attempts=2)

    async def fetch_page(value):
        return value

    wrapped = executor.wrap(fetch_page)
    assert wrapped.__name__ == "fetch_page"
    assert asyncio.run(wrapped("x")) == "x"


@pytest.mark.parametrize(
    "exc, expected",
    [
        (FetchError("reset", code="ECONNRESET"), True),
        (FetchError("bad gateway", status_code=502), True),
        (FetchError("not found", status_code=404), False),
        (ConnectionError("refused"), True),
        (RuntimeError("Navigation timeout of 30000 ms exceeded"), True),
        (ValueError("bad selector"), False),
        (CircuitOpenError("shop.example"), False),
    ],
)
def test_strict_retryable_classification(exc, expected):
    assert is_retryable_error(exc) is expected
