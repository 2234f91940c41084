import asyncio
from typing import Dict, List, Optional, Tuple

import pytest

from pricewatch.cache import ResultCache
from pricewatch.config import WorkerSettings
from pricewatch.errors import PersistenceError
from pricewatch.models import ScrapeJob
from pricewatch.resilience import (
    CircuitBreakerConfig,
    DomainCircuitBreaker,
    DomainThrottler,
    RetryExecutor,
    RetryPolicy,
)
from pricewatch.scraper.processor import JobProcessor

PRODUCT_HTML = """
<html>
  <head>
    <title>Shop | Widget</title>
    <meta property="og:image" content="//cdn.shop.example/widget.jpg">
  </head>
  <body>
    <h1 class="product-name">  Deluxe   Widget </h1>
    <span class="price">$1,299.99</span>
  </body>
</html>
"""


class FakeClock:
    """Manually advanced monotonic clock with a matching sleep coroutine."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeRepository:
    """In-memory product store keyed by URL."""

    def __init__(self, fail: bool = False) -> None:
        self.rows: Dict[str, dict] = {}
        self.failures: List[Tuple[str, str]] = []
        self.fail = fail
        self._next_id = 1

    def upsert_product(self, record, scraped_at) -> int:
        if self.fail:
            raise PersistenceError("database unavailable")
        row = self.rows.get(record.source_url)
        if row is None:
            row = {"id": self._next_id}
            self._next_id += 1
            self.rows[record.source_url] = row
        row.update(
            title=record.title,
            price=record.price,
            image=record.image,
            last_scraped_at=scraped_at,
        )
        return row["id"]

    def record_failure(self, url, title, scraped_at) -> None:
        self.failures.append((url, title))
        if url not in self.rows:
            self.rows[url] = {"id": self._next_id, "title": title, "price": None, "image": None}
            self._next_id += 1
        self.rows[url]["last_scraped_at"] = scraped_at


class FakeFetcher:
    """Returns canned HTML, optionally failing or stalling first."""

    def __init__(
        self,
        html: str = PRODUCT_HTML,
        *,
        errors: Optional[List[BaseException]] = None,
        delay: float = 0.0,
    ) -> None:
        self.html = html
        self.errors = list(errors or [])
        self.delay = delay
        self.calls: List[str] = []
        self.active = 0
        self.peak_active = 0

    async def execute(self, url: str) -> str:
        self.calls.append(url)
        self.active += 1
        self.peak_active = max(self.peak_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.errors:
                raise self.errors.pop(0)
            return self.html
        finally:
            self.active -= 1


class FakeCursor:
    """psycopg2-style cursor; ``results`` feeds one row set per execute."""

    def __init__(self, conn):
        self.conn = conn
        self.rowcount = conn.rowcount

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        if self.conn.error is not None:
            raise self.conn.error
        self.conn.executed.append((sql, params))
        if self.conn.results:
            self.conn.rows = list(self.conn.results.pop(0))

    def fetchone(self):
        return self.conn.rows.pop(0) if self.conn.rows else None

    def fetchall(self):
        rows, self.conn.rows = self.conn.rows, []
        return rows


class FakeConnection:
    def __init__(self, rows=None, error=None, results=None, rowcount=0):
        self.rows = list(rows or [])
        self.results = list(results or [])
        self.rowcount = rowcount
        self.error = error
        self.executed = []
        self.committed = False
        self.rolled_back = False
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.committed = True
        else:
            self.rolled_back = True
        return False

    def cursor(self, **kwargs):
        return FakeCursor(self)

    def close(self):
        self.closed = True


class FakeQueue:
    def __init__(self, urls=()):
        self.pending: List[ScrapeJob] = [ScrapeJob(url=url) for url in urls]
        self.completed: Dict[str, dict] = {}
        self.failed: List[Tuple[str, str, bool]] = []
        self.progress: Dict[str, List[int]] = {}
        self.stall_checks = 0
        self.heartbeats: Dict[str, int] = {}

    def enqueue(self, url):
        job = ScrapeJob(url=url)
        self.pending.append(job)
        return job.id

    def dequeue(self, worker_id, limit=1):
        claimed, self.pending = self.pending[:limit], self.pending[limit:]
        return claimed

    def mark_completed(self, job_id, result):
        self.completed[job_id] = result

    def mark_failed(self, job_id, error, retry=True):
        self.failed.append((job_id, error, retry))

    def update_progress(self, job_id, percent):
        self.progress.setdefault(job_id, []).append(percent)

    def heartbeat(self, job_id):
        self.heartbeats[job_id] = self.heartbeats.get(job_id, 0) + 1

    def requeue_stalled(self):
        self.stall_checks += 1
        return 0

    def enqueue_batch(self, urls):
        return [self.enqueue(url) for url in urls]

    def purge_completed(self, older_than_days=7):
        return 3

    def get_stats(self):
        return {"pending": len(self.pending)}


class RecordingObserver:
    def __init__(self) -> None:
        self.progress: List[int] = []
        self.completed: list = []
        self.failed: list = []

    async def on_progress(self, job, percent) -> None:
        self.progress.append(percent)

    async def on_completed(self, job, result) -> None:
        self.completed.append(result)

    async def on_failed(self, job, exc, kind) -> None:
        self.failed.append((exc, kind))


async def _no_sleep(seconds: float) -> None:
    return None


def make_processor(
    fetcher=None,
    repository=None,
    *,
    settings: Optional[WorkerSettings] = None,
    breaker: Optional[DomainCircuitBreaker] = None,
    cache: Optional[ResultCache] = None,
    observer=None,
    retry_attempts: int = 1,
):
    settings = settings or WorkerSettings()
    return JobProcessor(
        fetcher or FakeFetcher(),
        repository if repository is not None else FakeRepository(),
        cache=cache or ResultCache(),
        breaker=breaker or DomainCircuitBreaker(CircuitBreakerConfig()),
        throttler=DomainThrottler(0.0, domain_delays={}),
        retry=RetryExecutor(RetryPolicy(max_attempts=retry_attempts, jitter=0.0), sleep=_no_sleep),
        settings=settings,
        observer=observer,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def repository():
    return FakeRepository()


@pytest.fixture
def observer():
    return RecordingObserver()
