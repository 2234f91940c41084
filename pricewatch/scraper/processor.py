"""Per-job orchestration: cache, circuit, throttle, fetch, extract, persist."""
from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

from ..cache import ResultCache
from ..config import WorkerSettings
from ..errors import CircuitOpenError, FailureKind, ScrapeTimeoutError, classify_failure
from ..extraction import PageDocument, build_record, extract_field
from ..models import FAILED_TITLE, TIMEOUT_TITLE, JobResult, ScrapeJob
from ..resilience import DomainCircuitBreaker, DomainThrottler, RetryExecutor
from ..upsert import ProductRepository
from .cluster import PageFetcher

LOGGER = logging.getLogger(__name__)

CACHE_KIND = "product"

# Progress checkpoints reported to the queue
PROGRESS_CLEARED = 10
PROGRESS_FETCHED = 40
PROGRESS_TITLE = 60
PROGRESS_PRICE = 80
PROGRESS_PERSISTED = 90
PROGRESS_DONE = 100


class JobObserver(Protocol):
    """Receives per-job progress and outcome events."""

    async def on_progress(self, job: ScrapeJob, percent: int) -> None:
        ...

    async def on_completed(self, job: ScrapeJob, result: JobResult) -> None:
        ...

    async def on_failed(self, job: ScrapeJob, exc: BaseException, kind: FailureKind) -> None:
        ...


class LoggingObserver:
    """Observer that only logs events."""

    async def on_progress(self, job: ScrapeJob, percent: int) -> None:
        LOGGER.debug("Job %s progress %d%%", job.id, percent)

    async def on_completed(self, job: ScrapeJob, result: JobResult) -> None:
        LOGGER.info(
            "Job %s completed (%dms, cached=%s)",
            job.id,
            result.processing_time_ms,
            result.from_cache,
        )

    async def on_failed(self, job: ScrapeJob, exc: BaseException, kind: FailureKind) -> None:
        LOGGER.error("Job %s failed (%s): %s", job.id, kind.value, exc)


class _ProgressTracker:
    """Forwards only strictly increasing progress values."""

    def __init__(self, job: ScrapeJob, observer: JobObserver) -> None:
        self.job = job
        self.observer = observer
        self.last = 0

    async def report(self, percent: int) -> None:
        if percent <= self.last:
            return
        self.last = percent
        await self.observer.on_progress(self.job, percent)


class JobProcessor:
    """Runs one scrape job through the protective pipeline.

    ``Received -> CacheCheck -> CircuitCheck -> Throttle -> Fetch -> Extract
    -> Persist -> CacheWrite -> RecordSuccess``. A cache hit ends the job
    immediately; an open circuit fails it without fetching. Any failure
    after the circuit check is recorded against the domain, persisted as a
    degraded row and re-raised for the queue's own retry policy.
    """

    def __init__(
        self,
        fetcher: PageFetcher,
        repository: ProductRepository,
        *,
        cache: ResultCache,
        breaker: DomainCircuitBreaker,
        throttler: DomainThrottler,
        retry: RetryExecutor,
        settings: Optional[WorkerSettings] = None,
        observer: Optional[JobObserver] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.fetcher = fetcher
        self.repository = repository
        self.cache = cache
        self.breaker = breaker
        self.throttler = throttler
        self.retry = retry
        self.settings = settings or WorkerSettings()
        self.observer: JobObserver = observer or LoggingObserver()
        self._clock = clock

    def _elapsed_ms(self, started: float) -> int:
        return int((self._clock() - started) * 1000)

    async def process(self, job: ScrapeJob) -> JobResult:
        """Process ``job`` and return its result payload.

        Raises
        ------
        CircuitOpenError
            If the job's domain is currently shunned
        ScrapeTimeoutError
            If fetching exceeded the hard deadline
        Exception
            Any other fetch or persistence failure, unchanged
        """
        started = self._clock()
        domain = job.domain
        tracker = _ProgressTracker(job, self.observer)
        LOGGER.info(
            "Processing job %s: %s",
            job.id,
            job.url,
            extra={"job_id": job.id, "url": job.url, "domain": domain, "event": "job_start"},
        )

        cache_key = self.cache.generate_key(CACHE_KIND, job.url)
        cached = self.cache.get(cache_key)
        if cached is not None:
            LOGGER.info("Cache hit for job %s", job.id, extra={"job_id": job.id, "url": job.url})
            await tracker.report(PROGRESS_DONE)
            result = JobResult(
                url=job.url,
                product_id=cached.get("product_id"),
                title=cached["title"],
                price=cached.get("price"),
                image=cached.get("image"),
                processing_time_ms=self._elapsed_ms(started),
                from_cache=True,
            )
            await self.observer.on_completed(job, result)
            return result

        if not self.breaker.can_execute(domain):
            exc = CircuitOpenError(domain)
            LOGGER.warning(
                "Rejecting job %s: circuit open for %s",
                job.id,
                domain,
                extra={"job_id": job.id, "url": job.url, "domain": domain, "event": "circuit_open"},
            )
            await self._persist_failure(job, FailureKind.CIRCUIT_OPEN)
            await self.observer.on_failed(job, exc, FailureKind.CIRCUIT_OPEN)
            raise exc

        try:
            result = await self._scrape(job, cache_key, tracker, started)
        except Exception as exc:
            self.breaker.record_failure(domain)
            kind = classify_failure(exc)
            LOGGER.error(
                "Job %s failed for %s: %s",
                job.id,
                job.url,
                exc,
                extra={
                    "job_id": job.id,
                    "url": job.url,
                    "domain": domain,
                    "error_type": type(exc).__name__,
                    "is_timeout": kind is FailureKind.TIMEOUT,
                    "duration_ms": self._elapsed_ms(started),
                    "attempts": job.attempts_made,
                    "event": "job_error",
                },
            )
            await self._persist_failure(job, kind)
            await self.observer.on_failed(job, exc, kind)
            if kind is FailureKind.TIMEOUT:
                raise ScrapeTimeoutError(
                    f"[{FailureKind.TIMEOUT.value}] Scraping timeout for {job.url}: {exc}"
                ) from exc
            raise

        await self.observer.on_completed(job, result)
        return result

    async def _scrape(
        self,
        job: ScrapeJob,
        cache_key: str,
        tracker: _ProgressTracker,
        started: float,
    ) -> JobResult:
        async with self.throttler.slot(job.domain):
            await tracker.report(PROGRESS_CLEARED)
            html = await self.retry.execute_with_timeout(
                self.fetcher.execute,
                self.settings.fetch_deadline,
                job.url,
            )
        await tracker.report(PROGRESS_FETCHED)

        doc = PageDocument(html, job.url)
        title = extract_field(doc, "title")
        await tracker.report(PROGRESS_TITLE)
        price = extract_field(doc, "price")
        await tracker.report(PROGRESS_PRICE)
        image = extract_field(doc, "image")
        record = build_record(job.url, title, price, image)
        LOGGER.debug("Extracted product data for %s: %s", job.url, record)

        scraped_at = datetime.now(timezone.utc)
        product_id = await asyncio.to_thread(self.repository.upsert_product, record, scraped_at)
        await tracker.report(PROGRESS_PERSISTED)

        cached = record.model_dump()
        cached["product_id"] = product_id
        self.cache.set(cache_key, cached, CACHE_KIND)
        await tracker.report(PROGRESS_DONE)

        self.breaker.record_success(job.domain)

        result = JobResult(
            url=job.url,
            product_id=product_id,
            title=record.title,
            price=record.price,
            image=record.image,
            scraped_at=scraped_at,
            processing_time_ms=self._elapsed_ms(started),
        )
        LOGGER.info(
            "Successfully processed job %s: %s (%dms)",
            job.id,
            record.title,
            result.processing_time_ms,
        )
        return result

    async def _persist_failure(self, job: ScrapeJob, kind: FailureKind) -> None:
        title = TIMEOUT_TITLE if kind is FailureKind.TIMEOUT else FAILED_TITLE
        try:
            await asyncio.to_thread(
                self.repository.record_failure,
                job.url,
                title,
                datetime.now(timezone.utc),
            )
        except Exception as exc:  # never mask the job's own error
            LOGGER.error(
                "Database error for failed job %s: %s",
                job.id,
                exc,
                extra={"job_id": job.id, "event": "db_error"},
            )
