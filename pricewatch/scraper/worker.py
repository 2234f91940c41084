"""Worker that drains the scrape queue through a JobProcessor."""
from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import uuid
from typing import Optional, Set

from ..cache import ResultCache
from ..config import WorkerSettings
from ..errors import FailureKind
from ..models import JobResult, ScrapeJob
from ..resilience import (
    CircuitBreakerConfig,
    DomainCircuitBreaker,
    DomainThrottler,
    RetryExecutor,
    RetryPolicy,
)
from ..upsert import ProductRepository
from .cluster import PageFetcher
from .processor import JobObserver, JobProcessor
from .queue import JobQueue

LOGGER = logging.getLogger(__name__)


def default_worker_id() -> str:
    hostname = os.getenv("HOSTNAME", "localhost")
    return f"{hostname}-{uuid.uuid4().hex[:8]}"


def build_processor(
    settings: WorkerSettings,
    fetcher: PageFetcher,
    repository: ProductRepository,
    observer: Optional[JobObserver] = None,
) -> JobProcessor:
    """Wire a processor with fresh resilience components from ``settings``."""
    breaker = DomainCircuitBreaker(
        CircuitBreakerConfig(
            failure_threshold=settings.circuit_failure_threshold,
            cooldown=settings.circuit_cooldown,
            monitoring_window=settings.circuit_window,
        )
    )
    throttler = DomainThrottler(
        settings.throttle_delay,
        max_in_flight=settings.throttle_max_in_flight,
    )
    retry = RetryExecutor(
        RetryPolicy(
            max_attempts=settings.retry_attempts,
            base_delay=settings.retry_base_delay,
            multiplier=settings.retry_multiplier,
            max_delay=settings.retry_max_delay,
            jitter=settings.retry_jitter,
        )
    )
    cache = ResultCache(settings.cache_dir, settings.cache_ttl, size_limit=settings.cache_size_limit)
    return JobProcessor(
        fetcher,
        repository,
        cache=cache,
        breaker=breaker,
        throttler=throttler,
        retry=retry,
        settings=settings,
        observer=observer,
    )


class QueueProgressObserver:
    """Forwards job progress to the queue as a heartbeat."""

    def __init__(self, queue: JobQueue) -> None:
        self.queue = queue

    async def on_progress(self, job: ScrapeJob, percent: int) -> None:
        try:
            await asyncio.to_thread(self.queue.update_progress, job.id, percent)
        except Exception as exc:
            LOGGER.warning("Could not update progress for job %s: %s", job.id, exc)

    async def on_completed(self, job: ScrapeJob, result: JobResult) -> None:
        LOGGER.debug("Job %s finished in %dms", job.id, result.processing_time_ms)

    async def on_failed(self, job: ScrapeJob, exc: BaseException, kind: FailureKind) -> None:
        LOGGER.debug("Job %s failed (%s)", job.id, kind.value)


class Worker:
    """Async queue worker with bounded concurrency."""

    def __init__(
        self,
        queue: JobQueue,
        processor: JobProcessor,
        settings: Optional[WorkerSettings] = None,
        *,
        worker_id: Optional[str] = None,
        max_jobs: Optional[int] = None,
        graceful_shutdown: bool = True,
    ) -> None:
        """Initialize worker.

        Parameters
        ----------
        queue : JobQueue
            Job queue instance
        processor : JobProcessor
            Pipeline that runs each job
        settings : WorkerSettings, optional
            Concurrency, poll interval and stall interval
        worker_id : str, optional
            Identifier recorded on claimed jobs (defaults to hostname-UUID)
        max_jobs : int, optional
            Stop after this many jobs (for testing)
        graceful_shutdown : bool
            Install SIGINT/SIGTERM handlers while running
        """
        self.queue = queue
        self.processor = processor
        self.settings = settings or WorkerSettings()
        self.worker_id = worker_id or default_worker_id()
        self.max_jobs = max_jobs
        self.graceful_shutdown = graceful_shutdown
        self.running = False
        self.jobs_started = 0
        self.jobs_processed = 0
        self.jobs_succeeded = 0
        self.jobs_failed = 0
        self.peak_in_flight = 0
        self._stop_event: Optional[asyncio.Event] = None

    def stop(self) -> None:
        """Ask the worker to stop after in-flight jobs finish."""
        self.running = False
        if self._stop_event is not None:
            self._stop_event.set()

    def _setup_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for signum in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.add_signal_handler(signum, self._handle_shutdown, signum)

    def _remove_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for signum in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.remove_signal_handler(signum)

    def _handle_shutdown(self, signum: int) -> None:
        LOGGER.info("Received shutdown signal %s, stopping gracefully...", signum)
        self.stop()

    async def _idle(self, seconds: float) -> None:
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)

    def _free_slots(self, in_flight: int) -> int:
        free = self.settings.concurrency - in_flight
        if self.max_jobs is not None:
            free = min(free, self.max_jobs - self.jobs_started)
        return free

    async def run(self) -> None:
        """Run worker loop until stopped or ``max_jobs`` is reached."""
        loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        self.running = True
        if self.graceful_shutdown:
            self._setup_signal_handlers(loop)

        LOGGER.info(
            "Worker %s ready (concurrency=%d, poll_interval=%.1fs)",
            self.worker_id,
            self.settings.concurrency,
            self.settings.poll_interval,
        )

        in_flight: Set[asyncio.Task] = set()
        last_stall_check: Optional[float] = None
        try:
            while self.running:
                if self.max_jobs is not None and self.jobs_started >= self.max_jobs:
                    LOGGER.info("Reached max jobs limit (%d), shutting down", self.max_jobs)
                    break

                now = loop.time()
                if last_stall_check is None or now - last_stall_check >= self.settings.stall_interval:
                    last_stall_check = now
                    await self._requeue_stalled()

                free = self._free_slots(len(in_flight))
                if free <= 0:
                    await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
                    continue

                try:
                    jobs = await asyncio.to_thread(self.queue.dequeue, self.worker_id, free)
                except Exception as exc:
                    LOGGER.error("Worker error: %s", exc, exc_info=True)
                    await self._idle(self.settings.poll_interval)
                    continue

                if not jobs:
                    LOGGER.debug("No jobs available, sleeping...")
                    if in_flight:
                        await asyncio.wait(
                            in_flight,
                            timeout=self.settings.poll_interval,
                            return_when=asyncio.FIRST_COMPLETED,
                        )
                    else:
                        await self._idle(self.settings.poll_interval)
                    continue

                for job in jobs:
                    self.jobs_started += 1
                    task = asyncio.create_task(self._handle(job))
                    in_flight.add(task)
                    task.add_done_callback(in_flight.discard)
                self.peak_in_flight = max(self.peak_in_flight, len(in_flight))
        finally:
            if in_flight:
                LOGGER.info("Waiting for %d in-flight job(s)", len(in_flight))
                await asyncio.gather(*in_flight, return_exceptions=True)
            if self.graceful_shutdown:
                self._remove_signal_handlers(loop)
            self.running = False
            self._log_stats()

    async def _requeue_stalled(self) -> None:
        try:
            count = await asyncio.to_thread(self.queue.requeue_stalled)
        except Exception as exc:
            LOGGER.error("Failed to requeue stalled jobs: %s", exc)
            return
        if count:
            LOGGER.warning("Requeued %d stalled job(s)", count)

    async def _keep_alive(self, job: ScrapeJob) -> None:
        """Renew the job lock every half stall interval until cancelled."""
        interval = self.settings.stall_interval / 2
        while True:
            await asyncio.sleep(interval)
            try:
                await asyncio.to_thread(self.queue.heartbeat, job.id)
            except Exception as exc:
                LOGGER.warning("Heartbeat for job %s failed: %s", job.id, exc)

    @contextlib.asynccontextmanager
    async def _holding_lock(self, job: ScrapeJob):
        heartbeat = asyncio.create_task(self._keep_alive(job))
        try:
            yield
        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat

    async def _handle(self, job: ScrapeJob) -> None:
        try:
            async with self._holding_lock(job):
                result = await self.processor.process(job)
        except Exception as exc:
            self.jobs_failed += 1
            LOGGER.error("Job %s failed: %s", job.id, exc)
            try:
                await asyncio.to_thread(self.queue.mark_failed, job.id, str(exc), True)
            except Exception as queue_exc:
                LOGGER.error("Could not mark job %s as failed: %s", job.id, queue_exc)
        else:
            self.jobs_succeeded += 1
            LOGGER.info("Job %s completed successfully", job.id)
            try:
                await asyncio.to_thread(self.queue.mark_completed, job.id, result.to_payload())
            except Exception as queue_exc:
                LOGGER.error("Could not mark job %s as completed: %s", job.id, queue_exc)
        finally:
            self.jobs_processed += 1

    def _log_stats(self) -> None:
        LOGGER.info(
            "Worker %s shutting down: processed=%d, succeeded=%d, failed=%d",
            self.worker_id,
            self.jobs_processed,
            self.jobs_succeeded,
            self.jobs_failed,
        )
