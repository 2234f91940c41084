"""Queue-driven competitor price scraping.

This package provides the job pipeline on top of the resilience toolkit:
- Postgres job queue with backoff and stall recovery
- Bounded Playwright fetch cluster
- Per-job processor (cache, circuit, throttle, fetch, extract, persist)
- Async worker and CLI
"""

from .cluster import FetchCluster, PageFetcher
from .processor import JobObserver, JobProcessor, LoggingObserver
from .queue import JobQueue, JobStatus, PostgresJobQueue
from .worker import QueueProgressObserver, Worker, build_processor

__all__ = [
    "FetchCluster",
    "PageFetcher",
    "JobObserver",
    "JobProcessor",
    "LoggingObserver",
    "JobQueue",
    "JobStatus",
    "PostgresJobQueue",
    "QueueProgressObserver",
    "Worker",
    "build_processor",
]
