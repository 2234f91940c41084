"""CLI for the competitor price scraping pipeline."""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Optional

import click

from ..config import WorkerSettings
from ..logging_setup import configure_logging
from ..models import ScrapeJob
from ..upsert import PostgresProductRepository
from .cluster import FetchCluster
from .queue import PostgresJobQueue, validate_url
from .worker import QueueProgressObserver, Worker, build_processor, default_worker_id

LOGGER = logging.getLogger(__name__)


def _make_queue(settings: WorkerSettings) -> PostgresJobQueue:
    return PostgresJobQueue(
        settings.database_url,
        max_attempts=settings.job_attempts,
        backoff=settings.job_backoff,
        stall_interval=settings.stall_interval,
        max_stalled=settings.max_stalled,
    )


def _make_repository(settings: WorkerSettings) -> PostgresProductRepository:
    repository = PostgresProductRepository.from_dsn(settings.database_url)
    repository.ensure_schema()
    return repository


@click.group()
@click.pass_context
def cli(ctx: click.Context) -> None:
    """Competitor price scraping CLI."""
    settings = WorkerSettings.from_env()
    configure_logging(settings.log_level)
    ctx.obj = settings


@cli.command()
@click.option("--url", required=True, help="Product page URL")
@click.pass_obj
def enqueue(settings: WorkerSettings, url: str) -> None:
    """Enqueue a scrape job."""
    if not validate_url(url):
        raise click.BadParameter(f"not an http(s) URL: {url}", param_hint="--url")
    job_id = _make_queue(settings).enqueue(url)
    click.echo(f"✅ Enqueued job {job_id}: {url}")


@cli.command("enqueue-batch")
@click.option(
    "--input-file",
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help="File with product URLs (one per line, # for comments)",
)
@click.pass_obj
def enqueue_batch(settings: WorkerSettings, input_file: str) -> None:
    """Enqueue multiple URLs from a file."""
    urls = []
    skipped = 0
    with open(input_file, "r", encoding="utf-8") as f:
        for line_num, line in enumerate(f, 1):
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            if not validate_url(line):
                LOGGER.error("Skipping invalid URL on line %d: %s", line_num, line)
                skipped += 1
                continue
            urls.append(line)

    if urls:
        _make_queue(settings).enqueue_batch(urls)
    click.echo(f"✅ Enqueued {len(urls)} job(s), skipped {skipped} invalid line(s)")


async def _run_worker(
    settings: WorkerSettings,
    worker_id: str,
    max_jobs: Optional[int],
) -> Worker:
    queue = _make_queue(settings)
    repository = _make_repository(settings)
    async with FetchCluster(settings.fetch_pool_size, headless=settings.headless) as cluster:
        processor = build_processor(
            settings,
            cluster,
            repository,
            observer=QueueProgressObserver(queue),
        )
        worker = Worker(queue, processor, settings, worker_id=worker_id, max_jobs=max_jobs)
        await worker.run()
    return worker


@cli.command()
@click.option("--worker-id", help="Worker ID (defaults to hostname-UUID)")
@click.option("--concurrency", type=int, help="Jobs processed at once")
@click.option("--poll-interval", type=float, help="Seconds between queue polls")
@click.option("--max-jobs", type=int, help="Max jobs before shutdown (for testing)")
@click.pass_obj
def run(
    settings: WorkerSettings,
    worker_id: Optional[str],
    concurrency: Optional[int],
    poll_interval: Optional[float],
    max_jobs: Optional[int],
) -> None:
    """Run worker to process jobs from the queue."""
    if concurrency is not None:
        if concurrency < 1:
            raise click.BadParameter("must be at least 1", param_hint="--concurrency")
        settings.concurrency = concurrency
    if poll_interval is not None:
        settings.poll_interval = poll_interval
    worker_id = worker_id or default_worker_id()

    click.echo(f"🚀 Starting worker: {worker_id}")
    worker = asyncio.run(_run_worker(settings, worker_id, max_jobs))
    click.echo(
        f"Processed {worker.jobs_processed} job(s): "
        f"{worker.jobs_succeeded} succeeded, {worker.jobs_failed} failed"
    )


async def _scrape_once(settings: WorkerSettings, url: str) -> dict:
    repository = _make_repository(settings)
    async with FetchCluster(settings.fetch_pool_size, headless=settings.headless) as cluster:
        processor = build_processor(settings, cluster, repository)
        result = await processor.process(ScrapeJob(url=url))
    return result.to_payload()


@cli.command()
@click.argument("url")
@click.pass_obj
def scrape(settings: WorkerSettings, url: str) -> None:
    """Scrape a single URL inline and print the result."""
    if not validate_url(url):
        raise click.BadParameter(f"not an http(s) URL: {url}", param_hint="URL")
    try:
        payload = asyncio.run(_scrape_once(settings, url))
    except Exception as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(payload, indent=2, ensure_ascii=False))


@cli.command()
@click.pass_obj
def stats(settings: WorkerSettings) -> None:
    """Show queue statistics."""
    stats = _make_queue(settings).get_stats()

    click.echo("\n📊 Queue Statistics\n" + "=" * 40)
    click.echo(f"Total jobs: {sum(stats.values())}")
    for status, count in sorted(stats.items()):
        click.echo(f"  {status:15s}: {count:6d}")
    click.echo()


@cli.command()
@click.option(
    "--days",
    default=7,
    type=int,
    help="Remove jobs completed more than N days ago",
)
@click.confirmation_option(prompt="Are you sure you want to purge completed jobs?")
@click.pass_obj
def purge(settings: WorkerSettings, days: int) -> None:
    """Remove old completed jobs."""
    count = _make_queue(settings).purge_completed(days)
    click.echo(f"✅ Purged {count} completed job(s)")


if __name__ == "__main__":
    cli()
