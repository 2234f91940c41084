"""Fault-tolerant competitor product scraping pipeline.

This package provides the per-URL fetch, extract and persist unit of work
together with its protective wrappers:
- Per-domain throttling and circuit breaking
- Bounded retries with exponential backoff
- TTL result cache
- Pooled Playwright fetch cluster
- Queue-driven worker pool
"""

__version__ = "0.1.0"
