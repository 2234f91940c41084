"""Database helpers for idempotent competitor product upserts."""
from __future__ import annotations

import logging
import os
from datetime import datetime
from typing import Callable, Optional, Protocol

import psycopg2
from psycopg2.extensions import connection as PGConnection

from .errors import PersistenceError
from .models import ProductRecord, domain_of

LOGGER = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS competitor_products (
    id SERIAL PRIMARY KEY,
    url TEXT NOT NULL UNIQUE,
    title TEXT NOT NULL,
    price DOUBLE PRECISION,
    image TEXT,
    competitor_domain TEXT NOT NULL,
    competitor_name TEXT,
    last_scraped_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""

UPSERT_SQL = """
INSERT INTO competitor_products (
    url, title, price, image,
    competitor_domain, competitor_name, last_scraped_at
)
VALUES (
    %(url)s, %(title)s, %(price)s, %(image)s,
    %(competitor_domain)s, %(competitor_name)s, %(last_scraped_at)s
)
ON CONFLICT (url) DO UPDATE
SET
    title = EXCLUDED.title,
    price = EXCLUDED.price,
    image = EXCLUDED.image,
    competitor_domain = EXCLUDED.competitor_domain,
    competitor_name = EXCLUDED.competitor_name,
    last_scraped_at = EXCLUDED.last_scraped_at,
    updated_at = NOW()
RETURNING id;
"""

# Failed scrapes never overwrite good data, they only bump the timestamp.
FAILURE_UPSERT_SQL = """
INSERT INTO competitor_products (
    url, title, competitor_domain, competitor_name, last_scraped_at
)
VALUES (
    %(url)s, %(title)s, %(competitor_domain)s, %(competitor_name)s, %(last_scraped_at)s
)
ON CONFLICT (url) DO UPDATE
SET
    last_scraped_at = EXCLUDED.last_scraped_at,
    updated_at = NOW();
"""


class ProductRepository(Protocol):
    """Upsert-by-URL persistence boundary."""

    def upsert_product(self, record: ProductRecord, scraped_at: datetime) -> int:
        """Create or update the row for ``record.source_url``; return its id."""
        ...

    def record_failure(self, url: str, title: str, scraped_at: datetime) -> None:
        """Best-effort marker row for a failed scrape."""
        ...


def get_db_connection(dsn: Optional[str] = None) -> PGConnection:
    """Return a psycopg2 connection using the DSN from the environment."""
    dsn = dsn or os.getenv("DATABASE_URL")
    if not dsn:
        raise RuntimeError("DATABASE_URL is not set")
    return psycopg2.connect(dsn)


class PostgresProductRepository:
    """``competitor_products`` table accessed through psycopg2."""

    def __init__(self, conn_factory: Callable[[], PGConnection]) -> None:
        """Initialize repository.

        Parameters
        ----------
        conn_factory : callable
            Returns a new psycopg2 connection for every operation
        """
        self._conn_factory = conn_factory

    @classmethod
    def from_dsn(cls, dsn: str) -> "PostgresProductRepository":
        return cls(lambda: psycopg2.connect(dsn))

    def ensure_schema(self) -> None:
        """Create the products table if it does not exist."""
        self._execute(SCHEMA_SQL, {})
        LOGGER.info("Ensured competitor_products table exists")

    def upsert_product(self, record: ProductRecord, scraped_at: datetime) -> int:
        domain = domain_of(record.source_url)
        row = self._execute(
            UPSERT_SQL,
            {
                "url": record.source_url,
                "title": record.title,
                "price": record.price,
                "image": record.image,
                "competitor_domain": domain,
                "competitor_name": domain,
                "last_scraped_at": scraped_at,
            },
            fetch=True,
        )
        if row is None:
            raise PersistenceError(f"Upsert returned no id for {record.source_url}")
        return int(row[0])

    def record_failure(self, url: str, title: str, scraped_at: datetime) -> None:
        domain = domain_of(url)
        self._execute(
            FAILURE_UPSERT_SQL,
            {
                "url": url,
                "title": title,
                "competitor_domain": domain,
                "competitor_name": domain,
                "last_scraped_at": scraped_at,
            },
        )

    def _execute(self, sql: str, params: dict, fetch: bool = False):
        try:
            conn = self._conn_factory()
        except psycopg2.Error as exc:
            raise PersistenceError(f"Database connection failed: {exc}") from exc
        try:
            with conn:
                with conn.cursor() as cur:
                    cur.execute(sql, params)
                    return cur.fetchone() if fetch else None
        except psycopg2.Error as exc:
            raise PersistenceError(f"Database error: {exc}") from exc
        finally:
            conn.close()
