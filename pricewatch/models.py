"""Pydantic models shared across pipeline components."""
from __future__ import annotations

import math
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, Field, field_validator

UNKNOWN_TITLE = "Unknown Product"
TIMEOUT_TITLE = "Scraping timeout"
FAILED_TITLE = "Failed to scrape"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def domain_of(url: str) -> str:
    """Return the lower-cased hostname of ``url`` (empty string if none)."""
    return (urlparse(url).hostname or "").lower()


class ScrapeJob(BaseModel):
    """One unit of queued work: a single URL to scrape."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    url: str
    attempts_made: int = 0
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def domain(self) -> str:
        return domain_of(self.url)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ScrapeJob":
        """Build a job from the queue boundary shape ``{id, data: {url}}``."""
        data = payload.get("data") or {}
        url = data.get("url")
        if not url:
            raise ValueError("job payload must contain data.url")
        fields: Dict[str, Any] = {"url": url}
        if payload.get("id") is not None:
            fields["id"] = str(payload["id"])
        if payload.get("attemptsMade") is not None:
            fields["attempts_made"] = int(payload["attemptsMade"])
        return cls(**fields)


class ProductRecord(BaseModel):
    """Normalised product data extracted from a page."""

    title: str = UNKNOWN_TITLE
    price: Optional[float] = None
    image: Optional[str] = None
    source_url: str = ""

    @field_validator("title", mode="before")
    @classmethod
    def _default_title(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return UNKNOWN_TITLE
        return value

    @field_validator("price", mode="before")
    @classmethod
    def _numeric_price(cls, value: Any) -> Any:
        if value is None:
            return None
        if isinstance(value, bool):
            raise ValueError("price must be numeric")
        if isinstance(value, str):
            raise ValueError("price must be parsed before building a record")
        if isinstance(value, float) and not math.isfinite(value):
            return None
        return value

    @field_validator("image", mode="before")
    @classmethod
    def _empty_image(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


class JobResult(BaseModel):
    """Outcome reported back to the queue for a successful job."""

    success: bool = True
    url: str
    product_id: Optional[int] = None
    title: str = UNKNOWN_TITLE
    price: Optional[float] = None
    image: Optional[str] = None
    scraped_at: datetime = Field(default_factory=_utcnow)
    processing_time_ms: int = 0
    from_cache: bool = False

    def to_payload(self) -> Dict[str, Any]:
        """Convert to the camelCase payload consumed by the queue."""
        return {
            "success": self.success,
            "url": self.url,
            "productId": self.product_id,
            "title": self.title,
            "price": self.price,
            "scrapedAt": self.scraped_at.isoformat(),
            "processingTime": self.processing_time_ms,
        }


class CompetitorProduct(BaseModel):
    """Persisted competitor product row, keyed by URL."""

    id: Optional[int] = None
    url: str
    title: str = UNKNOWN_TITLE
    price: Optional[float] = None
    image: Optional[str] = None
    last_scraped_at: Optional[datetime] = None
    competitor_domain: str = ""
    competitor_name: Optional[str] = None
