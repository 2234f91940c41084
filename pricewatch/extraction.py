"""Product data extraction from arbitrary e-commerce HTML.

Each field is resolved through an ordered cascade of strategies, from
site-specific markup (Amazon ids, JSON-LD) to generic class-name heuristics
and finally a default. The cascade is plain data (``FIELD_STRATEGIES``) so
it can be inspected, reordered and tested on its own.

Extraction never raises: missing or garbled markup degrades to
``ProductRecord`` defaults (``"Unknown Product"`` / ``None``).
"""
from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlsplit

from bs4 import BeautifulSoup

from .models import UNKNOWN_TITLE, ProductRecord

LOGGER = logging.getLogger(__name__)

PRICE_RE = re.compile(r"\d{1,3}(?:,\d{3})+(?:\.\d+)?|\d+(?:\.\d+)?")
WHITESPACE_RE = re.compile(r"\s+")

_MISSING = object()


def parse_price(text: Any) -> Optional[float]:
    """Return the first decimal number in ``text`` with thousands separators removed.

    Non-finite values (an overflowing digit run, JSON ``Infinity``) are
    treated as no price.
    """
    if text is None:
        return None
    if isinstance(text, (int, float)) and not isinstance(text, bool):
        raw = text
    else:
        match = PRICE_RE.search(str(text))
        if not match:
            return None
        raw = match.group(0).replace(",", "")
    try:
        value = float(raw)
    except (OverflowError, ValueError):
        return None
    return value if math.isfinite(value) else None


def normalize_image_url(src: Optional[str], base_url: str) -> Optional[str]:
    """Make an image URL absolute.

    ``//cdn/x.jpg`` becomes ``https://cdn/x.jpg``, ``/x.jpg`` is resolved
    against the page origin, anything else is returned unchanged.
    """
    if not src:
        return None
    src = src.strip()
    if not src:
        return None
    if src.startswith("//"):
        return f"https:{src}"
    if src.startswith("/"):
        parts = urlsplit(base_url or "")
        if parts.scheme and parts.netloc:
            return f"{parts.scheme}://{parts.netloc}{src}"
    return src


class PageDocument:
    """Parsed page plus lazily decoded JSON-LD product node."""

    def __init__(self, html: Any, base_url: str = "") -> None:
        self.base_url = base_url
        self._product_node: Any = _MISSING
        if not isinstance(html, str) or not html.strip():
            self.soup: Optional[BeautifulSoup] = None
            return
        try:
            self.soup = BeautifulSoup(html, "lxml")
        except Exception as exc:  # parser failures must not abort the job
            LOGGER.warning("Failed to parse HTML for %s: %s", base_url, exc)
            self.soup = None

    @property
    def product_node(self) -> Optional[Dict[str, Any]]:
        """First schema.org Product object found in JSON-LD scripts."""
        if self._product_node is _MISSING:
            self._product_node = self._find_product_node()
        return self._product_node

    def _find_product_node(self) -> Optional[Dict[str, Any]]:
        if self.soup is None:
            return None
        for tag in self.soup.find_all("script", type=lambda t: t and "ld+json" in t):
            try:
                data = json.loads(tag.string or "")
            except (TypeError, ValueError):
                continue
            node = _product_in(data)
            if node is not None:
                return node
        return None


def _is_product(node: Any) -> bool:
    if not isinstance(node, dict):
        return False
    kind = node.get("@type")
    if isinstance(kind, list):
        return any(isinstance(k, str) and "product" in k.lower() for k in kind)
    return isinstance(kind, str) and "product" in kind.lower()


def _product_in(data: Any) -> Optional[Dict[str, Any]]:
    if isinstance(data, list):
        for item in data:
            found = _product_in(item)
            if found is not None:
                return found
        return None
    if not isinstance(data, dict):
        return None
    if _is_product(data):
        return data
    graph = data.get("@graph")
    if graph is not None:
        return _product_in(graph)
    return None


def _first(value: Any) -> Any:
    while isinstance(value, list):
        if not value:
            return None
        value = value[0]
    return value


# ---------------------------------------------------------------------------
# Strategies


@dataclass(frozen=True)
class CssText:
    """Text of the first element matching ``selector``."""

    selector: str

    def __call__(self, doc: PageDocument) -> Optional[str]:
        if doc.soup is None:
            return None
        node = doc.soup.select_one(self.selector)
        if node is None:
            return None
        return node.get_text(" ", strip=True) or None


@dataclass(frozen=True)
class CssAttr:
    """First non-empty attribute of the first element matching ``selector``."""

    selector: str
    attrs: Tuple[str, ...] = ("src", "data-src")

    def __call__(self, doc: PageDocument) -> Optional[str]:
        if doc.soup is None:
            return None
        node = doc.soup.select_one(self.selector)
        if node is None:
            return None
        for attr in self.attrs:
            value = node.get(attr)
            if isinstance(value, list):
                value = " ".join(value)
            if value and value.strip():
                return value.strip()
        return None


@dataclass(frozen=True)
class MetaContent:
    """``content`` of ``<meta property=...>`` (or ``name=...``)."""

    key: str

    def __call__(self, doc: PageDocument) -> Optional[str]:
        if doc.soup is None:
            return None
        node = doc.soup.find("meta", attrs={"property": self.key}) or doc.soup.find(
            "meta", attrs={"name": self.key}
        )
        if node is None:
            return None
        content = node.get("content")
        return content.strip() if content and content.strip() else None


@dataclass(frozen=True)
class JsonLdField:
    """Dotted path inside the JSON-LD Product node (lists resolve to their first item)."""

    path: str

    def __call__(self, doc: PageDocument) -> Optional[str]:
        value: Any = doc.product_node
        for part in self.path.split("."):
            value = _first(value)
            if not isinstance(value, dict):
                return None
            value = value.get(part)
        value = _first(value)
        if isinstance(value, dict):
            # ImageObject
            value = value.get("url") or value.get("contentUrl")
        if value is None or isinstance(value, (dict, list, bool)):
            return None
        text = str(value).strip()
        return text or None


Strategy = Callable[[PageDocument], Optional[str]]

FIELD_STRATEGIES: List[Tuple[str, Strategy]] = [
    # Title
    ("title", JsonLdField("name")),
    ("title", CssText('h1[data-automation-id="product-title"]')),
    ("title", CssText("h1#productTitle")),  # Amazon
    ("title", CssText(".product-title h1")),
    ("title", CssText("h1.product-name")),
    ("title", CssText("h1")),
    ("title", CssText('[data-testid="product-title"]')),
    ("title", CssText(".product-title")),
    ("title", MetaContent("og:title")),
    ("title", CssText("title")),  # Last resort
    # Price
    ("price", JsonLdField("offers.price")),
    ("price", JsonLdField("offers.lowPrice")),
    ("price", CssText(".a-price-whole")),  # Amazon
    ("price", CssText(".a-price .a-offscreen")),  # Amazon
    ("price", CssText(".price-current")),
    ("price", CssText('[class*="price"]')),
    ("price", CssText('[data-testid*="price"]')),
    ("price", CssText(".price")),
    ("price", CssText(".product-price")),
    ("price", CssText(".current-price")),
    ("price", CssText(".sale-price")),
    ("price", CssText('[class*="cost"]')),
    ("price", CssText('[class*="amount"]')),
    ("price", MetaContent("product:price:amount")),
    ("price", CssAttr('[itemprop="price"]', ("content",))),
    # Image
    ("image", JsonLdField("image")),
    ("image", CssAttr("#landingImage")),  # Amazon
    ("image", CssAttr(".product-image img")),
    ("image", CssAttr(".main-image img")),
    ("image", CssAttr('img[data-testid="product-image"]')),
    ("image", CssAttr("img[src*='product']")),
    ("image", CssAttr("img[alt*='product']")),
    ("image", MetaContent("og:image")),
    ("image", CssAttr("img")),
]


def _clean_title(raw: str, doc: PageDocument) -> Optional[str]:
    title = WHITESPACE_RE.sub(" ", raw).strip()
    return title or None


def _clean_price(raw: str, doc: PageDocument) -> Optional[float]:
    return parse_price(raw)


def _clean_image(raw: str, doc: PageDocument) -> Optional[str]:
    return normalize_image_url(raw, doc.base_url)


FIELD_CLEANERS: Dict[str, Callable[[str, PageDocument], Any]] = {
    "title": _clean_title,
    "price": _clean_price,
    "image": _clean_image,
}


def extract_field(
    doc: PageDocument,
    field_name: str,
    strategies: Sequence[Tuple[str, Strategy]] = FIELD_STRATEGIES,
) -> Any:
    """Run the cascade for ``field_name``; the first usable value wins."""
    clean = FIELD_CLEANERS[field_name]
    for name, strategy in strategies:
        if name != field_name:
            continue
        try:
            raw = strategy(doc)
            value = clean(raw, doc) if raw is not None else None
        except Exception as exc:  # selector quirks on hostile markup
            LOGGER.debug("Strategy %r failed for %s: %s", strategy, field_name, exc)
            continue
        if value is not None:
            return value
    return None


def build_record(
    url: str,
    title: Optional[str],
    price: Optional[float],
    image: Optional[str],
) -> ProductRecord:
    return ProductRecord(
        title=title or UNKNOWN_TITLE,
        price=price,
        image=image,
        source_url=url,
    )


def extract(
    html: Any,
    base_url: str,
    strategies: Sequence[Tuple[str, Strategy]] = FIELD_STRATEGIES,
) -> ProductRecord:
    """Extract a :class:`ProductRecord` from ``html`` fetched at ``base_url``."""
    doc = PageDocument(html, base_url)
    record = build_record(
        base_url,
        extract_field(doc, "title", strategies),
        extract_field(doc, "price", strategies),
        extract_field(doc, "image", strategies),
    )
    LOGGER.debug(
        "Extracted product data from %s: title=%r price=%s image=%s",
        base_url,
        record.title,
        record.price,
        bool(record.image),
    )
    return record
