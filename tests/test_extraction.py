import json

import pytest

from pricewatch.extraction import (
    FIELD_STRATEGIES,
    CssText,
    PageDocument,
    extract,
    extract_field,
    normalize_image_url,
    parse_price,
)
from pricewatch.models import UNKNOWN_TITLE

URL = "https://shop.example/item/42"


@pytest.mark.parametrize(
    "text, expected",
    [
        ("$1,299.99", 1299.99),
        ("Now only 49.95 USD", 49.95),
        ("€ 12", 12.0),
        ("1,000,000", 1000000.0),
        ("Call for price", None),
        ("$" + "9" * 400, None),
        (float("inf"), None),
        (10**400, None),
        ("", None),
        (None, None),
    ],
)
def test_parse_price(text, expected):
    assert parse_price(text) == expected


@pytest.mark.parametrize(
    "src, expected",
    [
        ("//cdn.example/a.jpg", "https://cdn.example/a.jpg"),
        ("/img/a.jpg", "https://shop.example/img/a.jpg"),
        ("https://cdn.example/a.jpg", "https://cdn.example/a.jpg"),
        ("img/a.jpg", "img/a.jpg"),
        ("data:image/png;base64,AAAA", "data:image/png;base64,AAAA"),
        ("", None),
        (None, None),
    ],
)
def test_normalize_image_url(src, expected):
    assert normalize_image_url(src, URL) == expected


def test_generic_markup():
    html = """
    <html><head><meta property="og:image" content="/media/widget.png"></head>
    <body><h1>Widget   Pro</h1><div class="product-price">$1,299.99</div></body></html>
    """
    record = extract(html, URL)
    assert record.title == "Widget Pro"
    assert record.price == pytest.approx(1299.99)
    assert record.image == "https://shop.example/media/widget.png"
    assert record.source_url == URL


def test_no_markup_degrades_to_defaults():
    record = extract("<html><body><p>nothing here</p></body></html>", URL)
    assert record.title == UNKNOWN_TITLE
    assert record.price is None
    assert record.image is None


@pytest.mark.parametrize("html", ["", "   ", None, 42])
def test_unusable_input_degrades_to_defaults(html):
    record = extract(html, URL)
    assert record.title == UNKNOWN_TITLE
    assert record.price is None
    assert record.image is None


def test_json_ld_wins_over_markup():
    data = {
        "@context": "https://schema.org",
        "@graph": [
            {"@type": "BreadcrumbList"},
            {
                "@type": ["Product", "Thing"],
                "name": "Structured Widget",
                "image": [{"@type": "ImageObject", "url": "//cdn.example/structured.jpg"}],
                "offers": [{"@type": "Offer", "price": "19.99", "priceCurrency": "USD"}],
            },
        ],
    }
    html = f"""
    <html><head><script type="application/ld+json">{json.dumps(data)}</script></head>
    <body><h1>Markup title</h1><span class="price">$5.00</span></body></html>
    """
    record = extract(html, URL)
    assert record.title == "Structured Widget"
    assert record.price == pytest.approx(19.99)
    assert record.image == "https://cdn.example/structured.jpg"


def test_broken_json_ld_is_ignored():
    html = """
    <html><head><script type="application/ld+json">{not json</script></head>
    <body><h1>Fallback</h1></body></html>
    """
    assert extract(html, URL).title == "Fallback"


def test_amazon_markup():
    html = """
    <html><body>
      <span id="productTitle">Echo Dot</span>
      <h1 id="productTitle"> Echo Dot (5th Gen) </h1>
      <span class="a-price"><span class="a-offscreen">$49.99</span></span>
      <img id="landingImage" data-src="https://m.media-amazon.com/echo.jpg">
    </body></html>
    """
    record = extract(html, "https://www.amazon.com/dp/B09B8V1LZ3")
    assert record.title == "Echo Dot (5th Gen)"
    assert record.price == pytest.approx(49.99)
    assert record.image == "https://m.media-amazon.com/echo.jpg"


def test_title_tag_is_last_resort():
    html = "<html><head><title>Only Title</title></head><body></body></html>"
    assert extract(html, URL).title == "Only Title"


def test_price_skips_text_without_numbers():
    html = """
    <html><body>
      <div class="price-label">Price</div>
      <div class="price">$7.50</div>
    </body></html>
    """
    assert extract(html, URL).price == pytest.approx(7.5)


def test_custom_strategy_table():
    strategies = [("title", CssText(".custom"))] + [s for s in FIELD_STRATEGIES if s[0] != "title"]
    doc = PageDocument('<div class="custom">Mine</div><h1>Other</h1>', URL)
    assert extract_field(doc, "title", strategies) == "Mine"


def test_failing_strategy_is_skipped():
    def broken(doc):
        raise RuntimeError("selector exploded")

    strategies = [("title", broken), ("title", CssText("h1"))]
    doc = PageDocument("<h1>Still works</h1>", URL)
    assert extract_field(doc, "title", strategies) == "Still works"


def test_overflowing_price_markup_yields_no_price():
    record = extract("<span class='price'>$" + "9" * 400 + "</span>", URL)
    assert record.price is None
