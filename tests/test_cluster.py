import asyncio

import pytest
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from pricewatch.errors import FetchError
from pricewatch.scraper.cluster import FetchCluster, navigation_policy

PAGE = "<html><body><h1>Widget</h1>" + "x" * 2000 + "</body></html>"


class FakeResponse:
    def __init__(self, status):
        self.status = status


class FakeButton:
    def __init__(self, browser):
        self.browser = browser

    async def click(self):
        self.browser.clicks += 1


class FakePage:
    def __init__(self, browser):
        self.browser = browser
        self.url = ""

    async def goto(self, url, wait_until, timeout):
        self.url = url
        browser = self.browser
        browser.gotos.append((url, wait_until, timeout))
        browser.active += 1
        browser.peak_active = max(browser.peak_active, browser.active)
        try:
            await asyncio.sleep(browser.goto_delay)
            if browser.timeouts > 0:
                browser.timeouts -= 1
                raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded")
            return FakeResponse(browser.status)
        finally:
            browser.active -= 1

    async def wait_for_selector(self, selector, timeout):
        return object()

    async def query_selector(self, selector):
        return FakeButton(self.browser)

    async def wait_for_timeout(self, ms):
        return None

    async def evaluate(self, script):
        return 2

    async def content(self):
        return self.browser.html


class FakeContext:
    def __init__(self, browser):
        self.browser = browser

    async def new_page(self):
        return FakePage(self.browser)

    async def close(self):
        self.browser.contexts_closed += 1


class FakeBrowser:
    def __init__(self, html=PAGE, status=200, timeouts=0, goto_delay=0.0):
        self.html = html
        self.status = status
        self.timeouts = timeouts
        self.goto_delay = goto_delay
        self.gotos = []
        self.context_kwargs = []
        self.contexts_closed = 0
        self.clicks = 0
        self.active = 0
        self.peak_active = 0
        self.closed = False

    async def new_context(self, **kwargs):
        self.context_kwargs.append(kwargs)
        return FakeContext(self)

    async def close(self):
        self.closed = True


def _cluster(browser, **kwargs):
    sleeps = []

    async def sleep(seconds):
        sleeps.append(seconds)

    async def factory():
        return browser

    cluster = FetchCluster(browser_factory=factory, sleep=sleep, **kwargs)
    return cluster, sleeps


def test_navigation_policy():
    assert navigation_policy("https://shop.example/a", 0) == (30_000, "networkidle")
    assert navigation_policy("https://shop.example/a", 2) == (90_000, "networkidle")
    assert navigation_policy("https://www.amazon.com/dp/X", 0) == (60_000, "domcontentloaded")
    assert navigation_policy("https://www.amazon.com/dp/X", 1) == (90_000, "domcontentloaded")


def test_execute_returns_rendered_html():
    browser = FakeBrowser()
    cluster, _ = _cluster(browser)

    async def scenario():
        async with cluster:
            return await cluster.execute("https://shop.example/a")

    assert asyncio.run(scenario()) == PAGE
    assert browser.gotos == [("https://shop.example/a", "networkidle", 30_000)]
    assert browser.context_kwargs[0]["viewport"] == {"width": 1920, "height": 1080}
    assert browser.contexts_closed == 1
    assert browser.closed


def test_http_error_status_raises_fetch_error():
    browser = FakeBrowser(status=503)
    cluster, _ = _cluster(browser)

    with pytest.raises(FetchError) as excinfo:
        asyncio.run(cluster.execute("https://shop.example/a"))
    assert excinfo.value.status_code == 503
    assert browser.contexts_closed == 1


def test_navigation_timeouts_are_retried_with_longer_budget():
    browser = FakeBrowser(timeouts=2)
    cluster, sleeps = _cluster(browser)

    assert asyncio.run(cluster.execute("https://shop.example/a")) == PAGE
    assert [timeout for _, _, timeout in browser.gotos] == [30_000, 60_000, 90_000]
    assert sleeps == [5.0, 5.0]


def test_navigation_timeouts_exhausted():
    browser = FakeBrowser(timeouts=5)
    cluster, _ = _cluster(browser, max_navigation_retries=2)

    with pytest.raises(FetchError, match="Navigation timeout"):
        asyncio.run(cluster.execute("https://shop.example/a"))
    assert len(browser.gotos) == 3
    assert browser.contexts_closed == 3


def test_empty_content_is_an_error():
    cluster, _ = _cluster(FakeBrowser(html=""))
    with pytest.raises(FetchError, match="HTML content"):
        asyncio.run(cluster.execute("https://shop.example/a"))


def test_short_content_is_returned():
    cluster, _ = _cluster(FakeBrowser(html="<html></html>"))
    assert asyncio.run(cluster.execute("https://shop.example/a")) == "<html></html>"


def test_amazon_pages_dismiss_cookie_banner():
    browser = FakeBrowser()
    cluster, _ = _cluster(browser)

    asyncio.run(cluster.execute("https://www.amazon.com/dp/B000"))
    assert browser.gotos[0][1:] == ("domcontentloaded", 60_000)
    assert browser.clicks == 1


def test_pool_bounds_concurrent_renders():
    browser = FakeBrowser(goto_delay=0.02)
    cluster, _ = _cluster(browser, pool_size=2)

    async def scenario():
        await asyncio.gather(*(cluster.execute(f"https://shop{i}.example/") for i in range(6)))

    asyncio.run(scenario())
    assert browser.peak_active == 2
    assert len(browser.gotos) == 6


def test_pool_size_must_be_positive():
    with pytest.raises(ValueError):
        FetchCluster(pool_size=0)
