"""Bounded pool of Playwright page renderers."""
from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Awaitable, Callable, Optional, Protocol, Tuple

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from ..errors import FetchError

LOGGER = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)

EXTRA_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
    "DNT": "1",
    "Upgrade-Insecure-Requests": "1",
}

LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-accelerated-2d-canvas",
    "--no-first-run",
    "--no-zygote",
    "--disable-gpu",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
    "--disable-features=TranslateUI",
    "--disable-ipc-flooding-protection",
]

CONTENT_SELECTOR = ".product-title, h1, [data-testid*='title'], .product-name, .pdp-product-name"
AMAZON_TITLE_SELECTOR = "#productTitle, .product-title, [data-testid*='title']"
AMAZON_CONTENT_SELECTOR = "#dp, .s-result-item, .product"
AMAZON_COOKIE_SELECTOR = '#sp-cc-accept, [data-testid="accept-cookies"]'

REMOVE_OVERLAYS_JS = """
() => {
  const selectors = [
    '[id*="cookie"]', '[class*="cookie"]', '[id*="gdpr"]', '[class*="gdpr"]',
    '[id*="consent"]', '[class*="consent"]', '[id*="privacy"]', '[class*="privacy"]',
    '.modal', '.popup', '.overlay', '[role="dialog"]'
  ];
  let removed = 0;
  for (const selector of selectors) {
    for (const el of document.querySelectorAll(selector)) {
      const position = window.getComputedStyle(el).position;
      if (position === 'fixed' || position === 'absolute') {
        el.remove();
        removed += 1;
      }
    }
  }
  return removed;
}
"""

MIN_CONTENT_LENGTH = 1000


class PageFetcher(Protocol):
    """Anything that can turn a URL into rendered HTML."""

    async def execute(self, url: str) -> str:
        ...


def navigation_policy(url: str, retry: int) -> Tuple[int, str]:
    """Return ``(timeout_ms, wait_until)`` for a navigation attempt.

    Amazon pages never reach network idle, so they wait for DOM content with a
    longer budget. Every internal retry adds 30 seconds.
    """
    is_amazon = "amazon" in url
    timeout_ms = 60_000 if is_amazon else 30_000
    timeout_ms += retry * 30_000
    return timeout_ms, "domcontentloaded" if is_amazon else "networkidle"


class FetchCluster:
    """Pool of browser contexts sharing one Chromium process.

    At most ``pool_size`` pages render concurrently no matter how many
    jobs are waiting; this bounds memory, sockets and renderer processes.
    """

    def __init__(
        self,
        pool_size: int = 3,
        *,
        headless: bool = True,
        user_agent: str = USER_AGENT,
        max_navigation_retries: int = 2,
        retry_pause: float = 5.0,
        browser_factory: Optional[Callable[[], Awaitable[Browser]]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize fetch cluster.

        Parameters
        ----------
        pool_size : int
            Maximum number of pages rendering at the same time
        headless : bool
            Run Chromium headless
        user_agent : str
            User-agent for new browser contexts
        max_navigation_retries : int
            Extra navigation attempts after a navigation timeout
        retry_pause : float
            Seconds to wait before a navigation retry
        browser_factory : callable, optional
            Coroutine returning a ready browser (defaults to launching Chromium)
        """
        if pool_size < 1:
            raise ValueError("pool_size must be at least 1")
        self.pool_size = pool_size
        self.headless = headless
        self.user_agent = user_agent
        self.max_navigation_retries = max_navigation_retries
        self.retry_pause = retry_pause
        self._browser_factory = browser_factory
        self._sleep = sleep
        self._slots = asyncio.Semaphore(pool_size)
        self._launch_lock = asyncio.Lock()
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None

    async def __aenter__(self) -> "FetchCluster":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def start(self) -> Browser:
        """Launch the browser if it is not running yet."""
        async with self._launch_lock:
            if self._browser is None:
                if self._browser_factory is not None:
                    self._browser = await self._browser_factory()
                else:
                    self._playwright = await async_playwright().start()
                    self._browser = await self._playwright.chromium.launch(
                        headless=self.headless,
                        args=LAUNCH_ARGS,
                    )
                LOGGER.info(
                    "Browser started (headless=%s, pool_size=%d)",
                    self.headless,
                    self.pool_size,
                )
            return self._browser

    async def close(self) -> None:
        """Close the browser and stop Playwright."""
        if self._browser is not None:
            try:
                await self._browser.close()
            except PlaywrightError as exc:
                LOGGER.error("Error closing browser: %s", exc)
            self._browser = None
            LOGGER.info("Browser closed")
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None

    async def execute(self, url: str) -> str:
        """Render ``url`` and return its HTML.

        Raises
        ------
        FetchError
            If the page cannot be retrieved
        """
        async with self._slots:
            browser = await self.start()
            retry = 0
            while True:
                try:
                    return await self._render(browser, url, retry)
                except PlaywrightTimeoutError as exc:
                    if retry >= self.max_navigation_retries:
                        raise FetchError(f"Navigation timeout for {url}: {exc}") from exc
                    retry += 1
                    LOGGER.warning(
                        "Navigation timeout for %s, retrying in %.0fs (%d/%d)",
                        url,
                        self.retry_pause,
                        retry,
                        self.max_navigation_retries,
                    )
                    await self._sleep(self.retry_pause)
                except PlaywrightError as exc:
                    raise FetchError(f"Failed to load {url}: {exc}") from exc

    async def _render(self, browser: Browser, url: str, retry: int) -> str:
        context: BrowserContext = await browser.new_context(
            user_agent=self.user_agent,
            viewport={"width": 1920, "height": 1080},
            extra_http_headers=EXTRA_HEADERS,
        )
        try:
            page = await context.new_page()
            timeout_ms, wait_until = navigation_policy(url, retry)
            LOGGER.info(
                "Navigating to %s (attempt %d, timeout=%ds, wait_until=%s)",
                url,
                retry + 1,
                timeout_ms // 1000,
                wait_until,
            )
            response = await page.goto(url, wait_until=wait_until, timeout=timeout_ms)
            if response is not None and response.status >= 400:
                raise FetchError(
                    f"HTTP {response.status} for {url}",
                    status_code=response.status,
                )

            if "amazon" in url:
                await self._prepare_amazon(page)
            else:
                await self._wait_quietly(page, CONTENT_SELECTOR, 10_000)
            await self._remove_overlays(page)

            html = await page.content()
        finally:
            with contextlib.suppress(PlaywrightError):
                await context.close()

        if not html:
            raise FetchError(f"Failed to retrieve HTML content for {url}")
        if len(html) < MIN_CONTENT_LENGTH:
            LOGGER.warning("HTML content for %s seems too short (%d chars)", url, len(html))
        return html

    async def _wait_quietly(self, page: Page, selector: str, timeout_ms: int) -> bool:
        try:
            await page.wait_for_selector(selector, timeout=timeout_ms)
            return True
        except PlaywrightError:
            LOGGER.debug("Selector %r not found on %s, proceeding anyway", selector, page.url)
            return False

    async def _prepare_amazon(self, page: Page) -> None:
        if not await self._wait_quietly(page, AMAZON_TITLE_SELECTOR, 15_000):
            await self._wait_quietly(page, AMAZON_CONTENT_SELECTOR, 10_000)
        try:
            button = await page.query_selector(AMAZON_COOKIE_SELECTOR)
            if button is not None:
                await button.click()
                await page.wait_for_timeout(2_000)
        except PlaywrightError as exc:
            LOGGER.debug("Could not dismiss Amazon cookie consent: %s", exc)

    async def _remove_overlays(self, page: Page) -> None:
        try:
            removed = await page.evaluate(REMOVE_OVERLAYS_JS)
            if removed:
                LOGGER.debug("Removed %s overlay element(s) from %s", removed, page.url)
        except PlaywrightError as exc:
            LOGGER.debug("Error removing overlays: %s", exc)
