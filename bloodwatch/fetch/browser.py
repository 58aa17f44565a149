"""Browser fetcher: Playwright-based headless browser that retrieves source pages.

The fetcher has no knowledge of blood inventory. It renders a page, clears
a recognised consent banner, and hands back the rendered HTML.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any

from playwright.async_api import Browser, BrowserContext, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from bloodwatch.config.settings import BrowserConfig, URLPolicyConfig
from bloodwatch.config.url_policy import validate_target_url
from bloodwatch.exceptions import FetchError
from bloodwatch.fetch.obstruction import ObstructionType, detect_obstruction
from bloodwatch.telemetry.errors import ErrorCode, emit_structured_error

logger = logging.getLogger(__name__)

CONSENT_CLICK_TIMEOUT_MS = 3000


@dataclass
class FetchResult:
    """A page as retrieved from its source."""

    html: str
    status_code: int | None
    final_url: str
    elapsed_ms: int


class BrowserFetcher:
    """Fetches pages through one shared browser context.

    Contract:
    - Every fetch opens its own page, so concurrent fetches do not interfere
    - URLs rejected by the URL policy never reach the network
    - Non-2xx responses and hard-blocked pages raise FetchError
    """

    def __init__(
        self,
        config: BrowserConfig | None = None,
        url_policy: URLPolicyConfig | None = None,
    ) -> None:
        self._config = config or BrowserConfig()
        self._url_policy = url_policy or URLPolicyConfig()
        self._playwright: Any = None
        self._browser: Browser | None = None
        self._context: BrowserContext | None = None
        self._start_lock = asyncio.Lock()

    @property
    def started(self) -> bool:
        return self._context is not None

    async def __aenter__(self) -> BrowserFetcher:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    async def start(self) -> None:
        """Launch the browser and create an isolated context."""
        async with self._start_lock:
            if self._context is not None:
                return
            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(
                headless=self._config.headless,
            )
            self._context = await self._browser.new_context(
                viewport={
                    "width": self._config.viewport_width,
                    "height": self._config.viewport_height,
                },
                user_agent=self._config.user_agent,
                locale=self._config.locale,
            )
            logger.info("Browser fetcher started (headless=%s)", self._config.headless)

    async def stop(self) -> None:
        """Clean up browser resources."""
        if self._context:
            await self._context.close()
            self._context = None
        if self._browser:
            await self._browser.close()
            self._browser = None
        if self._playwright:
            await self._playwright.stop()
            self._playwright = None

    async def fetch(self, url: str, timeout_s: int) -> FetchResult:
        """Render ``url`` and return its HTML.

        Raises:
            FetchError: The URL is not allowed, navigation failed or timed out,
                the server answered non-2xx, or the page is hard-blocked.
        """
        verdict = validate_target_url(url, self._url_policy)
        if not verdict.allowed:
            raise FetchError(f"URL rejected by policy: {verdict.reason}")

        if not self.started:
            await self.start()

        timeout_ms = timeout_s * 1000
        started = time.monotonic()
        page = await self._context.new_page()
        try:
            try:
                response = await page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)
            except PlaywrightTimeoutError as exc:
                raise FetchError(
                    f"Timed out after {timeout_s}s loading {url}",
                    timed_out=True,
                    elapsed_ms=_elapsed_ms(started),
                ) from exc
            except PlaywrightError as exc:
                raise FetchError(
                    f"Failed to load {url}: {exc}", elapsed_ms=_elapsed_ms(started)
                ) from exc

            status_code = response.status if response is not None else None
            if status_code is not None and not 200 <= status_code < 300:
                raise FetchError(
                    f"HTTP {status_code} from {url}",
                    http_status=status_code,
                    elapsed_ms=_elapsed_ms(started),
                )

            html = await page.content()
            obstruction = detect_obstruction(html)
            if obstruction.obstruction_type == ObstructionType.HARD_BLOCK:
                raise FetchError(
                    f"Page is behind a captcha or login wall ({obstruction.selector})",
                    http_status=status_code,
                    elapsed_ms=_elapsed_ms(started),
                )
            if obstruction.obstruction_type == ObstructionType.CONSENT_GATE:
                try:
                    await page.click(obstruction.selector, timeout=CONSENT_CLICK_TIMEOUT_MS)
                    html = await page.content()
                except PlaywrightError as exc:
                    logger.debug("Consent banner not dismissed on %s: %s", url, exc)

            return FetchResult(
                html=html,
                status_code=status_code,
                final_url=page.url,
                elapsed_ms=_elapsed_ms(started),
            )
        finally:
            try:
                await page.close()
            except PlaywrightError as exc:
                emit_structured_error(
                    logger,
                    code=ErrorCode.BROWSER_CLEANUP_FAILED,
                    message="Failed to close browser page",
                    suppressed=True,
                    details={"url": url, "error": str(exc)},
                )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
