"""Tests for the Playwright-backed fetcher, with the browser replaced by mocks."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from bloodwatch.exceptions import FetchError
from bloodwatch.fetch.browser import BrowserFetcher
from bloodwatch.fetch.obstruction import ObstructionType, detect_obstruction

URL = "https://93.184.216.34/stany-krwi"
TABLE = "<html><body><table><tr><td>A+</td><td>45%</td></tr></table></body></html>"


def _page(html=TABLE, status=200, goto_error=None):
    page = MagicMock()
    response = MagicMock()
    response.status = status
    page.goto = AsyncMock(return_value=response, side_effect=goto_error)
    page.content = AsyncMock(return_value=html)
    page.click = AsyncMock()
    page.close = AsyncMock()
    page.url = URL
    return page


def _fetcher(page) -> BrowserFetcher:
    fetcher = BrowserFetcher()
    context = MagicMock()
    context.new_page = AsyncMock(return_value=page)
    fetcher._context = context
    return fetcher


class TestFetch:
    @pytest.mark.asyncio
    async def test_returns_rendered_html(self):
        page = _page()
        result = await _fetcher(page).fetch(URL, timeout_s=20)

        assert result.html == TABLE
        assert result.status_code == 200
        assert result.final_url == URL
        assert result.elapsed_ms >= 0
        page.goto.assert_awaited_once_with(URL, wait_until="domcontentloaded", timeout=20000)
        page.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_policy_rejection_never_navigates(self):
        page = _page()
        with pytest.raises(FetchError, match="rejected by policy"):
            await _fetcher(page).fetch("http://10.0.0.5/stany", timeout_s=20)
        page.goto.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_non_2xx_raises_with_status(self):
        page = _page(status=503)
        with pytest.raises(FetchError) as exc_info:
            await _fetcher(page).fetch(URL, timeout_s=20)
        assert exc_info.value.http_status == 503
        page.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_timeout_is_flagged(self):
        page = _page(goto_error=PlaywrightTimeoutError("Timeout 20000ms exceeded"))
        with pytest.raises(FetchError) as exc_info:
            await _fetcher(page).fetch(URL, timeout_s=20)
        assert exc_info.value.timed_out is True

    @pytest.mark.asyncio
    async def test_navigation_error(self):
        page = _page(goto_error=PlaywrightError("net::ERR_NAME_NOT_RESOLVED"))
        with pytest.raises(FetchError, match="ERR_NAME_NOT_RESOLVED") as exc_info:
            await _fetcher(page).fetch(URL, timeout_s=20)
        assert exc_info.value.timed_out is False

    @pytest.mark.asyncio
    async def test_hard_block_raises(self):
        page = _page(html='<div class="g-recaptcha captcha-box"></div>')
        with pytest.raises(FetchError, match="captcha"):
            await _fetcher(page).fetch(URL, timeout_s=20)

    @pytest.mark.asyncio
    async def test_consent_banner_dismissed(self):
        banner = '<div id="onetrust-accept-btn-handler">Akceptuję</div>' + TABLE
        page = _page()
        page.content = AsyncMock(side_effect=[banner, TABLE])

        result = await _fetcher(page).fetch(URL, timeout_s=20)

        page.click.assert_awaited_once()
        assert result.html == TABLE


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, monkeypatch):
        context = MagicMock()
        context.close = AsyncMock()
        browser = MagicMock()
        browser.new_context = AsyncMock(return_value=context)
        browser.close = AsyncMock()
        playwright = MagicMock()
        playwright.chromium.launch = AsyncMock(return_value=browser)
        playwright.stop = AsyncMock()
        starter = MagicMock()
        starter.start = AsyncMock(return_value=playwright)
        monkeypatch.setattr("bloodwatch.fetch.browser.async_playwright", lambda: starter)

        async with BrowserFetcher() as fetcher:
            assert fetcher.started
            await fetcher.start()

        starter.start.assert_awaited_once()
        assert browser.new_context.await_args.kwargs["locale"] == "pl-PL"
        context.close.assert_awaited_once()
        browser.close.assert_awaited_once()
        playwright.stop.assert_awaited_once()
        assert not fetcher.started


class TestObstruction:
    def test_clean_page(self):
        assert detect_obstruction(TABLE).obstruction_type == ObstructionType.NONE

    def test_hard_block_wins_over_consent(self):
        html = (
            '<div class="cookie-banner"><button>OK</button></div>'
            '<iframe src="https://www.google.com/recaptcha/api2/anchor"></iframe>'
        )
        result = detect_obstruction(html)
        assert result.obstruction_type == ObstructionType.HARD_BLOCK
        assert result.selector == 'iframe[src*="recaptcha"]'

    def test_consent_gate_carries_clickable_selector(self):
        result = detect_obstruction('<div class="cookie-consent"><button>OK</button></div>')
        assert result.obstruction_type == ObstructionType.CONSENT_GATE
        assert result.selector == '[class*="cookie-consent"] button'

    def test_case_insensitive_aria_label(self):
        result = detect_obstruction('<button aria-label="Akceptuję pliki cookies">OK</button>')
        assert result.obstruction_type == ObstructionType.CONSENT_GATE

    def test_text_mentioning_captcha_is_not_a_block(self):
        html = "<p>Nie używamy captcha na tej stronie.</p>" + TABLE
        assert detect_obstruction(html).obstruction_type == ObstructionType.NONE
