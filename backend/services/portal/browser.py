"""
Chromium lifecycle for portal sessions.

One PortalBrowser per sync run or outbound push. Contexts are created with
the portal's locale and timezone; everything is closed on exit.
"""
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional

from playwright.async_api import async_playwright, Browser, BrowserContext

logger = logging.getLogger(__name__)


class PortalBrowser:
    """Lazily started Chromium that hands out portal-configured contexts."""

    def __init__(self, headless: Optional[bool] = None, locale: Optional[str] = None,
                 timezone_id: Optional[str] = None):
        from config import PORTAL_HEADLESS, PORTAL_LOCALE, PORTAL_TIMEZONE
        self.headless = PORTAL_HEADLESS if headless is None else headless
        self.locale = locale or PORTAL_LOCALE
        self.timezone_id = timezone_id or PORTAL_TIMEZONE
        self._playwright = None
        self._browser: Optional[Browser] = None

    async def _ensure_browser(self) -> Browser:
        """Start the browser if it is not running."""
        if self._browser is None or not self._browser.is_connected():
            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(
                headless=self.headless,
                args=[
                    '--disable-blink-features=AutomationControlled',
                    '--no-sandbox',
                    '--disable-dev-shm-usage',
                ]
            )
            logger.info(f"Chromium started (headless={self.headless})")
        return self._browser

    async def new_context(self, cookies: Optional[List[dict]] = None) -> BrowserContext:
        """New isolated context, optionally pre-loaded with a saved cookie jar."""
        browser = await self._ensure_browser()
        context = await browser.new_context(
            viewport={'width': 1920, 'height': 1080},
            locale=self.locale,
            timezone_id=self.timezone_id,
        )
        if cookies:
            await context.add_cookies(cookies)
        return context

    async def close(self):
        """Clean up browser resources."""
        if self._browser:
            await self._browser.close()
            self._browser = None
        if self._playwright:
            await self._playwright.stop()
            self._playwright = None


@asynccontextmanager
async def open_portal_browser(**kwargs) -> AsyncIterator[PortalBrowser]:
    browser = PortalBrowser(**kwargs)
    try:
        yield browser
    finally:
        await browser.close()
