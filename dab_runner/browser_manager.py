from datetime import datetime
from typing import Optional

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright

import config as cfg
from dab_runner.errors import SessionLostError
from dab_runner.logger_utils import ColoredLogger as log
from dab_runner.models import Config


class BrowserSession:
    """One browser process with a single context and page"""

    def __init__(self, browser: Browser, context: BrowserContext, page: Page):
        self.browser = browser
        self.context = context
        self.page = page
        self.started_at = datetime.now()

    def is_alive(self) -> bool:
        try:
            return self.browser.is_connected() and not self.page.is_closed()
        except Exception:
            return False

    async def ping(self) -> str:
        """Cheap round trip to the page; raises when the transport is gone"""
        if not self.browser.is_connected():
            raise SessionLostError("Browser disconnected")
        if self.page.is_closed():
            raise SessionLostError("Page closed")
        return await self.page.evaluate("() => location.href")

    async def close(self):
        try:
            await self.context.close()
        finally:
            await self.browser.close()


class BrowserManager:
    """Builds and quits browser sessions on a shared Playwright instance"""

    _playwright: Optional[Playwright] = None

    @classmethod
    async def _get_playwright(cls) -> Playwright:
        if cls._playwright is None:
            cls._playwright = await async_playwright().start()
        return cls._playwright

    @classmethod
    async def build(cls, config: Config) -> BrowserSession:
        playwright = await cls._get_playwright()
        launcher = getattr(playwright, config.browser_type)

        options = {"headless": config.headless}
        if config.browser_type == "chromium":
            args = list(cfg.BROWSER_ARGS)
            if config.private_browsing:
                args.append('--incognito')
            options["args"] = args
        elif config.browser_type == "firefox" and config.private_browsing:
            options["firefox_user_prefs"] = {"browser.privatebrowsing.autostart": True}

        browser = await launcher.launch(**options)
        context = await browser.new_context()
        page = await context.new_page()
        page.set_default_timeout(config.element_wait_timeout_ms)
        return BrowserSession(browser, context, page)

    @classmethod
    async def quit(cls, session: Optional[BrowserSession]):
        if session is None:
            return
        try:
            await session.close()
        except Exception as e:
            log.log_status(f"Browser quit failed. Continuing. ({e})", 'WARNING')

    @classmethod
    async def close(cls):
        if cls._playwright:
            await cls._playwright.stop()
            cls._playwright = None
