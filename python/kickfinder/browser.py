from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from playwright.async_api import Browser, Error as PlaywrightError, Page, Playwright
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from kickfinder import cancellation
from kickfinder.cancellation import CancellationToken
from kickfinder.config import Settings
from kickfinder.errors import Blocked, ScrapeTimeout

logger = logging.getLogger(__name__)

LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-blink-features=AutomationControlled",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--disable-extensions",
    "--disable-background-networking",
    "--disable-sync",
    "--no-first-run",
]
USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/122.0.0.0 Safari/537.36"
)
STEALTH_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', {get: () => undefined});
window.chrome = window.chrome || {runtime: {}};
"""
BLOCKED_RESOURCE_TYPES = {"image", "font", "media"}

CHALLENGE_TITLE_MARKERS = (
    "just a moment",
    "attention required",
    "access denied",
    "verify you are human",
    "are you a robot",
    "pardon our interruption",
)
CHALLENGE_URL_MARKERS = ("/challenge", "/blocked", "captcha", "/verify")
CHALLENGE_POLL_MS = 500


class BrowserSession:
    """The one long-lived browser connection. Callers open their own tabs."""

    def __init__(self, browser: Browser, playwright: Optional[Playwright] = None, *, settings: Settings) -> None:
        self.browser = browser
        self._playwright = playwright
        self._settings = settings

    def is_connected(self) -> bool:
        return self.browser.is_connected()

    @asynccontextmanager
    async def open_tab(self, label: str = "") -> AsyncIterator[Page]:
        context = await self.browser.new_context(
            viewport={"width": 1366, "height": 900},
            locale="en-CA",
            timezone_id="America/Toronto",
            user_agent=USER_AGENT,
            extra_http_headers={"Accept-Language": "en-CA,en;q=0.9"},
        )
        try:
            await context.add_init_script(STEALTH_SCRIPT)
            await context.route("**/*", _block_heavy_resources)
            page = await context.new_page()
            page.set_default_navigation_timeout(self._settings.nav_timeout_ms)
            page.set_default_timeout(self._settings.wait_for_selector_timeout_ms)
            yield page
        finally:
            try:
                await context.close()
            except PlaywrightError as exc:
                logger.debug("tab close failed (%s): %s", label or "tab", exc)

    async def close(self) -> None:
        try:
            await self.browser.close()
        finally:
            if self._playwright is not None:
                await self._playwright.stop()
                self._playwright = None


async def _block_heavy_resources(route: Any) -> None:
    if route.request.resource_type in BLOCKED_RESOURCE_TYPES:
        await route.abort()
    else:
        await route.continue_()


async def launch_browser(settings: Settings) -> BrowserSession:
    playwright = await async_playwright().start()
    try:
        if settings.browser_ws_endpoint:
            logger.info("connecting to remote browser over CDP")
            browser = await playwright.chromium.connect_over_cdp(
                settings.browser_ws_endpoint,
                timeout=settings.nav_timeout_ms,
            )
        else:
            browser = await playwright.chromium.launch(headless=settings.headless, args=LAUNCH_ARGS)
    except BaseException:
        await playwright.stop()
        raise
    return BrowserSession(browser, playwright, settings=settings)


async def goto(
    page: Page,
    url: str,
    token: Optional[CancellationToken],
    *,
    timeout_ms: int,
    wait_until: str = "domcontentloaded",
) -> None:
    cancellation.check_or_fail(token, f"goto {url}")
    try:
        await page.goto(url, wait_until=wait_until, timeout=timeout_ms)
    except PlaywrightTimeoutError as exc:
        raise ScrapeTimeout(f"navigation timed out: {url}") from exc


async def wait_for_selector(
    page: Page,
    selector: str,
    token: Optional[CancellationToken],
    *,
    timeout_ms: int,
) -> bool:
    cancellation.check_or_fail(token, f"wait for {selector}")
    try:
        await page.wait_for_selector(selector, timeout=timeout_ms)
    except PlaywrightTimeoutError:
        return False
    return True


async def evaluate(page: Page, script: str, arg: Any = None, token: Optional[CancellationToken] = None) -> Any:
    cancellation.check_or_fail(token, "evaluate")
    if arg is None:
        return await page.evaluate(script)
    return await page.evaluate(script, arg)


async def detect_challenge(page: Page) -> Optional[str]:
    try:
        title = (await page.title()).lower()
    except PlaywrightError:
        return None
    for marker in CHALLENGE_TITLE_MARKERS:
        if marker in title:
            return marker
    url = (page.url or "").lower()
    for marker in CHALLENGE_URL_MARKERS:
        if marker in url:
            return marker
    return None


async def wait_out_challenge(
    page: Page,
    token: Optional[CancellationToken],
    *,
    bound_ms: int,
    source: str = "",
) -> None:
    marker = await detect_challenge(page)
    if not marker:
        return
    logger.info("%s anti-bot challenge detected (%s), waiting up to %sms", source or "page", marker, bound_ms)
    loop = asyncio.get_running_loop()
    deadline = loop.time() + bound_ms / 1000.0
    while loop.time() < deadline:
        await cancellation.sleep(CHALLENGE_POLL_MS / 1000.0, token, where=f"{source} challenge")
        marker = await detect_challenge(page)
        if not marker:
            logger.info("%s challenge cleared", source or "page")
            return
    raise ScrapeTimeout(f"{source} challenge unresolved ({marker})") from Blocked(marker)
