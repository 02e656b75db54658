"""
Session Driver: the small set of browser primitives the verification flow needs.

The engine and the login step only talk to a SessionDriver, never to
Playwright directly.  PlaywrightSession is the real implementation; tests
drive the flow with a scripted stand-in.

All waits use DOM signals (selector visibility) and return False on timeout
instead of raising.
"""

import logging
from contextlib import contextmanager
from typing import Iterator, Protocol

from playwright.sync_api import Page, TimeoutError as PlaywrightTimeout, sync_playwright

from lpg_batch.utils import capture_diagnostics

logger = logging.getLogger("lpg_batch")

# The portal is a client-rendered SPA — domcontentloaded is enough.
WAIT_STRATEGY = "domcontentloaded"

# Typing with a small per-key delay keeps the portal's masked inputs in sync.
TYPE_DELAY_MS = 100

_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36"
)

_LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--no-first-run",
    "--disable-extensions",
    # Prevent navigator.webdriver from returning true (bot detection)
    "--disable-blink-features=AutomationControlled",
]


class SessionDriver(Protocol):
    """Blocking primitives against one logical browser tab."""

    def goto(self, url: str) -> None: ...

    def wait_for(self, selector: str, timeout: int) -> bool: ...

    def type(self, selector: str, text: str) -> None: ...

    def click(self, selector: str) -> None: ...

    def query_text(self, selector: str) -> str | None: ...

    def reload(self) -> None: ...

    def screenshot_and_dump_html(self, label: str) -> str | None: ...


class PlaywrightSession:
    """SessionDriver backed by a Playwright sync Page."""

    def __init__(self, page: Page, navigation_timeout: int = 30_000):
        self.page = page
        self._nav_timeout = navigation_timeout

    def goto(self, url: str) -> None:
        logger.debug(f"  goto {url}")
        self.page.goto(url, wait_until=WAIT_STRATEGY, timeout=self._nav_timeout)

    def wait_for(self, selector: str, timeout: int) -> bool:
        try:
            self.page.wait_for_selector(selector, state="visible", timeout=timeout)
            return True
        except PlaywrightTimeout:
            logger.debug(f"  '{selector}' not visible after {timeout}ms")
            return False

    def type(self, selector: str, text: str) -> None:
        field = self.page.locator(selector).first
        field.fill("")
        field.type(text, delay=TYPE_DELAY_MS)

    def click(self, selector: str) -> None:
        self.page.locator(selector).first.click(timeout=self._nav_timeout)

    def query_text(self, selector: str) -> str | None:
        """inner_text of the first visible match, or None when nothing matches."""
        locator = self.page.locator(selector)
        if locator.count() == 0:
            return None
        first = locator.first
        if not first.is_visible():
            return None
        return first.inner_text()

    def reload(self) -> None:
        self.page.reload(wait_until=WAIT_STRATEGY, timeout=self._nav_timeout)

    def screenshot_and_dump_html(self, label: str) -> str | None:
        return capture_diagnostics(self.page, label)


@contextmanager
def open_session(config: dict) -> Iterator[PlaywrightSession]:
    """
    Launch a browser with one page and yield it wrapped as a session.

    The browser is closed on every exit path, exceptions included.
    """
    headless = config.get("headless", True)
    with sync_playwright() as p:
        launch_opts: dict = {
            "headless": headless,
            "slow_mo": 0 if headless else 250,
            "args": _LAUNCH_ARGS,
        }
        if config.get("browser_executable"):
            launch_opts["executable_path"] = config["browser_executable"]

        browser = p.chromium.launch(**launch_opts)
        logger.info(f"Browser launched (headless={headless})")
        try:
            # Mimic a real desktop browser — avoid the default 800×600
            # viewport and the "HeadlessChrome" user-agent string.
            context = browser.new_context(
                viewport={"width": 1280, "height": 800},
                user_agent=_USER_AGENT,
            )
            page = context.new_page()
            yield PlaywrightSession(page, navigation_timeout=config.get("navigation_timeout", 30_000))
        finally:
            logger.info("Closing browser...")
            try:
                browser.close()
            except Exception as e:
                logger.debug(f"Browser close failed: {e}")
