import logging
import random
from pathlib import Path
from typing import Optional, Sequence

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import Page, TimeoutError as PlaywrightTimeoutError, sync_playwright

from eventplanner.errors import AutomationError, TransientAutomationError
from eventplanner.registration.session import BrowserSession

logger = logging.getLogger(__name__)

OVERLAY_SELECTORS = [
    'button#onetrust-accept-btn-handler',
    'button[data-testid="accept-all-cookies"]',
    "button:has-text('Accept all')",
    "button:has-text('Accept All')",
    "button:has-text('Accept')",
    "button:has-text('I agree')",
    "button:has-text('Got it')",
    'button[id*="cookie"][id*="accept"]',
    '[aria-label*="close" i]',
    '.modal-close',
    'button.close',
]


class PlaywrightBrowserSession(BrowserSession):
    """Chromium through the Playwright sync API, one page per session."""

    def __init__(self, headless: bool = True, user_agent: Optional[str] = None,
                 navigation_timeout_ms: int = 30000, min_delay_ms: int = 300, max_delay_ms: int = 1200):
        self.navigation_timeout_ms = navigation_timeout_ms
        self.min_delay_ms = min_delay_ms
        self.max_delay_ms = max_delay_ms
        logger.info("Starting Playwright and launching browser...")
        self._playwright = sync_playwright().start()
        try:
            self._browser = self._playwright.chromium.launch(
                headless=headless,
                args=["--no-sandbox", "--disable-setuid-sandbox", "--disable-blink-features=AutomationControlled"],
            )
            self._page: Page = self._browser.new_page(user_agent=user_agent,
                                                      viewport={"width": 1366, "height": 900})
            self._page.add_init_script("Object.defineProperty(navigator, 'webdriver', {get: () => undefined})")
        except PlaywrightError as e:
            logger.critical(f"Playwright browser launch failed: {e}", exc_info=True)
            self._playwright.stop()
            raise AutomationError(f"Browser launch failed: {e}") from e

    @classmethod
    def from_settings(cls, automation_settings) -> "PlaywrightBrowserSession":
        return cls(
            headless=automation_settings.headless,
            user_agent=automation_settings.user_agent,
            navigation_timeout_ms=automation_settings.navigation_timeout_ms,
            min_delay_ms=automation_settings.min_delay_ms,
            max_delay_ms=automation_settings.max_delay_ms,
        )

    def _pause(self) -> None:
        self._page.wait_for_timeout(random.randint(self.min_delay_ms, max(self.min_delay_ms, self.max_delay_ms)))

    def _dismiss_overlays(self) -> bool:
        for selector in OVERLAY_SELECTORS:
            try:
                button = self._page.locator(selector).first
                if button.is_visible(timeout=1000):
                    button.click(timeout=2500)
                    logger.debug(f"Dismissed overlay with '{selector}'")
                    self._pause()
                    return True
            except PlaywrightError:
                continue
        return False

    def navigate(self, url: str) -> None:
        logger.info(f"Navigating to: {url}")
        try:
            response = self._page.goto(url, wait_until="networkidle", timeout=self.navigation_timeout_ms)
        except PlaywrightTimeoutError as e:
            raise TransientAutomationError(f"Timed out loading {url}") from e
        except PlaywrightError as e:
            raise TransientAutomationError(f"Navigation to {url} failed: {e}") from e
        if response is not None and response.status >= 500:
            raise TransientAutomationError(f"{url} returned {response.status}")
        if response is not None and response.status >= 400:
            raise AutomationError(f"{url} returned {response.status}")
        self._dismiss_overlays()

    def fill_field(self, selectors: Sequence[str], value: str) -> bool:
        for selector in selectors:
            try:
                field = self._page.locator(selector).first
                if field.is_visible(timeout=500):
                    field.fill(value, timeout=5000)
                    self._pause()
                    return True
            except PlaywrightTimeoutError:
                continue
            except PlaywrightError as e:
                logger.debug(f"Could not fill '{selector}': {e}")
                continue
        return False

    def submit(self, selectors: Sequence[str]) -> bool:
        for selector in selectors:
            try:
                button = self._page.locator(selector).first
                if button.is_visible(timeout=500):
                    button.click(timeout=5000)
                    self._page.wait_for_load_state("networkidle", timeout=self.navigation_timeout_ms)
                    return True
            except PlaywrightTimeoutError as e:
                raise TransientAutomationError(f"Timed out submitting with '{selector}'") from e
            except PlaywrightError as e:
                logger.debug(f"Submit selector '{selector}' failed: {e}")
                continue
        return False

    def rendered_content(self) -> str:
        return self._page.content()

    def current_url(self) -> str:
        return self._page.url

    def screenshot(self, path: str) -> Optional[str]:
        try:
            Path(path).parent.mkdir(parents=True, exist_ok=True)
            self._page.screenshot(path=path, full_page=True)
            return path
        except PlaywrightError as e:
            logger.warning(f"Screenshot to {path} failed: {e}")
            return None

    def close(self) -> None:
        logger.info("Closing browser and stopping Playwright...")
        try:
            if self._browser.is_connected():
                self._browser.close()
        except PlaywrightError as e:
            logger.error(f"Error closing browser: {e}", exc_info=True)
        try:
            self._playwright.stop()
        except PlaywrightError as e:
            logger.error(f"Error stopping Playwright: {e}", exc_info=True)
