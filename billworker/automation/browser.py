"""
Browser lifecycle for a worker run.
Launches Chromium (or another engine) with anti-detection flags and
playwright-stealth patches, and relays tagged console output to the log.
"""

from typing import Any, Dict, Optional

from loguru import logger
from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright_stealth import Stealth

from billworker.config import Config


CONSOLE_MARKERS = ("✅", "❌", "⚠️")


class BrowserAutomation:
    """
    Owns the Playwright driver, browser, context and page of one run.

    ``close()`` is safe to call at any point, including after a failed
    ``initialize()``.
    """

    LAUNCH_ARGS = [
        # Core anti-detection
        "--disable-blink-features=AutomationControlled",
        "--start-maximized",

        # Performance & stability
        "--no-sandbox",
        "--disable-setuid-sandbox",
        "--disable-dev-shm-usage",
        "--disable-gpu",

        # Reduce resource usage
        "--disable-background-networking",
        "--disable-default-apps",
        "--disable-extensions",
        "--disable-sync",
        "--mute-audio",
        "--no-first-run",
    ]

    def __init__(self, config: Config):
        """
        Initialize browser automation.

        Args:
            config: Application configuration
        """
        self.config = config
        self.automation_config = config.automation
        self.playwright: Optional[Playwright] = None
        self.browser: Optional[Browser] = None
        self.context: Optional[BrowserContext] = None
        self.page: Optional[Page] = None

    async def initialize(self) -> Page:
        """Start Playwright, launch the browser and open the run's page."""
        logger.info("🚀 Initializing browser automation...")

        self.playwright = await async_playwright().start()

        launch_options = {
            "headless": self.automation_config.headless,
            "args": self.LAUNCH_ARGS + [f"--user-agent={self.automation_config.user_agent}"],
        }

        if self.automation_config.browser == "chromium":
            self.browser = await self.playwright.chromium.launch(**launch_options)
        elif self.automation_config.browser == "firefox":
            self.browser = await self.playwright.firefox.launch(headless=self.automation_config.headless)
        elif self.automation_config.browser == "webkit":
            self.browser = await self.playwright.webkit.launch(headless=self.automation_config.headless)
        else:
            raise ValueError(f"Unsupported browser: {self.automation_config.browser}")

        self.context = await self.browser.new_context(**self._context_options())

        if self.automation_config.stealth_enabled:
            await Stealth().apply_stealth_async(self.context)
            logger.debug("✅ Stealth patches applied")
        else:
            logger.warning("⚠️ Stealth mode is disabled - bot may be detected!")

        self.page = await self.context.new_page()
        self.page.set_default_timeout(self.config.timeouts.default)
        self._setup_page_handlers()

        logger.success(f"✅ Browser initialized ({self.automation_config.browser})")
        return self.page

    def _context_options(self) -> Dict[str, Any]:
        viewport = self.automation_config.viewport
        options: Dict[str, Any] = {
            "viewport": {"width": viewport.width, "height": viewport.height},
            "locale": self.automation_config.locale,
            "timezone_id": self.automation_config.timezone,
            "user_agent": self.automation_config.user_agent,
            "accept_downloads": True,
        }

        proxy = self.config.proxy
        if proxy.enabled and proxy.url:
            options["proxy"] = {"server": proxy.url}
            if proxy.username:
                options["proxy"]["username"] = proxy.username
                options["proxy"]["password"] = proxy.password
            logger.info(f"Using proxy: {proxy.url}")

        return options

    def _setup_page_handlers(self):
        def relay(msg):
            if any(marker in msg.text for marker in CONSOLE_MARKERS):
                logger.info(f"[BROWSER] {msg.text}")

        async def accept_dialog(dialog):
            try:
                await dialog.accept()
            except PlaywrightError as e:
                logger.debug(f"Dialog already handled: {e}")

        self.page.on("console", relay)
        self.page.on("pageerror", lambda err: logger.debug(f"Page error: {err}"))
        self.page.on("dialog", accept_dialog)

    async def close(self):
        """Close browser and clean up resources. Each step runs even if an earlier one fails."""
        steps = (
            ("context", self.context.close if self.context else None),
            ("browser", self.browser.close if self.browser else None),
            ("playwright", self.playwright.stop if self.playwright else None),
        )
        try:
            for name, step in steps:
                if step is None:
                    continue
                try:
                    await step()
                except Exception as e:
                    logger.error(f"Error closing {name}: {e}")
            logger.info("Browser closed")
        finally:
            self.page = None
            self.context = None
            self.browser = None
            self.playwright = None
