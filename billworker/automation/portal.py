"""
Browser-driven implementations of the login surface and the billing portal.
"""

from typing import List, Optional

from loguru import logger
from playwright.async_api import Locator
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from billworker.automation import selectors
from billworker.automation.challenge import find_site_key, inject_token
from billworker.automation.invoices import (
    BillingPortal,
    BillSurface,
    RawDownload,
    SurfaceSignal,
)
from billworker.automation.login import LoginEvidence, LoginSurface
from billworker.automation.page import BrowserPage
from billworker.config import Config
from billworker.core.errors import DownloadTimeout, FormNotFound
from billworker.core.models import Credentials
from billworker.storage import ArtifactSink
from billworker.storage.artifacts import CAPTCHA_INJECTED, PAGE_DUMP


class PlaywrightLoginSurface(LoginSurface):
    """Login page driven through the DOM."""

    def __init__(self, page: BrowserPage, config: Config, sink: ArtifactSink):
        self.page = page
        self.config = config
        self.portal = config.portal
        self.timeouts = config.timeouts
        self.sink = sink

    def current_url(self) -> str:
        return self.page.url

    def challenge_url(self) -> str:
        return self.page.url

    async def navigate(self):
        logger.info("Navigating to portal...")
        await self.page.goto(self.portal.login_url, "domcontentloaded", self.timeouts.navigation)
        await self.page.wait_for("body", state="attached", timeout=10000)

    async def wait_for_form(self):
        logger.info(f"Waiting for inputs: {selectors.USERNAME_INPUT}")
        if not await self.page.wait_for(selectors.USERNAME_INPUT, timeout=self.timeouts.login_form):
            logger.warning("Timeout waiting for inputs. Dumping HTML...")
            self.sink.set_value(PAGE_DUMP, await self.page.content())
            raise FormNotFound(f"Inputs not found - check {PAGE_DUMP}")

    async def fill_credentials(self, credentials: Credentials):
        await self.page.fill_verified(selectors.USERNAME_INPUT, credentials.username)
        await self.page.fill_verified(selectors.PASSWORD_INPUT, credentials.password)

    async def challenge_site_key(self) -> str:
        logger.info("Handling Captcha via ANTICAPTCHA...")
        return await find_site_key(self.page.page)

    async def inject_token(self, token: str, credentials: Credentials):
        logger.info("Injecting captcha token into page...")
        await inject_token(self.page.page, token)

        if self.config.automation.debug_screenshots:
            self.sink.set_value(CAPTCHA_INJECTED, await self.page.screenshot())

        # Firing the callback can re-render the form
        if not await self.page.input_value(selectors.PASSWORD_INPUT):
            logger.warning("⚠️ Password field lost value! Refilling...")
            await self.page.fill_verified(selectors.PASSWORD_INPUT, credentials.password)

    async def submit(self):
        clicked = await self.page.click_first(selectors.SUBMIT_STRATEGIES)
        if clicked is None:
            raise FormNotFound("Submit control not found")

        logger.info("Waiting for navigation/validation...")
        await self.page.wait_load("load", self.timeouts.navigation)
        await self.page.pause(self.config.login.post_submit_settle)

    async def read_error_banner(self) -> Optional[str]:
        banner = self.page.page.locator(selectors.ERROR_BANNER)
        if not await self.page.visible_within(banner, self.timeouts.error_banner):
            return None
        return await banner.first.inner_text()

    async def collect_evidence(self) -> LoginEvidence:
        await self.page.wait_load("networkidle", self.timeouts.navigation)
        page = self.page.page
        return LoginEvidence(
            url_matches=self.portal.post_login_marker.lower() in page.url.lower(),
            greeting_visible=await page.get_by_text(self.portal.greeting_text, exact=False).first.is_visible(),
            credential_input_present=await self.page.is_visible(selectors.USERNAME_INPUT),
        )

    async def capture_failure(self, key: str):
        self.sink.set_value(key, await self.page.screenshot())


class PlaywrightBillingPortal(BillingPortal):
    """Bill listing pages driven through the DOM."""

    def __init__(self, page: BrowserPage, config: Config, sink: ArtifactSink):
        self.page = page
        self.config = config
        self.portal = config.portal
        self.timeouts = config.timeouts
        self.sink = sink
        self.installation: Optional[Locator] = None
        self.months: Optional[Locator] = None

    # ==================== Surfaces ====================

    def current_surface(self) -> Optional[BillSurface]:
        url = self.page.url
        if self.portal.paid_bills_marker in url:
            return BillSurface.PAID
        if self.portal.open_bills_marker in url:
            return BillSurface.OPEN
        return None

    async def open_surface(self, surface: BillSurface):
        self.installation = None
        self.months = None
        if surface is BillSurface.OPEN:
            logger.info(f"Navigating to Bills Page: {self.portal.open_bills_url}")
            await self.page.goto(self.portal.open_bills_url, "networkidle", self.timeouts.bills_navigation)
        else:
            await self.page.goto(self.portal.paid_bills_url, "load", self.timeouts.navigation)

    async def check_open_bills(self) -> SurfaceSignal:
        page = self.page.page
        winner = await self.page.race({
            SurfaceSignal.BILLS.value: page.locator(selectors.BILLS_CONTAINER),
            SurfaceSignal.ACCOUNT_CURRENT.value: page.get_by_text(self.portal.account_current_text),
        }, timeout=self.timeouts.surface_signal)
        return SurfaceSignal(winner) if winner else SurfaceSignal.NONE

    # ==================== Installation ====================

    async def find_installation(self, code: str) -> bool:
        if not await self.page.wait_for(selectors.LISTING_CONTAINERS, "attached", self.timeouts.listing):
            logger.warning("⚠️ Accordion group wait timeout (might be on empty paid bills page or error).")

        page = self.page.page
        for items, label in zip(selectors.INSTALLATION_ITEMS, selectors.INSTALLATION_CODE_LABELS):
            candidate = page.locator(items).filter(has=page.locator(label.format(code=code))).first
            if await candidate.count() > 0:
                self.installation = candidate
                return True
        return False

    def _first_of(self, candidates) -> Locator:
        return self.installation.locator(selectors.any_of(candidates)).first

    async def _expanded(self, content: Locator) -> bool:
        if await content.count() == 0:
            return False
        if not await content.is_visible():
            return False
        return (await content.inner_text()).strip() != ""

    async def expand(self, wait_transient: bool = False) -> bool:
        """Click the header, then the icon, until the content is visible and non-empty."""
        content = self._first_of(selectors.CONTENT_CANDIDATES)
        header = self._first_of(selectors.HEADER_CANDIDATES)
        icon = self.installation.locator(selectors.any_of(selectors.ICON_CANDIDATES)).last

        expanded = await self._expanded(content)
        if expanded:
            logger.info("Accordion content already visible.")
        else:
            logger.info("Accordion content hidden. Clicking header to expand...")
            expanded = await self._click_and_wait(header, content)
            if not expanded and await icon.count() > 0:
                logger.warning("⚠️ Header click didn't expand content. Trying icon click...")
                expanded = await self._click_and_wait(icon, content)
            if not expanded:
                logger.warning("❌ Failed to expand accordion content!")

        if wait_transient:
            await self._wait_transient()
        return expanded

    async def _click_and_wait(self, target: Locator, content: Locator) -> bool:
        if await target.count() == 0:
            return False
        try:
            await target.click(force=True, timeout=self.timeouts.expand)
        except PlaywrightTimeoutError:
            return False
        return await self.page.wait_locator(content, "visible", self.timeouts.expand)

    async def _wait_transient(self):
        """Paid bills show a "Carregando" message while the AJAX content loads."""
        loading = self.page.page.get_by_text(self.portal.loading_message_text)
        if await loading.count() > 0:
            logger.info("⏳ Waiting for loading message to clear...")
            await self.page.wait_locator(loading.first, "hidden", self.timeouts.loading_message)
        await self.page.wait_load("load", self.timeouts.navigation)
        await self.page.wait_attach_detach(
            selectors.AJAX_WAIT, self.timeouts.ajax_wait_attach, self.timeouts.paid_ajax_wait_detach
        )
        if self.config.automation.debug_screenshots:
            self.sink.set_value("DEBUG_PAID_BILLS.png", await self.page.screenshot(full_page=True))

    async def settle(self):
        """Network idle, then the AJAX indicator, then rows vs. the empty-state alert."""
        logger.info("⏳ Waiting for bill list content to load (rows or empty message)...")
        await self.page.wait_load("networkidle", self.timeouts.navigation)
        await self.page.wait_attach_detach(
            selectors.AJAX_WAIT, self.timeouts.ajax_wait_attach, self.timeouts.ajax_wait_detach
        )

        scope = self._first_of(selectors.CONTENT_CANDIDATES)
        if await scope.count() == 0:
            scope = self.installation

        winner = await self.page.race({
            "rows": scope.locator(selectors.BILL_ROWS),
            "alert": scope.locator(selectors.EMPTY_ALERT),
        }, timeout=self.timeouts.content_race)
        if winner is None:
            logger.warning("⚠️ Wait for content race timeout. Continuing to inspection...")

        rows = await self.installation.locator(selectors.RECORD_ELEMENTS).count()
        if rows:
            logger.info(f"✅ Bill list loaded. Found {rows} record element(s).")
            return

        alert = scope.locator(selectors.EMPTY_ALERT).first
        if await alert.count() > 0 and await alert.is_visible():
            logger.info(f'ℹ️ Alert found: "{(await alert.inner_text()).strip()}"')
            key = "DEBUG_NO_BILLS_ALERT.png"
        else:
            logger.warning("⚠️ Content visible but empty? Taking screenshot.")
            key = "DEBUG_EMPTY_ACCORDION.png"
        if self.config.automation.debug_screenshots:
            self.sink.set_value(key, await self.page.screenshot())

    # ==================== Month & download ====================

    async def find_month(self, month: str) -> int:
        for pattern in selectors.MONTH_LABELS:
            matches = self.installation.locator(pattern.format(month=month))
            count = await matches.count()
            if count:
                self.months = matches
                return count
        self.months = None
        return 0

    async def _locate_control(self, index: int) -> Optional[Locator]:
        """Ordered strategies: row hypotheses, ancestor containers, Nth control in the block."""
        match = self.months.nth(index)
        controls = selectors.any_of(selectors.DOWNLOAD_CONTROLS)

        for xpath in selectors.ROW_ANCESTORS + selectors.CONTAINER_ANCESTORS:
            ancestor = match.locator(f"xpath={xpath}")
            if await ancestor.count() == 0:
                continue
            control = ancestor.locator(controls).first
            if await control.count() > 0 and await control.is_visible():
                logger.info(f"  📎 Found download button via {xpath}")
                return control

        visible: List[Locator] = []
        candidates = self.installation.locator(controls)
        for i in range(await candidates.count()):
            if await candidates.nth(i).is_visible():
                visible.append(candidates.nth(i))
        logger.info(f"  🔍 Fallback: Found {len(visible)} download-like buttons in installation block")
        if len(visible) > index:
            logger.info(f"  📎 Using download button at index {index}")
            return visible[index]
        return None

    async def _click_target(self, control: Locator) -> Locator:
        """Icons are clicked through their enclosing link or button."""
        for xpath in selectors.CLICK_WRAPPERS:
            wrapper = control.locator(f"xpath={xpath}").first
            if await wrapper.count() > 0:
                return wrapper
        return control

    async def download(self, index: int) -> Optional[RawDownload]:
        if self.months is None:
            return None
        control = await self._locate_control(index)
        if control is None:
            return None
        target = await self._click_target(control)

        page = self.page.page
        try:
            # Listener is armed before the click
            async with page.expect_download(timeout=self.timeouts.download) as download_info:
                await target.click(force=True)
                await self._confirm_reason()
            download = await download_info.value
        except PlaywrightTimeoutError:
            raise DownloadTimeout(f"Download event timeout for match {index + 1}")

        path = await download.path()
        with open(path, "rb") as f:
            data = f.read()
        return RawDownload(data=data, url=download.url)

    async def _confirm_reason(self):
        """Answer the "reason for download" modal when the portal shows one."""
        page = self.page.page
        modal = page.locator(selectors.any_of(selectors.REASON_MODALS)).filter(
            has=page.locator(selectors.REASON_SELECT)
        )
        if not await self.page.visible_within(modal, self.timeouts.reason_modal):
            return

        logger.info("Download reason requested. Selecting fixed reason...")
        await self.page.wait_attach_detach(
            selectors.AJAX_WAIT, self.timeouts.ajax_wait_attach, self.timeouts.ajax_wait_detach
        )
        dialog = modal.first
        await dialog.locator(selectors.REASON_SELECT).first.select_option(label=self.portal.download_reason)
        await dialog.locator(selectors.any_of(selectors.REASON_CONFIRM)).first.click(force=True)

    async def fetch(self, url: str) -> bytes:
        response = await self.page.page.context.request.get(url, timeout=self.timeouts.download)
        return await response.body()

    async def screenshot(self, full_page: bool = True) -> Optional[bytes]:
        return await self.page.screenshot(full_page=full_page)

    async def html(self) -> str:
        return await self.page.content()
