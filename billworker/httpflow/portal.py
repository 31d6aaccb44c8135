"""
Browserless implementations of the login surface and the billing portal.

The login is an OutSystems WebForms post-back replayed by hand; bill
discovery works on raw markup, expanding accordions through their OsAjax
event targets.
"""

import time
from typing import Dict, List, Optional

import httpx
from bs4 import Tag
from loguru import logger

from billworker.automation import selectors
from billworker.automation.invoices import (
    BillingPortal,
    BillSurface,
    RawDownload,
    SurfaceSignal,
)
from billworker.automation.login import LoginEvidence, LoginSurface
from billworker.config import Config
from billworker.core.errors import ChallengeKeyNotFound, DownloadTimeout, FormNotFound
from billworker.core.models import Credentials
from billworker.storage import ArtifactSink
from billworker.storage.artifacts import PAGE_DUMP

from .markup import MarkupPage
from .session import HttpSession


class HttpLoginSurface(LoginSurface):
    """Login form replayed as a raw form POST."""

    def __init__(self, session: HttpSession, config: Config, sink: ArtifactSink):
        self.session = session
        self.config = config
        self.portal = config.portal
        self.sink = sink
        self.login_page: Optional[MarkupPage] = None
        self.response_page: Optional[MarkupPage] = None
        self.form: Dict[str, str] = {}
        self._url = self.portal.login_url

    def current_url(self) -> str:
        return self._url

    def challenge_url(self) -> str:
        return self.portal.login_url

    async def navigate(self):
        logger.info("--- GET Login Page ---")
        self.session.cookies.clear()
        response = await self.session.get(self.portal.login_url)
        self.session.seed_device_cookies()
        logger.info(f"Cookies after GET: {', '.join(self.session.cookies)}")

        self._url = str(response.url)
        self.login_page = MarkupPage(response.text, self._url)
        self.response_page = None
        self.form = {}

    async def wait_for_form(self):
        page = self.login_page
        osv_state = page.value_of("__OSVSTATE")
        username_field = page.name_of(selectors.USERNAME_INPUT)
        password_field = page.name_of(selectors.PASSWORD_INPUT)
        logger.info(f"__OSVSTATE length: {len(osv_state)} chars")
        logger.info(f"__VIEWSTATEGENERATOR: {page.value_of('__VIEWSTATEGENERATOR')}")

        if not osv_state or not username_field or not password_field:
            self.sink.set_value(PAGE_DUMP, page.html)
            raise FormNotFound("Could not find __OSVSTATE or credential field names in login page HTML")

        self.form = page.form_fields()
        self.form["__OSVSTATE"] = osv_state
        self.form["__EVENTTARGET"] = ""
        self.form["__EVENTARGUMENT"] = ""

    async def fill_credentials(self, credentials: Credentials):
        page = self.login_page
        self.form[page.name_of(selectors.USERNAME_INPUT)] = credentials.username
        self.form[page.name_of(selectors.PASSWORD_INPUT)] = credentials.password

        # Simulates clicking ENTRAR with "remember account" ticked
        entrar = page.name_of('input[id*="wtEntrar"][value="ENTRAR"]')
        if entrar:
            self.form[entrar] = "ENTRAR"
        remember = page.name_of('input[id*="wtLembraConta"]')
        if remember:
            self.form[remember] = "on"

    async def challenge_site_key(self) -> str:
        site_key = self.login_page.attr_of(selectors.SITE_KEY_HOLDER, selectors.SITE_KEY_ATTRIBUTE)
        if not site_key:
            # The widget is rendered by script; the key has been stable for years
            site_key = self.portal.default_site_key
        if not site_key:
            raise ChallengeKeyNotFound("Could not find reCAPTCHA sitekey")
        return site_key

    async def inject_token(self, token: str, credentials: Credentials):
        logger.info(f"Captcha token length: {len(token)}")
        self.form["g-recaptcha-response"] = token

    async def submit(self):
        logger.info(f"POST body field count: {len(self.form)}")
        response = await self.session.post_form(
            self.portal.login_post_url,
            self.form,
            referer=self.portal.login_url,
            origin=self.portal.base_url,
        )
        logger.info(f"Login response status: {response.status_code}")

        self.session.store_script_cookies(response.text)
        logger.info(f"Cookies after login (with JS extraction): {', '.join(self.session.cookies)}")

        self._url = str(response.url)
        self.response_page = MarkupPage(response.text, self._url)

    async def read_error_banner(self) -> Optional[str]:
        if self.response_page is None:
            return None
        return self.response_page.text_of(selectors.ERROR_BANNER) or None

    async def collect_evidence(self) -> LoginEvidence:
        """
        Session cookies stand in for the post-login URL: the form always posts
        to Login.aspx, so the URL alone says nothing here.
        """
        page = self.response_page
        title = page.title
        logger.info(f'Login response page title: "{title}"')
        greeting = (
            "Início" in title
            or "Inicio" in title
            or self.portal.greeting_text.lower() in page.soup.get_text(" ").lower()
        )
        return LoginEvidence(
            url_matches=self.session.has_cookies(self.portal.session_cookie, self.portal.username_cookie),
            greeting_visible=greeting,
            credential_input_present=page.has(selectors.USERNAME_INPUT),
        )

    async def capture_failure(self, key: str):
        if self.response_page is not None:
            self.sink.set_value(key.rsplit(".", 1)[0] + ".html", self.response_page.html)


class HttpBillingPortal(BillingPortal):
    """Bill listings read from raw markup."""

    def __init__(self, session: HttpSession, config: Config):
        self.session = session
        self.config = config
        self.portal = config.portal
        self.page: Optional[MarkupPage] = None
        self.surface: Optional[BillSurface] = None
        self.installation_code: Optional[str] = None
        self.block: Optional[Tag] = None
        self.fragments: List[MarkupPage] = []
        self.links: List[Optional[str]] = []

    def current_surface(self) -> Optional[BillSurface]:
        return self.surface

    def _url_for(self, surface: BillSurface) -> str:
        return self.portal.open_bills_url if surface is BillSurface.OPEN else self.portal.paid_bills_url

    async def open_surface(self, surface: BillSurface):
        url = self._url_for(surface)
        logger.info(f"Navigating to Bills Page: {url}")
        response = await self.session.get(url, referer=self.portal.login_post_url)
        self.page = MarkupPage(response.text, str(response.url))
        self.surface = surface
        self.block = None
        self.fragments = []
        self.links = []
        logger.info(f"Bills page HTML length: {len(response.text)} chars")

    async def check_open_bills(self) -> SurfaceSignal:
        if self.page.has(selectors.BILLS_CONTAINER):
            return SurfaceSignal.BILLS
        if self.portal.account_current_text in self.page.soup.get_text(" "):
            return SurfaceSignal.ACCOUNT_CURRENT
        return SurfaceSignal.NONE

    async def find_installation(self, code: str) -> bool:
        self.installation_code = code
        self.block = self.page.installation_block(code)
        return self.block is not None

    async def expand(self, wait_transient: bool = False) -> bool:
        """Open the installation's entry unless its bills are already in the served markup."""
        if self.page.has_bill_rows(self.block):
            logger.debug("Installation entry already lists bills; skipping accordion post-back")
            return True
        return await self._post_accordion()

    def _event_target(self) -> Optional[str]:
        target = self.page.accordion_event_target(self.block)
        if target is None and self.page.entry_count() <= 1:
            # A lone entry may keep its toggle outside the labeled block
            target = self.page.accordion_event_target()
        return target

    async def _post_accordion(self) -> bool:
        """Post the entry's OsAjax event and keep the returned fragment."""
        if self.fragments:
            return True
        target = self._event_target()
        osv_state = self.page.value_of("__OSVSTATE")
        if not target or not osv_state:
            logger.debug("No accordion event target; using markup as served")
            return False

        logger.info(f"Found accordion click target: {target}")
        body = {
            "__EVENTTARGET": target,
            "__EVENTARGUMENT": "",
            "__OSVSTATE": osv_state,
            "__VIEWSTATE": "",
            "__VIEWSTATEGENERATOR": self.page.value_of("__VIEWSTATEGENERATOR"),
        }
        for name, value in self.page.postback_fields().items():
            body.setdefault(name, value)

        listing_url = self._url_for(self.surface)
        response = await self.session.post_form(
            f"{listing_url}?_ts={int(time.time() * 1000)}",
            body,
            referer=listing_url,
            origin=self.portal.base_url,
            ajax=True,
        )
        logger.info(f"AJAX response length: {len(response.text)} chars")

        # The response carries the expanded entry's content only
        self.fragments.append(MarkupPage(response.text, self.page.url))
        return True

    async def settle(self):
        pass

    async def find_month(self, month: str) -> int:
        """
        Resolve one download link per occurrence of ``month``.

        The installation block as served is searched first. The expanded
        fragment is only consulted when the block has no match, so a bill
        repeated by the post-back is not counted twice.
        """
        markup, scope = self.page, self.block
        labels = markup.month_labels(month, scope)
        if not labels:
            await self._post_accordion()
            for fragment in self.fragments:
                labels = fragment.month_labels(month, fragment.soup)
                if labels:
                    markup, scope = fragment, fragment.soup
                    break

        modal_links = markup.modal_download_links(self.installation_code)
        self.links = []
        for index, label in enumerate(labels):
            link = markup.download_link_near(label, index, scope)
            if link is None and len(modal_links) > index:
                link = modal_links[index]
            if link is None:
                link = markup.card_download_link(month, index)
            self.links.append(link)

        logger.info(f"Month {month} found {len(self.links)} time(s) in installation markup")
        return len(self.links)

    async def download(self, index: int) -> Optional[RawDownload]:
        if index >= len(self.links) or self.links[index] is None:
            return None
        url = self.links[index]
        logger.info(f"Downloading PDF from: {url}")
        try:
            response = await self.session.get(
                url,
                referer=self._url_for(self.surface),
                timeout=self.config.timeouts.download / 1000,
            )
        except httpx.TimeoutException as e:
            raise DownloadTimeout(f"Download timed out: {url}") from e
        logger.info(
            f"Response: {response.status_code}, Content-Type: {response.headers.get('content-type', '')}, "
            f"Size: {len(response.content)} bytes"
        )
        return RawDownload(data=response.content, url=str(response.url))

    async def fetch(self, url: str) -> bytes:
        response = await self.session.get(url, referer=self.portal.paid_bills_url)
        return response.content

    async def screenshot(self, full_page: bool = True) -> Optional[bytes]:
        return None

    async def html(self) -> str:
        return self.page.html if self.page else ""
