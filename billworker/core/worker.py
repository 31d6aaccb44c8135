"""
Top-level run of the invoice worker.
Validates input, logs in, optionally captures invoices, and always
finalizes: diagnostics, resource release and status in one place.
"""

from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
from loguru import logger
from playwright.async_api import Error as PlaywrightError

from billworker.automation.browser import BrowserAutomation
from billworker.automation.invoices import InvoiceWorkflow
from billworker.automation.login import LoginWorkflow
from billworker.automation.page import BrowserPage
from billworker.automation.portal import PlaywrightBillingPortal, PlaywrightLoginSurface
from billworker.captcha import AntiCaptchaClient
from billworker.config import Config
from billworker.httpflow.portal import HttpBillingPortal, HttpLoginSurface
from billworker.httpflow.session import HttpSession
from billworker.storage import ArtifactSink
from billworker.storage.artifacts import ERROR_SCREENSHOT, PAGE_DUMP

from .errors import InputInvalid, WorkerError
from .models import Credentials, DownloadArtifact, RunInput


class WorkerStatus(str, Enum):
    """Worker run states."""
    IDLE = "idle"
    STARTING = "starting"
    LOGGING_IN = "logging_in"
    CAPTURING = "capturing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class InvoiceWorker:
    """
    One run against the portal, in browser or http mode.

    The run owns its browser (or HTTP session) exclusively and releases it on
    every exit path before reporting the terminal status.
    """

    def __init__(self, config: Config, sink: ArtifactSink, solver_factory=None):
        """
        Args:
            config: Application configuration
            sink: Artifact and record storage for this run
            solver_factory: Builds the CAPTCHA solver from an API key
        """
        self.config = config
        self.sink = sink
        self.mode = config.automation.mode
        self.status = WorkerStatus.IDLE
        self.error: Optional[str] = None
        self.artifacts: List[DownloadArtifact] = []
        self._solver_factory = solver_factory or self._default_solver

        self._browser: Optional[BrowserAutomation] = None
        self._page: Optional[BrowserPage] = None
        self._session: Optional[HttpSession] = None
        self._http_login: Optional[HttpLoginSurface] = None
        self._http_portal: Optional[HttpBillingPortal] = None

    def _set_status(self, status: WorkerStatus):
        self.status = status
        logger.debug(f"Worker status: {status.value}")

    def _default_solver(self, api_key: str) -> AntiCaptchaClient:
        captcha = self.config.captcha
        return AntiCaptchaClient(
            api_key,
            api_url=captcha.api_url,
            task_type=captcha.task_type,
            poll_interval=captcha.poll_interval,
            max_polls=captcha.max_polls,
            timeout=captcha.request_timeout,
        )

    @property
    def downloads_dir(self) -> Path:
        return Path(self.config.storage.downloads or self.config.storage.directory)

    async def run(self, raw_input: Optional[Dict[str, Any]] = None) -> int:
        """
        Execute the run.

        Args:
            raw_input: Input record; read from INPUT.json when None

        Returns:
            Process exit code (0 success, 1 failure)
        """
        self._set_status(WorkerStatus.STARTING)
        exit_code = 1

        try:
            data = raw_input if raw_input is not None else self.sink.read_input()
            run_input = RunInput.parse(data)
            credentials = Credentials.from_input(run_input)

            api_key = run_input.captcha_api_key or self.config.captcha.api_key
            if not api_key:
                raise InputInvalid("Anti-Captcha key not provided.")
            solver = self._solver_factory(api_key)

            logger.info(f"Starting Light RJ Worker ({self.mode} mode) for user: {credentials.username}")
            if run_input.wants_invoice:
                logger.info(f"Installation: {run_input.installation_code}, Month: {run_input.reference_month}")

            if self.mode == "http":
                await self._run_http(run_input, credentials, solver)
            else:
                await self._run_browser(run_input, credentials, solver)

            exit_code = 0
            self._set_status(WorkerStatus.SUCCEEDED)

        except WorkerError as e:
            self.error = str(e)
            logger.error(f"❌ Error: {e}")
        except Exception as e:
            self.error = str(e) or e.__class__.__name__
            logger.exception(f"❌ Unexpected error: {e}")

        finally:
            try:
                if exit_code != 0:
                    self._set_status(WorkerStatus.FAILED)
                    self.sink.push_data({"status": "failed", "error": self.error})
                    await self._capture_failure()
            finally:
                try:
                    await self._release()
                finally:
                    self.sink.write_status(exit_code, self.status.value.upper(), self.error)

        return exit_code

    # ==================== Modes ====================

    async def _run_browser(self, run_input: RunInput, credentials: Credentials, solver):
        self._browser = BrowserAutomation(self.config)
        self._page = BrowserPage(await self._browser.initialize())

        self._set_status(WorkerStatus.LOGGING_IN)
        surface = PlaywrightLoginSurface(self._page, self.config, self.sink)
        outcome = await LoginWorkflow(
            surface, solver, self.config.login, retry_on=(PlaywrightError,)
        ).run(credentials)

        if not run_input.wants_invoice:
            self.sink.push_data({"status": "success", "url": outcome.url})
            return

        self._set_status(WorkerStatus.CAPTURING)
        portal = PlaywrightBillingPortal(self._page, self.config, self.sink)
        self.artifacts = await InvoiceWorkflow(portal, self.sink, self.downloads_dir).run(
            run_input.installation_code, run_input.reference_month
        )

    async def _run_http(self, run_input: RunInput, credentials: Credentials, solver):
        self._session = HttpSession(
            user_agent=self.config.automation.user_agent,
            timeout=self.config.timeouts.http_request / 1000,
            proxy=self.config.proxy.as_httpx_url(),
        )
        await self._session.open()

        self._set_status(WorkerStatus.LOGGING_IN)
        self._http_login = HttpLoginSurface(self._session, self.config, self.sink)
        await LoginWorkflow(
            self._http_login, solver, self.config.login, retry_on=(httpx.HTTPError,)
        ).run(credentials)

        if not run_input.wants_invoice:
            logger.info("No installationCode/referenceMonth provided. Login-only test complete.")
            self.sink.push_data({"status": "login_success", "cookies": list(self._session.cookies)})
            return

        self._set_status(WorkerStatus.CAPTURING)
        self._http_portal = HttpBillingPortal(self._session, self.config)
        self.artifacts = await InvoiceWorkflow(self._http_portal, self.sink, self.downloads_dir).run(
            run_input.installation_code, run_input.reference_month
        )

    # ==================== Finalization ====================

    async def _capture_failure(self):
        """Screenshot and HTML dump of wherever the run stopped. Best effort."""
        try:
            if self._page is not None:
                self.sink.set_value(ERROR_SCREENSHOT, await self._page.screenshot())
                self.sink.set_value(PAGE_DUMP, await self._page.content())
            elif self._http_portal is not None and self._http_portal.page is not None:
                self.sink.set_value(PAGE_DUMP, await self._http_portal.html())
            elif self._http_login is not None:
                page = self._http_login.response_page or self._http_login.login_page
                if page is not None:
                    self.sink.set_value(PAGE_DUMP, page.html)
        except Exception as e:
            logger.warning(f"Could not capture failure diagnostics: {e}")

    async def _release(self):
        try:
            if self._browser is not None:
                await self._browser.close()
        finally:
            if self._session is not None:
                await self._session.close()
