"""
Invoice discovery and download workflow.

Surface selection, installation lookup, expansion, month search and the
per-match download loop. Portal specifics live behind ``BillingPortal``.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional, Union

from loguru import logger

from billworker.core.errors import (
    BillNotFound,
    DownloadButtonNotFound,
    InstallationNotFound,
)
from billworker.core.models import BillMatch, DownloadArtifact
from billworker.core.pdf import resolve_pdf
from billworker.storage import ArtifactSink
from billworker.storage.artifacts import (
    BILL_NOT_FOUND,
    BILL_NOT_FOUND_DUMP,
    INSTALLATION_NOT_FOUND,
    PAGE_DUMP,
)


class BillSurface(str, Enum):
    OPEN = "open_bills"
    PAID = "paid_bills"


class SurfaceSignal(str, Enum):
    BILLS = "bills"
    ACCOUNT_CURRENT = "account_current"
    NONE = "none"


@dataclass
class RawDownload:
    """Bytes delivered by a download control, before PDF validation."""
    data: bytes
    url: str


class BillingPortal(ABC):
    """Operations the invoice workflow needs from a logged-in portal session."""

    @abstractmethod
    def current_surface(self) -> Optional[BillSurface]:
        """Bill surface currently displayed, if any."""

    @abstractmethod
    async def open_surface(self, surface: BillSurface) -> None:
        pass

    @abstractmethod
    async def check_open_bills(self) -> SurfaceSignal:
        """Race the bill listing against the "account is current" message."""

    @abstractmethod
    async def find_installation(self, code: str) -> bool:
        """Select the listing entry labeled exactly ``code``."""

    @abstractmethod
    async def expand(self, wait_transient: bool = False) -> bool:
        """Expand the selected entry. False when content never showed up."""

    @abstractmethod
    async def settle(self) -> None:
        """Wait for the expanded content to finish loading."""

    @abstractmethod
    async def find_month(self, month: str) -> int:
        """Count exact ``month`` labels inside the selected entry."""

    @abstractmethod
    async def download(self, index: int) -> Optional[RawDownload]:
        """
        Download the bill for the ``index``-th month label.

        Returns None when no download control could be located.
        Raises DownloadTimeout when the control never produced a file.
        """

    @abstractmethod
    async def fetch(self, url: str) -> bytes:
        """Fetch a URL within the portal session."""

    @abstractmethod
    async def screenshot(self, full_page: bool = True) -> Optional[bytes]:
        pass

    @abstractmethod
    async def html(self) -> str:
        pass


class InvoiceWorkflow:
    """
    Find and download every bill of one installation for one reference month.

    Both bill surfaces are tried before giving up; every hard failure leaves
    a screenshot and an HTML dump behind.
    """

    def __init__(
        self,
        portal: BillingPortal,
        sink: ArtifactSink,
        downloads_dir: Union[str, Path, None] = None,
        max_pdf_hops: int = 2,
    ):
        self.portal = portal
        self.sink = sink
        self.downloads_dir = Path(downloads_dir) if downloads_dir else sink.directory
        self.max_pdf_hops = max_pdf_hops
        self.account_current = False

    async def run(self, installation_code: str, reference_month: str) -> List[DownloadArtifact]:
        logger.info(
            f"Starting Invoice Capture for Installation: {installation_code}, Month: {reference_month}"
        )

        await self._select_surface()
        await self._locate_installation(installation_code)

        await self.portal.expand()
        await self.portal.settle()

        logger.info(f"Searching for bill: {reference_month}...")
        count = await self.portal.find_month(reference_month)

        if count == 0 and self.portal.current_surface() is not BillSurface.PAID:
            count = await self._search_paid_surface(installation_code, reference_month)

        if count == 0:
            logger.error(f"❌ Bill for {reference_month} not found on any page.")
            await self._capture(BILL_NOT_FOUND, BILL_NOT_FOUND_DUMP)
            raise BillNotFound(f"Bill for {reference_month} not found for installation {installation_code}")

        logger.info(f"Found {count} bill(s) for {reference_month}. Downloading...")
        matches = [BillMatch(index=i, label=reference_month) for i in range(count)]
        return await self._download_all(installation_code, reference_month, matches)

    async def _select_surface(self):
        if self.portal.current_surface() is not BillSurface.OPEN:
            await self.portal.open_surface(BillSurface.OPEN)
        else:
            logger.info("Already on Bills Page.")

        logger.info('Checking for Open Bills or "Up to Date" message...')
        signal = await self.portal.check_open_bills()

        if signal is SurfaceSignal.ACCOUNT_CURRENT:
            logger.info("ℹ️ Account is up to date. Switching to Paid Bills...")
            self.account_current = True
            await self.portal.open_surface(BillSurface.PAID)
        elif signal is SurfaceSignal.NONE:
            logger.warning(
                '⚠️ Neither bills list nor "Up to Date" message found. Will try to find installation anyway.'
            )
        else:
            logger.info("ℹ️ Open bills found. Proceeding with extraction...")

    async def _locate_installation(self, code: str):
        found = await self.portal.find_installation(code)

        if not found and self.portal.current_surface() is BillSurface.OPEN and not self.account_current:
            logger.info("Installation not found on Open Bills. Trying Paid Bills page...")
            await self.portal.open_surface(BillSurface.PAID)
            found = await self.portal.find_installation(code)

        if not found:
            await self._capture(INSTALLATION_NOT_FOUND, PAGE_DUMP)
            raise InstallationNotFound(f"Installation {code} not found on any checked page.")

        logger.info(f"Found installation {code}.")

    async def _search_paid_surface(self, code: str, month: str) -> int:
        logger.warning(f"⚠️ Bill for {month} not found on Open Bills. Trying Paid Bills page...")
        await self.portal.open_surface(BillSurface.PAID)

        if not await self.portal.find_installation(code):
            logger.error(f"❌ Installation {code} not found on Paid Bills page either.")
            await self._capture(INSTALLATION_NOT_FOUND)
            return 0

        logger.info(f"Found installation {code} on Paid Bills. Expanding...")
        await self.portal.expand(wait_transient=True)
        await self.portal.settle()
        count = await self.portal.find_month(month)
        logger.info(f"Paid Bills: Found {count} month match(es) for {month}")
        return count

    async def _download_all(self, code: str, month: str, matches: List[BillMatch]) -> List[DownloadArtifact]:
        artifacts: List[DownloadArtifact] = []
        missing: List[int] = []

        for match in matches:
            raw = await self.portal.download(match.index)
            if raw is None:
                logger.warning(
                    f"⚠️ Download button not found for match {match.sequence}. Taking diagnostic screenshot..."
                )
                missing.append(match.sequence)
                await self._capture(f"DEBUG_NO_DL_BTN_{match.sequence}.png", PAGE_DUMP)
                continue

            data = await resolve_pdf(raw.data, raw.url, self.portal.fetch, self.max_pdf_hops)
            artifact = DownloadArtifact(
                installation_code=code,
                reference_month=month,
                sequence=match.sequence,
                data=data,
            )
            self._persist(artifact)
            artifacts.append(artifact)

        if missing:
            raise DownloadButtonNotFound(month, missing)

        logger.success(f"✅ Invoice capture complete! {len(artifacts)} file(s)")
        return artifacts

    def _persist(self, artifact: DownloadArtifact):
        self.downloads_dir.mkdir(parents=True, exist_ok=True)
        path = self.downloads_dir / artifact.key
        path.write_bytes(artifact.data)
        self.sink.set_value(artifact.key, artifact.data)
        self.sink.push_data(artifact.to_record())
        logger.success(f"✅ Downloaded: {path} ({artifact.size} bytes)")

    async def _capture(self, screenshot_key: str, dump_key: Optional[str] = None):
        """Best-effort diagnostics; a failing capture never masks the real error."""
        try:
            image = await self.portal.screenshot(full_page=True)
            if image:
                self.sink.set_value(screenshot_key, image)
            if dump_key:
                self.sink.set_value(dump_key, await self.portal.html())
        except Exception as e:
            logger.warning(f"Could not capture diagnostics ({screenshot_key}): {e}")
