"""
Tests for invoice discovery and download against a scripted portal.
"""

from typing import Dict, List, Optional

import pytest

from billworker.automation.invoices import (
    BillingPortal,
    BillSurface,
    InvoiceWorkflow,
    RawDownload,
    SurfaceSignal,
)
from billworker.core.errors import (
    BillNotFound,
    DownloadButtonNotFound,
    InstallationNotFound,
    InvalidDownloadFormat,
)
from billworker.core.pdf import resolve_pdf

from .conftest import PDF_BYTES


class FakePortal(BillingPortal):
    """
    In-memory portal.

    ``listings`` maps a surface to {installation code: number of month matches}.
    ``downloads`` maps a 0-based index to the RawDownload it yields (None = no control).
    """

    def __init__(
        self,
        signal: SurfaceSignal = SurfaceSignal.BILLS,
        listings: Optional[Dict[BillSurface, Dict[str, int]]] = None,
        downloads: Optional[Dict[int, Optional[RawDownload]]] = None,
        pages: Optional[Dict[str, bytes]] = None,
        start: Optional[BillSurface] = None,
    ):
        self.signal = signal
        self.listings = listings or {}
        self.downloads = downloads
        self.pages = pages or {}
        self.surface = start
        self.installation: Optional[str] = None
        self.visited: List[BillSurface] = []
        self.lookups: List[BillSurface] = []
        self.expansions: List[bool] = []
        self.fetched: List[str] = []

    def current_surface(self):
        return self.surface

    async def open_surface(self, surface):
        self.surface = surface
        self.installation = None
        self.visited.append(surface)

    async def check_open_bills(self):
        return self.signal

    async def find_installation(self, code):
        self.lookups.append(self.surface)
        if code in self.listings.get(self.surface, {}):
            self.installation = code
            return True
        return False

    async def expand(self, wait_transient=False):
        self.expansions.append(wait_transient)
        return True

    async def settle(self):
        pass

    async def find_month(self, month):
        return self.listings.get(self.surface, {}).get(self.installation, 0)

    async def download(self, index):
        if self.downloads is None:
            return RawDownload(PDF_BYTES, f"https://portal/bill/{index}")
        return self.downloads.get(index)

    async def fetch(self, url):
        self.fetched.append(url)
        return self.pages[url]

    async def screenshot(self, full_page=True):
        return b"\x89PNG"

    async def html(self):
        return "<html><body>dump</body></html>"


def stored(sink, key):
    return sink.path_for(key).exists()


class TestSurfaceSelection:

    @pytest.mark.asyncio
    async def test_account_current_goes_straight_to_paid_bills(self, sink, tmp_path):
        portal = FakePortal(
            signal=SurfaceSignal.ACCOUNT_CURRENT,
            listings={BillSurface.PAID: {"9988": 1}},
        )
        workflow = InvoiceWorkflow(portal, sink, tmp_path / "downloads")
        artifacts = await workflow.run("9988", "03/2025")

        assert workflow.account_current
        assert portal.visited == [BillSurface.OPEN, BillSurface.PAID]
        assert portal.lookups == [BillSurface.PAID]
        assert [a.key for a in artifacts] == ["invoice_9988_03-2025_1.pdf"]
        assert sink.records() == [artifacts[0].to_record()]
        assert (tmp_path / "downloads" / "invoice_9988_03-2025_1.pdf").read_bytes() == PDF_BYTES
        assert stored(sink, "invoice_9988_03-2025_1.pdf")

    @pytest.mark.asyncio
    async def test_already_on_open_bills_is_not_reloaded(self, sink):
        portal = FakePortal(listings={BillSurface.OPEN: {"1": 1}}, start=BillSurface.OPEN)
        await InvoiceWorkflow(portal, sink).run("1", "01/2024")
        assert portal.visited == []

    @pytest.mark.asyncio
    async def test_no_signal_still_searches_open_bills(self, sink):
        portal = FakePortal(signal=SurfaceSignal.NONE, listings={BillSurface.OPEN: {"1": 1}})
        artifacts = await InvoiceWorkflow(portal, sink).run("1", "01/2024")
        assert len(artifacts) == 1
        assert portal.visited == [BillSurface.OPEN]


class TestInstallation:

    @pytest.mark.asyncio
    async def test_falls_back_to_paid_bills(self, sink):
        portal = FakePortal(listings={BillSurface.OPEN: {"other": 1}, BillSurface.PAID: {"9988": 1}})
        artifacts = await InvoiceWorkflow(portal, sink).run("9988", "03/2025")

        assert portal.lookups == [BillSurface.OPEN, BillSurface.PAID]
        assert len(artifacts) == 1

    @pytest.mark.asyncio
    async def test_not_found_anywhere(self, sink):
        portal = FakePortal(listings={BillSurface.OPEN: {"1": 1}, BillSurface.PAID: {"2": 1}})
        with pytest.raises(InstallationNotFound):
            await InvoiceWorkflow(portal, sink).run("9988", "03/2025")

        assert stored(sink, "DEBUG_PAID_BILLS_PAGE.png")
        assert stored(sink, "PAGE_DUMP.html")
        assert sink.records() == []

    @pytest.mark.asyncio
    async def test_account_current_does_not_retry_paid_bills(self, sink):
        portal = FakePortal(signal=SurfaceSignal.ACCOUNT_CURRENT, listings={BillSurface.PAID: {}})
        with pytest.raises(InstallationNotFound):
            await InvoiceWorkflow(portal, sink).run("9988", "03/2025")
        assert portal.lookups == [BillSurface.PAID]


class TestMonthSearch:

    @pytest.mark.asyncio
    async def test_two_matches_download_two_files(self, sink, tmp_path):
        portal = FakePortal(listings={BillSurface.OPEN: {"9988": 2}})
        artifacts = await InvoiceWorkflow(portal, sink, tmp_path).run("9988", "03/2025")

        keys = ["invoice_9988_03-2025_1.pdf", "invoice_9988_03-2025_2.pdf"]
        assert [a.key for a in artifacts] == keys
        assert [r["file"] for r in sink.records()] == keys
        assert [r["sequence"] for r in sink.records()] == [1, 2]
        for key in keys:
            assert (tmp_path / key).exists()

    @pytest.mark.asyncio
    async def test_month_missing_on_open_bills_searches_paid(self, sink):
        portal = FakePortal(listings={BillSurface.OPEN: {"9988": 0}, BillSurface.PAID: {"9988": 1}})
        artifacts = await InvoiceWorkflow(portal, sink).run("9988", "03/2025")

        assert len(artifacts) == 1
        assert portal.visited == [BillSurface.OPEN, BillSurface.PAID]
        assert portal.expansions == [False, True]

    @pytest.mark.asyncio
    async def test_bill_not_found(self, sink):
        portal = FakePortal(listings={BillSurface.OPEN: {"9988": 0}, BillSurface.PAID: {"9988": 0}})
        with pytest.raises(BillNotFound):
            await InvoiceWorkflow(portal, sink).run("9988", "03/2025")

        assert stored(sink, "BILL_NOT_FOUND.png")
        assert stored(sink, "BILL_NOT_FOUND_DUMP.html")

    @pytest.mark.asyncio
    async def test_installation_missing_on_paid_during_month_fallback(self, sink):
        portal = FakePortal(listings={BillSurface.OPEN: {"9988": 0}, BillSurface.PAID: {}})
        with pytest.raises(BillNotFound):
            await InvoiceWorkflow(portal, sink).run("9988", "03/2025")
        assert stored(sink, "DEBUG_PAID_BILLS_PAGE.png")

    @pytest.mark.asyncio
    async def test_no_paid_fallback_when_already_on_paid(self, sink):
        portal = FakePortal(
            signal=SurfaceSignal.ACCOUNT_CURRENT, listings={BillSurface.PAID: {"9988": 0}}
        )
        with pytest.raises(BillNotFound):
            await InvoiceWorkflow(portal, sink).run("9988", "03/2025")
        assert portal.visited == [BillSurface.OPEN, BillSurface.PAID]


class TestDownloads:

    @pytest.mark.asyncio
    async def test_missing_control_is_reported_after_the_loop(self, sink):
        portal = FakePortal(
            listings={BillSurface.OPEN: {"9988": 2}},
            downloads={0: RawDownload(PDF_BYTES, "https://portal/b0"), 1: None},
        )
        with pytest.raises(DownloadButtonNotFound) as exc_info:
            await InvoiceWorkflow(portal, sink).run("9988", "03/2025")

        assert exc_info.value.missing == [2]
        assert stored(sink, "DEBUG_NO_DL_BTN_2.png")
        assert stored(sink, "invoice_9988_03-2025_1.pdf")
        assert [r["file"] for r in sink.records()] == ["invoice_9988_03-2025_1.pdf"]

    @pytest.mark.asyncio
    async def test_intermediate_page_is_followed(self, sink):
        page = b'<html><body><a href="/files/bill.pdf">Baixar</a></body></html>'
        portal = FakePortal(
            listings={BillSurface.OPEN: {"9988": 1}},
            downloads={0: RawDownload(page, "https://portal/view/1")},
            pages={"https://portal/files/bill.pdf": PDF_BYTES},
        )
        artifacts = await InvoiceWorkflow(portal, sink).run("9988", "03/2025")

        assert portal.fetched == ["https://portal/files/bill.pdf"]
        assert artifacts[0].data == PDF_BYTES

    @pytest.mark.asyncio
    async def test_non_pdf_without_link_is_rejected(self, sink):
        portal = FakePortal(
            listings={BillSurface.OPEN: {"9988": 1}},
            downloads={0: RawDownload(b"<html>Sessao expirada</html>", "https://portal/view/1")},
        )
        with pytest.raises(InvalidDownloadFormat):
            await InvoiceWorkflow(portal, sink).run("9988", "03/2025")

        assert not stored(sink, "invoice_9988_03-2025_1.pdf")
        assert sink.records() == []


class TestResolvePdf:

    @pytest.mark.asyncio
    async def test_pdf_passes_through(self):
        async def fetch(url):
            raise AssertionError("should not fetch")

        assert await resolve_pdf(PDF_BYTES, "https://portal/", fetch) == PDF_BYTES

    @pytest.mark.asyncio
    async def test_iframe_source_is_followed(self):
        fetched = []

        async def fetch(url):
            fetched.append(url)
            return PDF_BYTES

        page = b'<html><iframe src="doc/bill.pdf"></iframe></html>'
        assert await resolve_pdf(page, "https://portal/view/", fetch) == PDF_BYTES
        assert fetched == ["https://portal/view/doc/bill.pdf"]

    @pytest.mark.asyncio
    async def test_hop_limit(self):
        fetched = []

        async def fetch(url):
            fetched.append(url)
            return b'<html><a href="next.pdf">next</a></html>'

        page = b'<html><a href="first.pdf">first</a></html>'
        with pytest.raises(InvalidDownloadFormat):
            await resolve_pdf(page, "https://portal/", fetch, max_hops=2)
        assert len(fetched) == 2
