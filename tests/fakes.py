"""
Stand-ins for the Playwright objects the browser layer touches.

A FakeLocator is either a single element (``items`` is None) or a group
of elements. Child lookups are keyed by the exact selector string.
"""

from playwright.async_api import TimeoutError as PlaywrightTimeoutError


class FakeLocator:

    def __init__(self, name="", log=None, visible=True, text="content", children=None, items=None, on_click=None):
        self.name = name
        self.log = log if log is not None else []
        self.visible = visible
        self.text = text
        self.children = children or {}
        self.items = items
        self.on_click = on_click

    @property
    def first(self):
        return self.items[0] if self.items else self

    @property
    def last(self):
        return self.items[-1] if self.items else self

    def nth(self, index):
        return self.items[index] if self.items else self

    def locator(self, selector):
        return self.children.get(selector, MISSING)

    def filter(self, has=None):
        return self

    async def count(self):
        return 1 if self.items is None else len(self.items)

    async def is_visible(self):
        return await self.count() > 0 and self.visible

    async def inner_text(self):
        return self.text

    async def click(self, force=False, timeout=None):
        self.log.append(f"click:{self.name}")
        if self.on_click:
            self.on_click()

    async def select_option(self, label=None):
        self.log.append(f"select:{label}")

    async def wait_for(self, state="visible", timeout=None):
        present = await self.count() > 0
        reached = {
            "attached": present,
            "visible": present and self.visible,
            "detached": not present,
            "hidden": not present or not self.visible,
        }[state]
        if not reached:
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded waiting for {self.name or 'locator'} ({state})")


MISSING = FakeLocator("missing", items=[])


class FakeDownload:

    def __init__(self, path, url):
        self._path = path
        self.url = url

    async def path(self):
        return self._path


class FakeDownloadExpectation:
    """Mimics ``page.expect_download()``: an async context manager with an awaitable ``value``."""

    def __init__(self, page, timeout):
        self.page = page
        self.timeout = timeout

    async def __aenter__(self):
        self.page.log.append("armed")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False

    @property
    def value(self):
        return self._resolve()

    async def _resolve(self):
        if self.page.download is None:
            raise PlaywrightTimeoutError(f'Timeout {self.timeout}ms exceeded while waiting for event "download"')
        return self.page.download


class FakeRawPage:

    def __init__(self, locators=None, download=None, log=None, url="https://portal/AGV_Comprovante_Conta_Paga_VW/"):
        self.locators = locators or {}
        self.download = download
        self.log = log if log is not None else []
        self.url = url

    def locator(self, selector):
        return self.locators.get(selector, MISSING)

    def expect_download(self, timeout=None):
        return FakeDownloadExpectation(self, timeout)

    async def wait_for_load_state(self, state, timeout=None):
        pass

    async def screenshot(self, full_page=False):
        return b"\x89PNG"

    async def content(self):
        return "<html></html>"
