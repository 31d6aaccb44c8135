"""
Page interaction layer over a Playwright page.

Every wait here is bounded and local: a timeout is reported as ``False``
(or ``None``) instead of an exception, leaving the decision to the workflow.
"""

import asyncio
from typing import Dict, Optional, Sequence

from loguru import logger
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Locator, Page
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from billworker.utils.resilience import first_success


SET_VALUE_SCRIPT = """
(el, value) => {
    el.value = value;
    el.dispatchEvent(new Event('input', { bubbles: true }));
    el.dispatchEvent(new Event('change', { bubbles: true }));
    el.dispatchEvent(new Event('blur', { bubbles: true }));
}
"""

JS_CLICK_SCRIPT = "(el) => el.click()"


class BrowserPage:
    """
    Thin, forgiving wrapper around a Playwright ``Page``.

    The portal is a client-rendered OutSystems application whose state is
    rarely observable through one signal, so most helpers answer questions
    ("did this appear?") rather than assert.
    """

    def __init__(self, page: Page, typing_delay: int = 10):
        """
        Args:
            page: Playwright page
            typing_delay: Delay between keystrokes in milliseconds
        """
        self.page = page
        self.typing_delay = typing_delay

    @property
    def url(self) -> str:
        return self.page.url

    async def goto(self, url: str, wait_until: str = "domcontentloaded", timeout: int = 30000):
        logger.info(f"Navigating to: {url}")
        await self.page.goto(url, wait_until=wait_until, timeout=timeout)

    async def wait_for(self, selector: str, state: str = "visible", timeout: int = 10000) -> bool:
        """Wait for the first match of ``selector`` to reach ``state``."""
        try:
            await self.page.locator(selector).first.wait_for(state=state, timeout=timeout)
            return True
        except PlaywrightTimeoutError:
            return False

    async def wait_locator(self, locator: Locator, state: str = "visible", timeout: int = 10000) -> bool:
        try:
            await locator.wait_for(state=state, timeout=timeout)
            return True
        except PlaywrightTimeoutError:
            return False

    async def is_visible(self, selector: str) -> bool:
        return await self.page.locator(selector).first.is_visible()

    async def visible_within(self, locator: Locator, timeout: int) -> bool:
        """Like ``is_visible`` but gives the element ``timeout`` ms to show up."""
        return await self.wait_locator(locator.first, "visible", timeout)

    async def fill_verified(self, selector: str, value: str) -> bool:
        """
        Type a value like a user would, then read it back.

        Framework-managed inputs sometimes drop synthetic keystrokes. On a
        mismatch the value is assigned directly and input/change/blur are
        dispatched.

        Returns:
            True when the direct-assignment fallback was needed
        """
        field = self.page.locator(selector).first
        await field.click()
        await field.focus()
        await field.fill("")
        await self.page.keyboard.type(value, delay=self.typing_delay)
        await self.page.keyboard.press("Tab")

        current = await field.input_value()
        if current == value:
            return False

        logger.warning(f"⚠️ Value mismatch after typing into {selector}. Retrying with JS...")
        await field.evaluate(SET_VALUE_SCRIPT, value)
        return True

    async def input_value(self, selector: str) -> str:
        return await self.page.locator(selector).first.input_value()

    async def click_first(self, strategies: Sequence[str], use_js: bool = True) -> Optional[str]:
        """
        Click the first selector in ``strategies`` that matches something.

        Returns:
            The selector that was clicked, or None
        """
        for selector in strategies:
            target = self.page.locator(selector).first
            if await target.count() == 0:
                continue
            try:
                if use_js:
                    await target.evaluate(JS_CLICK_SCRIPT)
                else:
                    await target.click(force=True)
            except PlaywrightError as e:
                logger.debug(f"Click on {selector} failed: {e}")
                continue
            logger.debug(f"Clicked {selector}")
            return selector
        return None

    async def wait_load(self, state: str = "load", timeout: int = 30000) -> bool:
        try:
            await self.page.wait_for_load_state(state, timeout=timeout)
            return True
        except PlaywrightTimeoutError:
            logger.debug(f"Load state '{state}' not reached within {timeout}ms")
            return False

    async def wait_attach_detach(self, selector: str, attach_timeout: int, detach_timeout: int) -> bool:
        """
        Two-stage wait for a transient indicator.

        The indicator may never appear; if it does, it has to go away.

        Returns:
            False only when the indicator appeared and stayed
        """
        if not await self.wait_for(selector, state="attached", timeout=attach_timeout):
            return True
        logger.debug(f"{selector} attached, waiting for it to detach...")
        return await self.wait_for(selector, state="detached", timeout=detach_timeout)

    async def race(self, candidates: Dict[str, Locator], timeout: int) -> Optional[str]:
        """Return the name of the first locator to become visible within ``timeout``."""
        return await first_success({
            name: locator.first.wait_for(state="visible", timeout=timeout)
            for name, locator in candidates.items()
        })

    async def pause(self, seconds: float):
        await asyncio.sleep(seconds)

    async def screenshot(self, full_page: bool = False) -> bytes:
        return await self.page.screenshot(full_page=full_page)

    async def content(self) -> str:
        return await self.page.content()
