"""
reCAPTCHA v2 handling on a live page: site key discovery, token injection
and firing the page's own completion callback.
"""

from abc import ABC, abstractmethod
from typing import Iterable, List, Optional, Sequence
from urllib.parse import parse_qs, urlparse

from loguru import logger
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page

from billworker.automation import selectors
from billworker.core.errors import ChallengeKeyNotFound


INJECT_TOKEN_SCRIPT = """
([token, selectors]) => {
    let filled = 0;
    for (const selector of selectors) {
        document.querySelectorAll(selector).forEach((el) => {
            if (el.id === 'g-recaptcha-response') {
                el.style.display = 'block';
            }
            el.value = token;
            filled += 1;
        });
    }
    return filled;
}
"""

NAMED_CALLBACK_SCRIPT = """
(token) => {
    const holder = document.querySelector('[data-sitekey][data-callback]');
    if (!holder) return false;
    const fn = window[holder.getAttribute('data-callback')];
    if (typeof fn !== 'function') return false;
    fn(token);
    return true;
}
"""

# Two levels below each client, where grecaptcha keeps the render parameters
CLIENT_CONFIG_CALLBACK_SCRIPT = """
(token) => {
    const cfg = window.___grecaptcha_cfg;
    if (!cfg || !cfg.clients) return false;
    for (const client of Object.values(cfg.clients)) {
        for (const value of Object.values(client || {})) {
            if (!value || typeof value !== 'object') continue;
            for (const inner of Object.values(value)) {
                if (inner && typeof inner === 'object' && typeof inner.callback === 'function') {
                    inner.callback(token);
                    return true;
                }
            }
        }
    }
    return false;
}
"""


def site_key_from_frames(frame_urls: Iterable[str]) -> Optional[str]:
    """Read the ``k`` parameter of the reCAPTCHA anchor frame, if any."""
    for url in frame_urls:
        if selectors.CHALLENGE_FRAME_MARKER not in url:
            continue
        keys = parse_qs(urlparse(url).query).get("k")
        if keys and keys[0]:
            return keys[0]
    return None


async def find_site_key(page: Page) -> str:
    """
    Locate the reCAPTCHA site key: anchor frame URL first, DOM attribute second.

    Raises:
        ChallengeKeyNotFound: neither source yields a key
    """
    site_key = site_key_from_frames(frame.url for frame in page.frames)
    if site_key:
        logger.debug("Captcha frame found. Site key taken from frame URL.")
        return site_key

    holder = page.locator(selectors.SITE_KEY_HOLDER).first
    if await holder.count() > 0:
        site_key = await holder.get_attribute(selectors.SITE_KEY_ATTRIBUTE)
        if site_key:
            return site_key

    raise ChallengeKeyNotFound("Could not find reCAPTCHA sitekey")


class ChallengeCompletionSink(ABC):
    """A way the page may want to be told that the challenge was solved."""

    name = "abstract"

    @abstractmethod
    async def fire(self, page: Page, token: str) -> bool:
        """Deliver the token. Returns False when this sink is not present."""


class NamedCallback(ChallengeCompletionSink):
    """Global function named by the widget's ``data-callback`` attribute."""

    name = "named_callback"

    async def fire(self, page: Page, token: str) -> bool:
        return bool(await page.evaluate(NAMED_CALLBACK_SCRIPT, token))


class StructuredClientConfig(ChallengeCompletionSink):
    """Callback registered in grecaptcha's internal client configuration."""

    name = "structured_client_config"

    async def fire(self, page: Page, token: str) -> bool:
        return bool(await page.evaluate(CLIENT_CONFIG_CALLBACK_SCRIPT, token))


class NoneFound(ChallengeCompletionSink):
    """Terminal variant: the filled response fields have to be enough."""

    name = "none_found"

    async def fire(self, page: Page, token: str) -> bool:
        return True


DEFAULT_SINKS: Sequence[ChallengeCompletionSink] = (
    NamedCallback(),
    StructuredClientConfig(),
    NoneFound(),
)


async def notify_completion(
    page: Page,
    token: str,
    sinks: Sequence[ChallengeCompletionSink] = DEFAULT_SINKS,
) -> ChallengeCompletionSink:
    """Try each sink in order and return the one that accepted the token."""
    for sink in sinks:
        try:
            if await sink.fire(page, token):
                logger.debug(f"Challenge completion delivered via {sink.name}")
                return sink
        except PlaywrightError as e:
            logger.debug(f"Completion sink {sink.name} raised: {e}")
    return sinks[-1]


async def inject_token(page: Page, token: str, fields: List[str] = None) -> ChallengeCompletionSink:
    """
    Write the token into every response field and fire the completion callback.

    Returns:
        The completion sink that accepted the token
    """
    fields = list(fields or selectors.TOKEN_FIELDS)
    filled = await page.evaluate(INJECT_TOKEN_SCRIPT, [token, fields])
    logger.debug(f"Token written into {filled} response field(s)")
    sink = await notify_completion(page, token)
    logger.success("✅ Captcha token injected.")
    return sink
