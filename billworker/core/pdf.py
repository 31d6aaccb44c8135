"""
Turn downloaded bytes into a PDF, following intermediate HTML pages.
"""

from typing import Awaitable, Callable

from loguru import logger

from billworker.httpflow.markup import MarkupPage

from .errors import InvalidDownloadFormat
from .models import PDF_SIGNATURE, is_pdf


Fetch = Callable[[str], Awaitable[bytes]]


async def resolve_pdf(data: bytes, source_url: str, fetch: Fetch, max_hops: int = 2) -> bytes:
    """
    Return PDF bytes for a download.

    Some downloads land on an HTML page that links to the actual document;
    its PDF link is followed, at most ``max_hops`` times.

    Args:
        data: Downloaded bytes
        source_url: URL the bytes came from (base for relative links)
        fetch: Coroutine returning the body of a URL within the run's session
        max_hops: Intermediate pages to follow

    Raises:
        InvalidDownloadFormat: no PDF reachable
    """
    hops = 0
    while not is_pdf(data):
        header = data[:len(PDF_SIGNATURE)]
        logger.warning(f"⚠️ Response is not a direct PDF (header: {header!r}). Might be an intermediate page.")

        if hops >= max_hops:
            break

        link = MarkupPage(data.decode("utf-8", errors="replace"), source_url).pdf_link()
        if not link:
            break

        hops += 1
        logger.info(f"Found PDF link in intermediate page: {link}")
        data = await fetch(link)
        source_url = link

    if not is_pdf(data):
        raise InvalidDownloadFormat(f"Downloaded content is not a PDF (from {source_url})")
    return data
