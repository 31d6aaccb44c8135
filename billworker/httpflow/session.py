"""
HTTP session for the browserless portal flow.
Owns its cookie mapping explicitly; every request reads and updates it.
"""

import re
from typing import Dict, Iterable, Mapping, Optional, Tuple

import httpx
from loguru import logger


SCRIPT_COOKIE_PATTERNS = (
    re.compile(r"""document\.cookie\s*=\s*['"]([^'"]+)['"]"""),
    re.compile(r"""setCookie\s*\(\s*['"]([^'"]+)['"]\s*,\s*['"]([^'"]+)['"]"""),
)


def parse_cookie_pair(text: str) -> Optional[Tuple[str, str]]:
    """Parse ``name=value; attr...`` into ``(name, value)``."""
    pair = text.split(";", 1)[0]
    name, sep, value = pair.partition("=")
    name = name.strip()
    if not sep or not name:
        return None
    return name, value.strip()


def parse_script_cookies(html: str) -> Dict[str, str]:
    """
    Cookies set from inline script rather than headers.

    OutSystems writes the session cookies with ``document.cookie = '...'`` or
    ``OsCookies.setCookie('name', 'value')`` in the login response.
    """
    found: Dict[str, str] = {}
    for match in SCRIPT_COOKIE_PATTERNS[0].finditer(html):
        parsed = parse_cookie_pair(match.group(1))
        if parsed:
            found[parsed[0]] = parsed[1]
    for match in SCRIPT_COOKIE_PATTERNS[1].finditer(html):
        found[match.group(1)] = match.group(2)
    return found


class HttpSession:
    """
    Cookie-carrying HTTP client that imitates a desktop Chrome.

    Used as an async context manager; the cookie mapping outlives the
    underlying ``httpx.AsyncClient`` so it can be reported after the run.
    """

    DEFAULT_HEADERS = {
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,image/apng,*/*;q=0.8",
        "Accept-Language": "pt-BR,pt;q=0.9,en-US;q=0.8,en;q=0.7",
        "sec-ch-ua": '"Not A;Brand";v="99", "Chromium";v="120", "Google Chrome";v="120"',
        "sec-ch-ua-mobile": "?0",
        "sec-ch-ua-platform": '"Windows"',
    }

    MAX_REDIRECTS = 10

    # Set by the portal's scripts in a real browser
    DEVICE_COOKIES = {
        "DEVICE_OS": "windows",
        "DEVICES_TYPE": "desktop",
        "DEVICE_BROWSER": "chrome",
        "DEVICE_ORIENTATION": "undefined",
        "pageLoadedFromBrowserCache": "false",
    }

    def __init__(
        self,
        user_agent: str,
        timeout: float = 30,
        proxy: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            user_agent: User-Agent header value
            timeout: Per-request timeout in seconds
            proxy: Optional proxy URL (credentials inline)
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.user_agent = user_agent
        self.timeout = timeout
        self.proxy = proxy
        self._transport = transport
        self.cookies: Dict[str, str] = {}
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def open(self):
        if self._client is not None:
            return
        headers = dict(self.DEFAULT_HEADERS)
        headers["User-Agent"] = self.user_agent
        self._client = httpx.AsyncClient(
            headers=headers,
            timeout=self.timeout,
            follow_redirects=False,
            proxy=self.proxy,
            transport=self._transport,
        )
        if self.proxy:
            logger.info(f"✅ Proxy configured: {re.sub(r':[^:@/]+@', ':***@', self.proxy)}")

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ==================== Cookies ====================

    def seed_device_cookies(self):
        self.cookies.update(self.DEVICE_COOKIES)

    def store_set_cookie(self, headers: Iterable[str]) -> int:
        stored = 0
        for header in headers:
            parsed = parse_cookie_pair(header)
            if parsed:
                self.cookies[parsed[0]] = parsed[1]
                stored += 1
        return stored

    def store_script_cookies(self, html: str) -> int:
        found = parse_script_cookies(html)
        for name, value in found.items():
            logger.debug(f"  → Extracted script cookie: {name}={value[:30]}...")
        self.cookies.update(found)
        return len(found)

    def cookie_header(self) -> str:
        return "; ".join(f"{name}={value}" for name, value in self.cookies.items())

    def has_cookies(self, *names: str) -> bool:
        return all(name in self.cookies for name in names)

    # ==================== Requests ====================

    def _headers(self, referer: Optional[str], extra: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        headers = {"Upgrade-Insecure-Requests": "1"}
        if self.cookies:
            headers["Cookie"] = self.cookie_header()
        if referer:
            headers["Referer"] = referer
        if extra:
            headers.update(extra)
        return headers

    async def _send(
        self,
        method: str,
        url: str,
        referer: Optional[str] = None,
        extra: Optional[Mapping[str, str]] = None,
        data: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> httpx.Response:
        """
        Send a request and follow redirects hop by hop.

        Every hop is sent with the cookie mapping as it stands after the
        previous one, so cookies set on a redirect reach its target.
        """
        if self._client is None:
            raise RuntimeError("HttpSession is not open")
        timeout = timeout if timeout is not None else self.timeout
        history = []
        self._client.cookies.clear()
        response = await self._client.request(
            method, url, data=data, headers=self._headers(referer, extra), timeout=timeout
        )
        while True:
            self.store_set_cookie(response.headers.get_list("set-cookie"))
            target = response.next_request
            if target is None:
                break
            if len(history) >= self.MAX_REDIRECTS:
                raise httpx.TooManyRedirects("Exceeded maximum allowed redirects.", request=response.request)
            history.append(response)
            # 307/308 repeat the request as sent; the others become a plain GET
            keep_body = response.status_code in (307, 308)
            self._client.cookies.clear()
            response = await self._client.request(
                target.method,
                target.url,
                data=data if keep_body else None,
                headers=self._headers(referer, extra if keep_body else None),
                timeout=timeout,
            )
        response.history = history
        return response

    async def get(self, url: str, referer: Optional[str] = None, timeout: Optional[float] = None) -> httpx.Response:
        response = await self._send("GET", url, referer=referer, timeout=timeout)
        logger.debug(f"GET {url} -> {response.status_code} ({len(response.content)} bytes)")
        return response

    async def post_form(
        self,
        url: str,
        data: Mapping[str, str],
        referer: Optional[str] = None,
        origin: Optional[str] = None,
        ajax: bool = False,
    ) -> httpx.Response:
        """POST an url-encoded form, optionally as an XMLHttpRequest."""
        extra = {}
        if origin:
            extra["Origin"] = origin
        if ajax:
            extra["X-Requested-With"] = "XMLHttpRequest"
            extra["Content-Type"] = "application/x-www-form-urlencoded; charset=UTF-8"
        response = await self._send("POST", url, referer=referer, extra=extra, data=dict(data))
        logger.debug(f"POST {url} -> {response.status_code} ({len(response.content)} bytes)")
        return response
