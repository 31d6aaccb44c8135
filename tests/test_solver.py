"""
Tests for the Anti-Captcha client, using httpx.MockTransport.
"""

import json

import httpx
import pytest

from billworker.captcha import AntiCaptchaClient, solve_recaptcha
from billworker.core.errors import SolverError, SolverTimeout


class FakeAntiCaptcha:
    """Scripted Anti-Captcha API."""

    def __init__(self, create=None, results=None, status_code=200):
        self.create = create or {"errorId": 0, "taskId": 42}
        self.results = list(results or [])
        self.status_code = status_code
        self.calls = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        method = request.url.path.strip("/")
        self.calls.append((method, body))
        if method == "createTask":
            return httpx.Response(self.status_code, json=self.create)
        if self.results:
            return httpx.Response(self.status_code, json=self.results.pop(0))
        return httpx.Response(self.status_code, json={"errorId": 0, "status": "processing"})

    @property
    def polls(self):
        return [c for c in self.calls if c[0] == "getTaskResult"]


def make_client(api, **options) -> AntiCaptchaClient:
    options.setdefault("poll_interval", 0)
    return AntiCaptchaClient("client-key", transport=httpx.MockTransport(api), **options)


@pytest.mark.asyncio
async def test_returns_token_when_ready():
    api = FakeAntiCaptcha(results=[
        {"errorId": 0, "status": "processing"},
        {"errorId": 0, "status": "ready", "solution": {"gRecaptchaResponse": "TOKEN"}},
    ])
    token = await make_client(api).solve("https://portal/", "site-key")

    assert token == "TOKEN"
    assert len(api.polls) == 2
    method, body = api.calls[0]
    assert method == "createTask"
    assert body == {
        "clientKey": "client-key",
        "task": {
            "type": "RecaptchaV2TaskProxyless",
            "websiteURL": "https://portal/",
            "websiteKey": "site-key",
        },
    }
    assert api.polls[0][1] == {"clientKey": "client-key", "taskId": 42}


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [200, 500])
async def test_create_task_error_raises(status_code):
    api = FakeAntiCaptcha(
        create={"errorId": 1, "errorCode": "ERROR_KEY_DOES_NOT_EXIST", "errorDescription": "bad key"},
        status_code=status_code,
    )
    with pytest.raises(SolverError) as exc_info:
        await make_client(api).solve("https://portal/", "site-key")

    assert exc_info.value.error_code == "ERROR_KEY_DOES_NOT_EXIST"
    assert not api.polls


@pytest.mark.asyncio
async def test_poll_error_raises_without_token():
    api = FakeAntiCaptcha(results=[
        {"errorId": 0, "status": "processing"},
        {"errorId": 12, "errorCode": "ERROR_CAPTCHA_UNSOLVABLE", "errorDescription": "unsolvable",
         "status": "ready", "solution": {"gRecaptchaResponse": "SHOULD-NOT-BE-USED"}},
    ])
    with pytest.raises(SolverError, match="unsolvable"):
        await make_client(api).solve("https://portal/", "site-key")
    assert len(api.polls) == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("max_polls", [1, 5, 7])
async def test_times_out_after_exactly_max_polls(max_polls):
    api = FakeAntiCaptcha()
    with pytest.raises(SolverTimeout, match=f"after {max_polls} polls"):
        await make_client(api, max_polls=max_polls).solve("https://portal/", "site-key")
    assert len(api.polls) == max_polls


@pytest.mark.asyncio
async def test_ready_on_last_allowed_poll():
    api = FakeAntiCaptcha(results=[{"errorId": 0, "status": "processing"}] * 2 + [
        {"errorId": 0, "status": "ready", "solution": {"gRecaptchaResponse": "LATE"}},
    ])
    assert await make_client(api, max_polls=3).solve("u", "k") == "LATE"
    assert len(api.polls) == 3


@pytest.mark.asyncio
async def test_ready_without_token_is_an_error():
    api = FakeAntiCaptcha(results=[{"errorId": 0, "status": "ready", "solution": {}}])
    with pytest.raises(SolverError):
        await make_client(api).solve("u", "k")


@pytest.mark.asyncio
async def test_non_json_body_is_an_error():
    def handler(request):
        return httpx.Response(502, text="<html>Bad gateway</html>")

    client = AntiCaptchaClient("key", poll_interval=0, transport=httpx.MockTransport(handler))
    with pytest.raises(SolverError, match="non-JSON"):
        await client.solve("u", "k")


@pytest.mark.asyncio
async def test_solve_recaptcha_wrapper():
    api = FakeAntiCaptcha(results=[
        {"errorId": 0, "status": "ready", "solution": {"gRecaptchaResponse": "T"}},
    ])
    token = await solve_recaptcha(
        "client-key", "https://portal/", "k", poll_interval=0, transport=httpx.MockTransport(api)
    )
    assert token == "T"


def test_api_key_required():
    with pytest.raises(ValueError):
        AntiCaptchaClient("")
