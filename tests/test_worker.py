"""
End-to-end runs of the worker in http mode against a mocked portal.
"""

import functools
import json
from urllib.parse import parse_qs

import httpx
import pytest

import billworker.core.worker as worker_module
from billworker.core.worker import InvoiceWorker, WorkerStatus
from billworker.httpflow.session import HttpSession
from billworker.storage import ArtifactSink

from .conftest import PDF_BYTES


LOGIN_PAGE = """
<html><head><title>Agência Virtual</title></head><body>
<form action="Login.aspx" method="post">
  <input type="hidden" name="__OSVSTATE" value="OSV">
  <input type="hidden" name="__VIEWSTATEGENERATOR" value="GEN">
  <input type="text" id="wt5_wtUserNameInput" name="wt5$wtUserNameInput">
  <input type="password" id="wt5_wtPasswordInput" name="wt5$wtPasswordInput">
  <input type="checkbox" id="wt5_wtLembraConta" name="wt5$wtLembraConta">
  <input type="submit" id="wt5_wtEntrar" name="wt5$wtEntrar" value="ENTRAR">
  <div class="g-recaptcha" data-sitekey="SITE"></div>
</form>
</body></html>
"""

LOGGED_IN_PAGE = """
<html><head><title>Início</title></head><body>
<script>
  document.cookie = 'AGV_UserProvider.sid=SESSION; path=/';
  OsCookies.setCookie('agv-username', '12345678900');
</script>
<p>Bem vindo</p>
</body></html>
"""

OPEN_BILLS_PAGE = """
<html><body><div class="Feedback">Você está em dia com suas contas!</div></body></html>
"""

PAID_BILLS_PAGE = """
<html><body>
<div class="accordion-group">
  <span class="verde-span">9988</span>
  <div class="row">
    <span>03/2025</span>
    <a href="ModalDownload_ComprovanteConta.aspx?inst=9988&amp;ref=032025">Baixar</a>
  </div>
</div>
</body></html>
"""


class FakePortalServer:

    def __init__(self, login_page=LOGIN_PAGE):
        self.login_page = login_page
        self.posted = []
        self.paths = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.paths.append((request.method, path))
        if request.method == "POST" and path == "/portal/Login.aspx":
            self.posted.append(parse_qs(request.content.decode()))
            return httpx.Response(200, text=LOGGED_IN_PAGE)
        if path == "/portal/":
            return httpx.Response(200, text=self.login_page, headers={"set-cookie": "osVisit=1; path=/"})
        if path == "/AGV_Segunda_Via_VW/":
            return httpx.Response(200, text=OPEN_BILLS_PAGE)
        if path.endswith("Comprovante_Conta_Paga.aspx"):
            return httpx.Response(200, text=PAID_BILLS_PAGE)
        if path.endswith("ModalDownload_ComprovanteConta.aspx"):
            assert request.url.params["inst"] == "9988"
            return httpx.Response(200, content=PDF_BYTES, headers={"content-type": "application/pdf"})
        return httpx.Response(404, text="not found")


class FakeSolver:

    def __init__(self):
        self.calls = []

    async def solve(self, challenge_url, site_key):
        self.calls.append((challenge_url, site_key))
        return "TOKEN"


@pytest.fixture
def http_config(config):
    config.automation.mode = "http"
    return config


@pytest.fixture
def server(monkeypatch):
    fake = FakePortalServer()
    monkeypatch.setattr(
        worker_module, "HttpSession", functools.partial(HttpSession, transport=httpx.MockTransport(fake))
    )
    return fake


def read_status(sink):
    return json.loads(sink.get_value("status.json"))


INPUT = {
    "username": "123.456.789-00",
    "password": "x",
    "captchaApiKey": "key",
    "installationCode": "9988",
    "referenceMonth": "03/2025",
}


@pytest.mark.asyncio
async def test_invoice_run_via_paid_bills(http_config, sink, server):
    solver = FakeSolver()
    worker = InvoiceWorker(http_config, sink, solver_factory=lambda key: solver)

    exit_code = await worker.run(dict(INPUT))

    assert exit_code == 0
    assert worker.status is WorkerStatus.SUCCEEDED
    assert solver.calls == [(http_config.portal.login_url, "SITE")]

    form = server.posted[0]
    assert form["wt5$wtUserNameInput"] == ["12345678900"]
    assert form["wt5$wtPasswordInput"] == ["x"]
    assert form["g-recaptcha-response"] == ["TOKEN"]
    assert form["__OSVSTATE"] == ["OSV"]
    assert form["wt5$wtEntrar"] == ["ENTRAR"]
    assert form["wt5$wtLembraConta"] == ["on"]

    records = sink.records()
    assert len(records) == 1
    assert records[0]["status"] == "downloaded"
    assert records[0]["file"] == "invoice_9988_03-2025_1.pdf"
    assert sink.get_value("invoice_9988_03-2025_1.pdf") == PDF_BYTES
    assert read_status(sink)["status"] == "SUCCEEDED"
    assert read_status(sink)["exitCode"] == 0


@pytest.mark.asyncio
async def test_login_only_run(http_config, sink, server):
    worker = InvoiceWorker(http_config, sink, solver_factory=lambda key: FakeSolver())
    payload = {"username": "user@example.com", "password": "x", "captchaApiKey": "key"}

    assert await worker.run(payload) == 0

    records = sink.records()
    assert len(records) == 1
    assert records[0]["status"] == "login_success"
    assert "AGV_UserProvider.sid" in records[0]["cookies"]
    assert server.posted[0]["wt5$wtUserNameInput"] == ["user@example.com"]
    assert all(path.startswith("/portal/") for _, path in server.paths)


@pytest.mark.asyncio
async def test_missing_login_form_fails_the_run(http_config, sink, server):
    server.login_page = "<html><body>Manutenção</body></html>"
    worker = InvoiceWorker(http_config, sink, solver_factory=lambda key: FakeSolver())

    assert await worker.run(dict(INPUT)) == 1

    assert worker.status is WorkerStatus.FAILED
    assert server.paths.count(("GET", "/portal/")) == http_config.login.max_attempts
    assert not server.posted
    records = sink.records()
    assert records[-1]["status"] == "failed"
    assert "Login failed after 3 attempt(s)" in records[-1]["error"]
    assert b"Manuten" in sink.get_value("PAGE_DUMP.html")
    assert read_status(sink)["status"] == "FAILED"


@pytest.mark.asyncio
async def test_missing_captcha_key(http_config, sink, server):
    worker = InvoiceWorker(http_config, sink)
    payload = {k: v for k, v in INPUT.items() if k != "captchaApiKey"}

    assert await worker.run(payload) == 1
    assert worker.error == "Anti-Captcha key not provided."
    assert server.paths == []


@pytest.mark.asyncio
async def test_missing_input(http_config, sink, monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    worker = InvoiceWorker(http_config, sink)

    assert await worker.run() == 1
    assert worker.error == "Input is null or missing."
    assert sink.records() == [{"status": "failed", "error": "Input is null or missing."}]


@pytest.mark.asyncio
async def test_input_read_from_store(http_config, sink, server):
    sink.set_value("INPUT.json", dict(INPUT))
    worker = InvoiceWorker(http_config, sink, solver_factory=lambda key: FakeSolver())
    assert await worker.run() == 0


class BrokenDatasetSink(ArtifactSink):
    """Sink whose dataset writes fail once the run is failing."""

    def push_data(self, item):
        if item.get("status") == "failed":
            raise OSError("dataset volume is read-only")
        return super().push_data(item)


@pytest.mark.asyncio
async def test_status_written_when_failure_record_cannot_be_stored(http_config, tmp_path, server):
    server.login_page = "<html><body>Manutenção</body></html>"
    sink = BrokenDatasetSink(tmp_path / "broken")
    worker = InvoiceWorker(http_config, sink, solver_factory=lambda key: FakeSolver())

    with pytest.raises(OSError):
        await worker.run(dict(INPUT))

    assert read_status(sink)["status"] == "FAILED"
    assert read_status(sink)["exitCode"] == 1
    assert worker._session._client is None


@pytest.mark.asyncio
async def test_status_written_when_diagnostics_capture_fails(http_config, sink, server, monkeypatch):
    server.login_page = "<html><body>Manutenção</body></html>"
    worker = InvoiceWorker(http_config, sink, solver_factory=lambda key: FakeSolver())

    async def broken_capture():
        raise RuntimeError("disk full")

    monkeypatch.setattr(worker, "_capture_failure", broken_capture)

    with pytest.raises(RuntimeError):
        await worker.run(dict(INPUT))

    assert read_status(sink)["status"] == "FAILED"
    assert worker._session._client is None
