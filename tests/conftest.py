"""
Shared fixtures: a zero-delay configuration and a temporary artifact sink.
"""

import pytest

from billworker.config import Config
from billworker.storage import ArtifactSink


PDF_BYTES = b"%PDF-1.4\n1 0 obj\n<< /Type /Catalog >>\nendobj\n%%EOF\n"


@pytest.fixture
def config(tmp_path) -> Config:
    cfg = Config()
    cfg.login.retry_delay = 0
    cfg.login.settle_after_injection = 0
    cfg.login.post_submit_settle = 0
    cfg.login.bot_rejection_wait = 0
    cfg.captcha.poll_interval = 0
    cfg.storage.directory = str(tmp_path / "storage")
    cfg.logging.directory = str(tmp_path / "logs")
    return cfg


@pytest.fixture
def sink(tmp_path) -> ArtifactSink:
    return ArtifactSink(tmp_path / "storage")


@pytest.fixture
def pdf_bytes() -> bytes:
    return PDF_BYTES
