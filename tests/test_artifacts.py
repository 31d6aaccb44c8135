"""
Tests for the local artifact sink.
"""

import json

from billworker.storage import ArtifactSink
from billworker.storage.artifacts import STATUS


def test_layout(tmp_path):
    sink = ArtifactSink(tmp_path, store="kv", dataset="ds")
    assert sink.store_dir == tmp_path / "key_value_stores" / "kv"
    assert sink.dataset_dir == tmp_path / "datasets" / "ds"
    assert sink.store_dir.is_dir() and sink.dataset_dir.is_dir()


def test_set_value_types(sink, pdf_bytes):
    sink.set_value("a.pdf", pdf_bytes)
    sink.set_value("b.html", "<p>olá</p>")
    sink.set_value("c.json", {"ok": True, "texto": "ção"})

    assert sink.get_value("a.pdf") == pdf_bytes
    assert sink.get_value("b.html").decode("utf-8") == "<p>olá</p>"
    assert json.loads(sink.get_value("c.json")) == {"ok": True, "texto": "ção"}
    assert sink.get_value("missing") is None


def test_push_data_numbers_records(sink):
    first = sink.push_data({"status": "downloaded", "file": "x"})
    second = sink.push_data({"status": "failed", "error": "e"})

    assert first.name == "000000001.json"
    assert second.name == "000000002.json"
    assert [r["status"] for r in sink.records()] == ["downloaded", "failed"]


def test_numbering_continues_existing_dataset(tmp_path):
    ArtifactSink(tmp_path).push_data({"status": "a"})
    path = ArtifactSink(tmp_path).push_data({"status": "b"})
    assert path.name == "000000002.json"


def test_read_input(sink):
    sink.set_value("INPUT.json", {"username": "from-store"})
    assert sink.read_input() == {"username": "from-store"}


def test_write_status(sink):
    sink.write_status(1, "FAILED", "Login failed")
    status = json.loads(sink.get_value(STATUS))
    assert status["exitCode"] == 1
    assert status["status"] == "FAILED"
    assert status["error"] == "Login failed"
    assert "finishedAt" in status
