"""Tests for the FastAPI service."""

import csv
import io
import os

import pytest
from fastapi.testclient import TestClient

from backend import main as backend_main


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(backend_main, "_last_scan", None)
    monkeypatch.setattr(backend_main, "_last_result", None)
    return TestClient(backend_main.app)


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_stats_before_scan(client):
    assert client.get("/stats").status_code == 404
    assert client.get("/export").status_code == 404


def test_scan_single_root(client, tmp_path, make_tree):
    root = make_tree(tmp_path / "R", {"a/x.txt": "hello", "a/y": "1", "b/x.txt": "hello"})
    response = client.post("/scan", json={"paths": [str(root)]})
    assert response.status_code == 200

    body = response.json()
    assert body["multi_root"] is False
    assert [group["paths"] for group in body["groups"]] == [
        [os.path.join("a", "x.txt"), os.path.join("b", "x.txt")]
    ]

    stats = client.get("/stats").json()
    assert stats["scan_id"] == body["scan_id"]
    assert stats["duplicate_groups"] == 1
    assert stats["stats"]["wasted_size_bytes"] == 5


def test_scan_multi_root_and_export(client, tmp_path, make_tree):
    g1 = make_tree(tmp_path / "G1", {"c1": "same", "c2": "same"})
    g2 = make_tree(tmp_path / "G2", {"c3": "same", "other": "x"})
    response = client.post("/scan", json={"paths": [str(g1), str(g2)], "warn_unreadable": True})
    assert response.status_code == 200
    assert response.json()["groups"][0]["paths"] == [str(g1 / "c1"), str(g1 / "c2"), str(g2 / "c3")]

    exported = client.get("/export", params={"format": "json"})
    assert exported.status_code == 200
    assert exported.json()["groups"][0]["groups"] == [1, 1, 2]

    exported = client.get("/export", params={"format": "csv"})
    assert exported.status_code == 200
    rows = list(csv.DictReader(io.StringIO(exported.text)))
    assert len(rows) == 3


def test_export_rejects_unknown_format(client):
    assert client.get("/export", params={"format": "xml"}).status_code == 422


def test_scan_missing_path(client, tmp_path):
    response = client.post("/scan", json={"paths": [str(tmp_path / "nope")]})
    assert response.status_code == 404


def test_scan_requires_paths(client):
    assert client.post("/scan", json={"paths": []}).status_code == 400
