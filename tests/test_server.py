"""
HTTP Tests: FastAPI app

Tests:
    - session cookie issuance and reuse
    - upload / list / cut / download / delete flow
    - request validation and error status mapping
    - explicit session termination
"""

import io
import zipfile

import pytest
from fastapi.testclient import TestClient
from PIL import Image

import server
from imgcutter_backend import files as files_mod
from imgcutter_backend.config import SESSION_COOKIE_NAME


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setattr(server, "TEMP_ROOT", tmp_path / "temp")
    with TestClient(server.app) as c:
        yield c


def _upload(client, data, name="photo.jpg", content_type="image/jpeg"):
    return client.post("/api/upload", files={"file": (name, io.BytesIO(data), content_type)})


class TestSessionCookie:
    """Tests for the session middleware."""

    def test_cookie_issued_and_reused(self, client):
        first = client.get("/api/session")
        assert first.status_code == 200
        sid = first.json()["session_id"]
        assert first.cookies.get(SESSION_COOKIE_NAME) == sid

        second = client.get("/api/session")
        assert second.json()["session_id"] == sid
        assert SESSION_COOKIE_NAME not in second.cookies

    def test_malformed_cookie_gets_new_session(self, client):
        client.cookies.set(SESSION_COOKIE_NAME, "not-a-uuid")
        resp = client.get("/api/session")
        assert resp.status_code == 200
        sid = resp.json()["session_id"]
        assert sid != "not-a-uuid"
        assert resp.cookies.get(SESSION_COOKIE_NAME) == sid

    def test_sessions_listing_is_local_only(self, client):
        assert client.get("/api/sessions").status_code == 403


class TestFileFlow:
    """End-to-end upload, cut, download and delete."""

    def test_full_flow(self, client, image_bytes):
        resp = _upload(client, image_bytes())
        assert resp.status_code == 200
        assert resp.json() == {"name": "photo.jpg"}

        listing = client.get("/api/files").json()["files"]
        assert [f["name"] for f in listing] == ["photo.jpg"]
        assert listing[0]["has_archive"] is False

        resp = client.post("/api/cut", json={"file_name": "photo.jpg", "dx": 32, "dy": 32})
        assert resp.status_code == 200
        assert resp.json() == {"name": "photo.jpg", "archive": "photo.zip"}
        assert client.get("/api/files").json()["files"][0]["has_archive"] is True

        resp = client.get("/api/download/photo.jpg")
        assert resp.status_code == 200
        assert resp.headers["content-type"] == "application/zip"
        assert "photo.zip" in resp.headers["content-disposition"]
        with zipfile.ZipFile(io.BytesIO(resp.content)) as zf:
            assert len(zf.namelist()) == 110

        assert client.post("/api/files/photo.jpg/delete").json() == {"ok": True}
        assert client.get("/api/files").json()["files"] == []
        assert client.post("/api/files/photo.jpg/delete").status_code == 404

    def test_png_upload(self, client, image_bytes):
        resp = _upload(client, image_bytes(64, 64, "PNG", "RGBA"), "icon.png", "image/png")
        assert resp.status_code == 200
        resp = client.post("/api/cut", json={"file_name": "icon.png", "dx": 32, "dy": 32})
        assert resp.json()["archive"] == "icon.zip"

    def test_sessions_are_isolated(self, client, image_bytes):
        assert _upload(client, image_bytes()).status_code == 200
        # Shares the running app (no second lifespan), but has its own cookie jar.
        other = TestClient(server.app)
        assert other.get("/api/files").json()["files"] == []
        assert other.get("/api/download/photo.jpg").status_code == 404
        assert len(server.app.state.registry) == 2


class TestErrors:
    """Validation and error status mapping."""

    def test_rejects_other_content_types(self, client):
        resp = _upload(client, b"GIF89a", "anim.gif", "image/gif")
        assert resp.status_code == 400
        assert client.get("/api/files").json()["files"] == []

    def test_rejects_archive_name(self, client):
        assert _upload(client, b"x", "photo.zip").status_code == 400

    def test_upload_too_large(self, client, monkeypatch):
        monkeypatch.setattr(server, "MAX_IMAGE_UPLOAD_BYTES", 16)
        assert _upload(client, b"x" * 17).status_code == 413

    def test_tile_too_small(self, client, image_bytes):
        _upload(client, image_bytes())
        resp = client.post("/api/cut", json={"file_name": "photo.jpg", "dx": 10, "dy": 10})
        assert resp.status_code == 400

    def test_cut_unknown_file(self, client):
        resp = client.post("/api/cut", json={"file_name": "missing.jpg", "dx": 32, "dy": 32})
        assert resp.status_code == 404

    def test_cut_bad_payload(self, client):
        resp = client.post("/api/cut", json={"file_name": "photo.jpg", "dx": "dvesti", "dy": 32})
        assert resp.status_code == 422

    def test_cut_undecodable(self, client):
        _upload(client, b"definitely not a jpeg")
        resp = client.post("/api/cut", json={"file_name": "photo.jpg", "dx": 32, "dy": 32})
        assert resp.status_code == 400

    def test_cut_oversized_image(self, client, image_bytes, monkeypatch):
        monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 1000)
        _upload(client, image_bytes(100, 100, "PNG", "1"), "big.png", "image/png")
        resp = client.post("/api/cut", json={"file_name": "big.png", "dx": 32, "dy": 32})
        assert resp.status_code == 400

    def test_download_before_cut(self, client, image_bytes):
        _upload(client, image_bytes())
        assert client.get("/api/download/photo.jpg").status_code == 404

    def test_filesystem_error_hides_details(self, client, image_bytes, monkeypatch):
        def boom(*args, **kwargs):
            raise OSError(28, "No space left on device")

        monkeypatch.setattr(files_mod.os, "fsync", boom)
        resp = _upload(client, image_bytes())
        assert resp.status_code == 500
        assert resp.json()["detail"] == "FilesystemError"


class TestTerminate:
    """Tests for POST /api/session/terminate."""

    def test_terminate(self, client, image_bytes, tmp_path):
        sid = client.get("/api/session").json()["session_id"]
        _upload(client, image_bytes())
        session_dir = tmp_path / "temp" / sid
        assert session_dir.is_dir()

        resp = client.post("/api/session/terminate")
        assert resp.status_code == 200
        assert resp.json() == {"ok": True}
        assert not session_dir.exists()
        assert server.app.state.registry.find(sid) is None

        new_sid = client.get("/api/session").json()["session_id"]
        assert new_sid != sid
