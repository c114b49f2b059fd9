import io
import os

import pytest
from fastapi.testclient import TestClient
from PIL import Image
from unittest.mock import patch, AsyncMock

from core.config import settings
from core.errors import StorageError
from services.image_service.app.main import app


def make_png(width: int = 96, height: int = 64) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), (240, 200, 20)).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "DATABASE_URL", f"sqlite:///{tmp_path / 'service.db'}")
    monkeypatch.setattr(settings, "VARIANT_RETRY_DELAY", 0.0)
    with TestClient(app) as c:
        yield c

@pytest.fixture
def png_bytes():
    return make_png()

def upload(client: TestClient, payload: bytes, name: str = "cover.png", mime: str = "image/png"):
    return client.post("/images/temp-upload", files={"image": (name, payload, mime)})


# --- Meta ---
def test_health_check(client: TestClient):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "success"
    assert "running" in response.json()["message"]


# --- Upload ---
def test_temp_upload_returns_blob_info(client: TestClient, png_bytes: bytes):
    response = upload(client, png_bytes)

    assert response.status_code == 201
    data = response.json()["data"]
    assert data["blobId"]
    assert data["size"] == len(png_bytes)
    assert data["mimeType"] == "image/png"
    assert data["fileName"] == "cover.png"
    assert data["expiresAt"] is not None

def test_temp_upload_rejects_disallowed_type(client: TestClient):
    response = upload(client, b"hello", name="notes.txt", mime="text/plain")
    assert response.status_code == 400
    assert "Unsupported file type" in response.json()["detail"]

def test_temp_upload_rejects_oversized_file(client: TestClient, monkeypatch):
    monkeypatch.setattr(client.app.state.lifecycle, "max_upload_bytes", 1024)
    noisy = Image.frombytes("RGB", (100, 100), os.urandom(100 * 100 * 3))
    buffer = io.BytesIO()
    noisy.save(buffer, format="PNG")
    response = upload(client, buffer.getvalue())
    assert response.status_code == 400
    assert "exceeds limit" in response.json()["detail"]

def test_temp_upload_reads_at_most_one_byte_past_limit(client: TestClient, monkeypatch):
    lifecycle = client.app.state.lifecycle
    monkeypatch.setattr(lifecycle, "max_upload_bytes", 1024)
    with patch.object(lifecycle, "upload_temp", wraps=lifecycle.upload_temp) as mock_upload:
        response = upload(client, b"\x89PNG\r\n\x1a\n" + b"\x00" * 10_000)

    assert response.status_code == 400
    assert "exceeds limit" in response.json()["detail"]
    assert len(mock_upload.call_args.args[0]) == 1025

def test_delete_temp_upload(client: TestClient, png_bytes: bytes):
    blob_id = upload(client, png_bytes).json()["data"]["blobId"]

    response = client.delete("/images/temp-upload", params={"image_id": blob_id})
    assert response.status_code == 200
    assert response.json()["data"] == {"deleted": True}
    assert client.get(f"/images/{blob_id}").status_code == 404


# --- Confirm / list / unlink ---
def test_confirm_list_and_unlink_flow(client: TestClient, png_bytes: bytes):
    blob_id = upload(client, png_bytes).json()["data"]["blobId"]

    confirm = client.post("/images/confirm", json={"image_id": blob_id, "entity_type": "workflow", "entity_id": 42})
    assert confirm.status_code == 200
    assert confirm.json()["data"]["entity_id"] == "42"
    assert confirm.json()["data"]["is_primary"] is True

    listing = client.get("/images/entity/workflow/42")
    assert listing.status_code == 200
    entries = listing.json()["data"]
    assert [e["id"] for e in entries] == [blob_id]
    assert entries[0]["url"] == f"/images/{blob_id}"

    unlink = client.post("/images/unlink", json={"entity_type": "workflow", "entity_id": 42, "usage_type": "thumbnail"})
    assert unlink.status_code == 200
    assert unlink.json()["data"]["deleted_blob_ids"] == [blob_id]
    assert client.get("/images/entity/workflow/42").json()["data"] == []
    assert client.get(f"/images/{blob_id}").status_code == 404

def test_confirm_unknown_image_is_404(client: TestClient):
    response = client.post("/images/confirm", json={"image_id": "missing", "entity_type": "workflow", "entity_id": "1"})
    assert response.status_code == 404

def test_confirm_missing_fields_is_422(client: TestClient):
    response = client.post("/images/confirm", json={"entity_type": "workflow"})
    assert response.status_code == 422


# --- Serving ---
def test_serve_unknown_variant_falls_back_to_original(client: TestClient, png_bytes: bytes):
    blob_id = upload(client, png_bytes).json()["data"]["blobId"]

    response = client.get(f"/images/{blob_id}", params={"variant": "poster"})
    assert response.status_code == 200
    assert response.content == png_bytes
    assert response.headers["content-type"] == "image/png"
    assert response.headers["x-image-variant"] == "original"
    assert response.headers["content-disposition"].startswith("inline;")

def test_serve_generated_variant_and_download(client: TestClient, png_bytes: bytes):
    blob_id = upload(client, png_bytes).json()["data"]["blobId"]

    regen = client.post(f"/images/{blob_id}/variants", params={"variant_types": ["thumbnail"]})
    assert regen.status_code == 200
    assert regen.json()["data"] == {"generated": ["thumbnail"], "failed": []}

    response = client.get(f"/images/{blob_id}", params={"variant": "thumbnail", "download": "true"})
    assert response.status_code == 200
    assert response.headers["content-type"] == "image/jpeg"
    assert response.headers["x-image-variant"] == "thumbnail"
    assert response.headers["content-disposition"] == "attachment; filename*=UTF-8''cover_thumbnail.jpg"
    with Image.open(io.BytesIO(response.content)) as img:
        assert img.size == (200, 200)

def test_regenerate_unknown_preset_is_400(client: TestClient, png_bytes: bytes):
    blob_id = upload(client, png_bytes).json()["data"]["blobId"]
    response = client.post(f"/images/{blob_id}/variants", params={"variant_types": ["poster"]})
    assert response.status_code == 400

def test_serve_missing_image_is_404(client: TestClient):
    assert client.get("/images/does-not-exist").status_code == 404


# --- Delete ---
def test_delete_referenced_image_requires_force(client: TestClient, png_bytes: bytes):
    blob_id = upload(client, png_bytes).json()["data"]["blobId"]
    client.post("/images/confirm", json={"image_id": blob_id, "entity_type": "author", "entity_id": "7", "usage_type": "avatar"})

    refused = client.delete(f"/images/{blob_id}")
    assert refused.status_code == 409

    forced = client.delete(f"/images/{blob_id}", params={"force": "true"})
    assert forced.status_code == 200
    assert client.get("/images/entity/author/7").json()["data"] == []

def test_delete_missing_image_is_404(client: TestClient):
    assert client.delete("/images/nothing-here").status_code == 404


# --- Stats / cleanup / storage failure ---
def test_stats_and_cleanup(client: TestClient, png_bytes: bytes):
    upload(client, png_bytes)
    stats = client.get("/images/stats").json()["data"]
    assert stats["total_images"] == 1
    assert stats["temporary_images"] == 1

    cleanup = client.post("/images/cleanup")
    assert cleanup.status_code == 200
    assert cleanup.json()["data"]["total_expired"] == 0

def test_storage_failure_maps_to_503(client: TestClient):
    with patch.object(client.app.state.lifecycle, "stats", new_callable=AsyncMock) as mock_stats:
        mock_stats.side_effect = StorageError("disk I/O error")
        response = client.get("/images/stats")

    assert response.status_code == 503
    assert response.headers["retry-after"] == "5"
    assert "retry" in response.json()["detail"].lower()
