"""
Test Desktop Upload API

This module tests the desktop upload HTTP surface including:
- File admission and batch snapshots
- Entry edits and metadata overrides
- Retry, removal and reset
- Finalize gating
- Recovery endpoints
"""

import time

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.features.desktop_upload.constants import LABEL_FINALIZE, LABEL_SELECT_CATEGORY, MSG_CATEGORY_REQUIRED
from app.features.desktop_upload.desktop_upload import DesktopUploadSession
from app.features.desktop_upload.errors import TransferError
from app.features.desktop_upload.routes_desktop_upload import get_upload_session, router

PREFIX = "/api/desktop-upload"

@pytest.fixture
def client(fake_client):
    """Test client backed by a session on the fake DAM backend"""
    app = FastAPI()
    app.include_router(router)
    session = DesktopUploadSession(client=fake_client, auto_close_min_delay=5, auto_close_max_delay=5)
    app.dependency_overrides[get_upload_session] = lambda: session
    with TestClient(app) as test_client:
        yield test_client

def wait_for_batch(client, predicate, timeout=2.0):
    """Poll the batch snapshot until the predicate holds"""
    deadline = time.monotonic() + timeout
    while True:
        batch = client.get(f"{PREFIX}/batch").json()
        if predicate(batch):
            return batch
        if time.monotonic() > deadline:
            raise AssertionError(f"batch never reached expected state: {batch['batch_status']}")
        time.sleep(0.01)

def all_uploaded(batch):
    return batch["entries"] and all(e["status"] == "uploaded" for e in batch["entries"])

def test_add_files_and_upload(client, make_file):
    """Test admission and background upload"""
    response = client.post(f"{PREFIX}/files", json={"paths": [make_file("a.jpg"), make_file("b.jpg")]})
    assert response.status_code == 200
    entries = response.json()
    assert [e["file"]["name"] for e in entries] == ["a.jpg", "b.jpg"]
    assert entries[0]["title"] == "A"

    batch = wait_for_batch(client, all_uploaded)
    assert batch["batch_status"] == "ready"
    assert batch["can_finalize"] is False
    assert batch["warnings"] == [MSG_CATEGORY_REQUIRED]
    assert batch["finalize_label"] == LABEL_SELECT_CATEGORY
    assert batch["entries"][0]["upload_key"] == "temp/uploads/sess-1/original"

def test_add_files_validation(client, tmp_path):
    """Test rejected selections"""
    assert client.post(f"{PREFIX}/files", json={"paths": []}).status_code == 400
    response = client.post(f"{PREFIX}/files", json={"paths": [str(tmp_path / "missing.jpg")]})
    assert response.status_code == 400
    assert client.get(f"{PREFIX}/batch").json()["entries"] == []

def test_edit_entry(client, make_file):
    """Test title, filename and metadata edits"""
    entry = client.post(f"{PREFIX}/files", json={"paths": [make_file("raw.jpg")]}).json()[0]
    url = f"{PREFIX}/files/{entry['client_id']}"

    updated = client.patch(url, json={"title": "summer-trip", "metadata": {"season": "summer"}}).json()
    assert updated["title"] == "Summer Trip"
    assert updated["resolved_filename"] == "summer-trip.jpg"
    assert updated["metadata_override"] == {"season": "summer"}

    cleared = client.delete(f"{url}/metadata/season").json()
    assert cleared["metadata_override"] == {}

    assert client.patch(f"{PREFIX}/files/unknown", json={"title": "x"}).status_code == 404

def test_finalize_flow(client, make_file):
    """Test category gating and finalize"""
    client.post(f"{PREFIX}/files", json={"paths": [make_file("a.jpg")]})
    wait_for_batch(client, all_uploaded)

    assert client.post(f"{PREFIX}/finalize").status_code == 409

    context = client.put(f"{PREFIX}/category", json={"category_id": "cat-1"}).json()
    assert context["selected_category"] == "cat-1"
    client.put(f"{PREFIX}/metadata", json={"key": "photographer", "value": "Ana"})
    assert client.get(f"{PREFIX}/batch").json()["finalize_label"] == LABEL_FINALIZE

    batch = client.post(f"{PREFIX}/finalize").json()
    assert batch["batch_status"] == "complete"
    assert batch["entries"][0]["status"] == "finalized"

def test_retry_and_remove(client, make_file):
    """Test retry conflicts and removal"""
    entry = client.post(f"{PREFIX}/files", json={"paths": [make_file("a.jpg")]}).json()[0]
    wait_for_batch(client, all_uploaded)
    url = f"{PREFIX}/files/{entry['client_id']}"

    assert client.post(f"{url}/retry").status_code == 409
    assert client.post(f"{PREFIX}/files/unknown/retry").status_code == 404

    assert client.delete(url).status_code == 200
    assert client.delete(url).status_code == 404
    assert client.get(f"{PREFIX}/batch").json()["batch_status"] == "idle"

def test_retry_failed_upload(client, fake_client, make_file):
    """Test retry of an upload failure"""
    fake_client.put_failures["a.jpg"] = TransferError("Upload failed: 400", retryable=False)
    entry = client.post(f"{PREFIX}/files", json={"paths": [make_file("a.jpg")]}).json()[0]
    batch = wait_for_batch(client, lambda b: b["entries"][0]["status"] == "failed")
    assert batch["entries"][0]["error"]["stage"] == "upload"

    del fake_client.put_failures["a.jpg"]
    assert client.post(f"{PREFIX}/files/{entry['client_id']}/retry").status_code == 200
    wait_for_batch(client, all_uploaded)

def test_reset(client, make_file):
    """Test batch reset"""
    client.post(f"{PREFIX}/files", json={"paths": [make_file("a.jpg")]})
    client.put(f"{PREFIX}/category", json={"category_id": "cat-1"})
    assert client.post(f"{PREFIX}/reset").json() == {"status": "success"}
    batch = client.get(f"{PREFIX}/batch").json()
    assert batch["entries"] == []
    assert batch["context"]["selected_category"] is None

def test_recovery_endpoints(client, make_file):
    """Test recovery listing and reattach errors"""
    assert client.get(f"{PREFIX}/recoverable").json() == []
    response = client.post(f"{PREFIX}/recoverable/unknown", json={"path": make_file("a.jpg")})
    assert response.status_code == 409
