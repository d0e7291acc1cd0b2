"""
Test Chunked Upload Manager

This module tests multipart sessions including:
- Part upload and completion
- Per-part retry
- Resume from stored parts
- Cancellation cleanup
- Persistence, rehydration and reattach
"""

import asyncio

import pytest

from app.features.desktop_upload.chunked_manager import ChunkedUploadManager
from app.features.desktop_upload.constants import ERROR_OLD_UPLOAD_EXPIRED, ERROR_UPLOAD_FAILED
from app.features.desktop_upload.errors import ChunkedUploadError, TransferError
from app.features.desktop_upload.models import ChunkedUpload, LocalFile, ResumeState
from app.features.desktop_upload.upload_state_db import UploadStateDB
from app.shared.models import ChunkedStatus

@pytest.fixture
def local_file(make_file):
    return LocalFile.from_path(make_file("big.mov", size=12))

@pytest.fixture
def manager(fake_client):
    return ChunkedUploadManager(fake_client, retry_base_delay=0)

@pytest.mark.asyncio
async def test_upload_completes(manager, fake_client, local_file, wait_until):
    """Test a full multipart upload"""
    seen = []
    manager.subscribe(seen.append)
    ref = manager.start(local_file, "sess-9")

    await wait_until(lambda: manager.get(ref).status == ChunkedStatus.COMPLETED)
    record = manager.get(ref)
    assert record.progress == 100
    assert record.completed_parts == {1: "etag-1", 2: "etag-2", 3: "etag-3"}
    assert len(fake_client.called("sign_part")) == 3
    assert fake_client.called("multipart_complete") == [
        ("multipart_complete", "sess-9", {1: "etag-1", 2: "etag-2", 3: "etag-3"})
    ]
    progress = [r.progress for r in seen]
    assert progress == sorted(progress)
    assert seen[-1].status == ChunkedStatus.COMPLETED

@pytest.mark.asyncio
async def test_parts_use_offsets(manager, fake_client, local_file, wait_until):
    """Test byte ranges sent per part"""
    ref = manager.start(local_file, "sess-9")
    await wait_until(lambda: manager.get(ref).status == ChunkedStatus.COMPLETED)
    ranges = sorted((n, offset, length) for _, n, offset, length in fake_client.called("put_part"))
    assert ranges == [(1, 0, 4), (2, 4, 4), (3, 8, 4)]

@pytest.mark.asyncio
async def test_retryable_part_failure_is_retried(manager, fake_client, local_file, wait_until):
    """Test per-part retry"""
    fake_client.part_failures[2] = [TransferError("Server error (503).", code="server_error")]
    ref = manager.start(local_file, "sess-9")

    await wait_until(lambda: manager.get(ref).status == ChunkedStatus.COMPLETED)
    attempts = [call for call in fake_client.called("put_part") if call[1] == 2]
    assert len(attempts) == 2

@pytest.mark.asyncio
async def test_non_retryable_part_failure_fails_upload(manager, fake_client, local_file, wait_until):
    """Test that permanent failures stop the upload"""
    fake_client.part_failures[2] = [TransferError("Storage rejected the upload.", retryable=False)]
    ref = manager.start(local_file, "sess-9")

    await wait_until(lambda: manager.get(ref).status == ChunkedStatus.FAILED)
    record = manager.get(ref)
    assert record.error == "Storage rejected the upload."
    assert not fake_client.called("multipart_complete")

@pytest.mark.asyncio
async def test_exhausted_retries_fail_upload(manager, fake_client, local_file, wait_until):
    """Test retry limit"""
    fake_client.part_failures[1] = [TransferError("flaky") for _ in range(3)]
    ref = manager.start(local_file, "sess-9")

    await wait_until(lambda: manager.get(ref).status == ChunkedStatus.FAILED)
    assert len([call for call in fake_client.called("put_part") if call[1] == 1]) == 3

@pytest.mark.asyncio
async def test_unexpected_error_fails_upload(manager, fake_client, local_file, wait_until):
    """Test that an unexpected exception still ends in failed"""
    fake_client.resume_state = AttributeError("'list' object has no attribute 'get'")
    ref = manager.start(local_file, "sess-9")

    await wait_until(lambda: manager.get(ref).status == ChunkedStatus.FAILED)
    record = manager.get(ref)
    assert record.error == "Chunked upload failed."
    assert record.error_code == ERROR_UPLOAD_FAILED
    assert not fake_client.called("put_part")

@pytest.mark.asyncio
async def test_stored_parts_are_skipped(manager, fake_client, local_file, wait_until):
    """Test resume from parts the backend already holds"""
    fake_client.resume_state = ResumeState(can_resume=True, completed_parts={1: "old-1"})
    ref = manager.start(local_file, "sess-9")

    await wait_until(lambda: manager.get(ref).status == ChunkedStatus.COMPLETED)
    assert sorted(fake_client.parts_uploaded) == [2, 3]
    assert fake_client.called("multipart_complete")[0][2] == {1: "old-1", 2: "etag-2", 3: "etag-3"}

@pytest.mark.asyncio
async def test_cancel_aborts_and_cancels_session(manager, fake_client, local_file, wait_until):
    """Test cancellation cleanup"""
    fake_client.part_gate = asyncio.Event()
    ref = manager.start(local_file, "sess-9")
    await wait_until(lambda: fake_client.called("put_part"))

    assert await manager.cancel(ref) is True
    assert manager.get(ref).status == ChunkedStatus.CANCELLED
    assert fake_client.called("multipart_abort") == [("multipart_abort", "sess-9")]
    assert fake_client.called("cancel_session") == [("cancel_session", "sess-9")]
    assert not fake_client.called("multipart_complete")
    assert await manager.cancel("unknown") is False

@pytest.mark.asyncio
async def test_terminal_status_is_final(manager, fake_client, local_file, wait_until):
    """Test that completed uploads ignore later cancellation"""
    ref = manager.start(local_file, "sess-9")
    await wait_until(lambda: manager.get(ref).status == ChunkedStatus.COMPLETED)

    await manager.cancel(ref)
    assert manager.get(ref).status == ChunkedStatus.COMPLETED
    assert not fake_client.called("cancel_session")

@pytest.mark.asyncio
async def test_heartbeat_touches_session(fake_client, local_file, wait_until):
    """Test activity pings while parts are in flight"""
    manager = ChunkedUploadManager(fake_client, heartbeat_interval=0.01)
    fake_client.part_gate = asyncio.Event()
    ref = manager.start(local_file, "sess-9")

    await wait_until(lambda: fake_client.called("touch_activity"))
    fake_client.part_gate.set()
    await wait_until(lambda: manager.get(ref).status == ChunkedStatus.COMPLETED)

@pytest.mark.asyncio
async def test_state_is_persisted_without_file(fake_client, mock_state_collection, local_file, wait_until):
    """Test persistence while uploading and cleanup on completion"""
    manager = ChunkedUploadManager(fake_client, state_db=UploadStateDB(mock_state_collection))
    fake_client.part_gate = asyncio.Event()
    ref = manager.start(local_file, "sess-9")

    await wait_until(lambda: mock_state_collection.data.get(ref, {}).get("status") == "uploading")
    document = mock_state_collection.data[ref]
    assert "file" not in document
    assert document["upload_session_id"] == "sess-9"
    assert document["multipart_upload_id"] == "mp-1"

    fake_client.part_gate.set()
    await wait_until(lambda: manager.get(ref).status == ChunkedStatus.COMPLETED)
    await manager.shutdown()
    assert ref not in mock_state_collection.data

async def _persist_interrupted(collection, **overrides):
    record = ChunkedUpload(**{
        "client_reference": "ref-1",
        "file_name": "big.mov",
        "file_size": 12,
        "mime_type": "video/quicktime",
        "upload_session_id": "old-sess",
        "multipart_upload_id": "mp-9",
        "part_size": 4,
        "total_parts": 3,
        "completed_parts": {1: "e1"},
        "status": ChunkedStatus.UPLOADING,
        "progress": 33,
        **overrides,
    })
    await UploadStateDB(collection).save(record)

@pytest.mark.asyncio
async def test_rehydrate_and_resume(fake_client, mock_state_collection, local_file, wait_until):
    """Test recovery after a restart"""
    await _persist_interrupted(mock_state_collection)
    manager = ChunkedUploadManager(fake_client, state_db=UploadStateDB(mock_state_collection))

    assert await manager.rehydrate() == 1
    pending = manager.pending_recoveries()
    assert [r.client_reference for r in pending] == ["ref-1"]
    assert pending[0].status == ChunkedStatus.PENDING
    assert pending[0].file is None

    fake_client.resume_state = ResumeState(can_resume=True, completed_parts={2: "e2"})
    resumed = await manager.resume("ref-1", local_file)
    assert resumed.completed_parts == {1: "e1", 2: "e2"}

    await wait_until(lambda: manager.get("ref-1").status == ChunkedStatus.COMPLETED)
    assert fake_client.parts_uploaded == [3]
    assert not fake_client.called("multipart_init")
    assert fake_client.called("multipart_complete")[0][2] == {1: "e1", 2: "e2", 3: "etag-3"}
    await manager.shutdown()

@pytest.mark.asyncio
async def test_rehydrate_skips_terminal_records(fake_client, mock_state_collection):
    """Test that finished records are not offered for recovery"""
    await _persist_interrupted(mock_state_collection, status=ChunkedStatus.FAILED)
    manager = ChunkedUploadManager(fake_client, state_db=UploadStateDB(mock_state_collection))
    assert await manager.rehydrate() == 0
    assert manager.pending_recoveries() == []

@pytest.mark.asyncio
async def test_resume_expired_session(fake_client, mock_state_collection, local_file):
    """Test sessions the backend no longer accepts"""
    await _persist_interrupted(mock_state_collection)
    manager = ChunkedUploadManager(fake_client, state_db=UploadStateDB(mock_state_collection))
    await manager.rehydrate()
    fake_client.resume_state = ResumeState(can_resume=False, is_expired=True)

    with pytest.raises(ChunkedUploadError) as exc_info:
        await manager.resume("ref-1", local_file)
    assert exc_info.value.code == ERROR_OLD_UPLOAD_EXPIRED
    assert manager.get("ref-1").status == ChunkedStatus.FAILED
    await manager.shutdown()

@pytest.mark.asyncio
async def test_resume_rejects_different_file(fake_client, mock_state_collection, make_file):
    """Test size check on reattach"""
    await _persist_interrupted(mock_state_collection)
    manager = ChunkedUploadManager(fake_client, state_db=UploadStateDB(mock_state_collection))
    await manager.rehydrate()

    with pytest.raises(ChunkedUploadError):
        await manager.resume("ref-1", LocalFile.from_path(make_file("other.mov", size=99)))
    assert manager.get("ref-1").status == ChunkedStatus.PENDING
    assert not fake_client.called("fetch_resume")
