"""
Pytest Configuration File

This module provides fixtures and configuration for all tests.
"""

import pytest
import os
import sys
import asyncio
from typing import Dict, List

# Add app directory to path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Import app modules
from app.features.desktop_upload.desktop_upload import DesktopUploadSession
from app.features.desktop_upload.models import FinalizeResult, InitiateResult, ResumeState

class FakeDamClient:
    """
    In-memory DAM backend.

    Every call is recorded in ``calls``. Behaviour is scripted per file
    name (initiate results, PUT failures, PUT gates) or per part number.
    """

    def __init__(self):
        self.calls: List[tuple] = []
        self.initiate_results: Dict[str, object] = {}
        self.put_failures: Dict[str, Exception] = {}
        self.put_gates: Dict[str, asyncio.Event] = {}
        self.part_failures: Dict[int, List[Exception]] = {}
        self.part_gate = None
        self.multipart_init_response = {"multipart_upload_id": "mp-1", "part_size": 4, "total_parts": 3}
        self.resume_state = ResumeState(can_resume=True)
        self.finalize_response = None
        self.finalize_calls: List[list] = []
        self.parts_uploaded: List[int] = []
        self.active_puts = 0
        self.max_active_puts = 0
        self._sessions = 0

    def called(self, name: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == name]

    async def initiate_batch(self, files, category_id=None):
        results = []
        for f in files:
            self.calls.append(("initiate", f.file_name, category_id))
            scripted = self.initiate_results.get(f.file_name)
            if isinstance(scripted, Exception):
                raise scripted
            if scripted is None:
                self._sessions += 1
                scripted = {
                    "upload_type": "direct",
                    "upload_url": f"https://storage.test/put/{self._sessions}",
                    "upload_session_id": f"sess-{self._sessions}",
                    "client_reference": f.client_reference,
                }
            results.append(InitiateResult.model_validate(scripted))
        return results

    async def put_file(self, url, local_file, on_progress=None):
        self.calls.append(("put_file", local_file.name, url))
        self.active_puts += 1
        self.max_active_puts = max(self.max_active_puts, self.active_puts)
        try:
            if on_progress:
                on_progress(50)
            gate = self.put_gates.get(local_file.name)
            if gate is not None:
                await gate.wait()
            else:
                await asyncio.sleep(0)
            failure = self.put_failures.get(local_file.name)
            if failure is not None:
                raise failure
            if on_progress:
                on_progress(100)
            return '"etag"'
        finally:
            self.active_puts -= 1

    async def multipart_init(self, upload_session_id):
        self.calls.append(("multipart_init", upload_session_id))
        return dict(self.multipart_init_response)

    async def fetch_resume(self, upload_session_id):
        self.calls.append(("fetch_resume", upload_session_id))
        if isinstance(self.resume_state, Exception):
            raise self.resume_state
        return self.resume_state

    async def sign_part(self, upload_session_id, part_number):
        self.calls.append(("sign_part", upload_session_id, part_number))
        return f"https://storage.test/{upload_session_id}/part/{part_number}"

    async def put_part(self, url, local_file, offset, length):
        part_number = int(url.rsplit("/", 1)[-1])
        self.calls.append(("put_part", part_number, offset, length))
        if self.part_gate is not None:
            await self.part_gate.wait()
        else:
            await asyncio.sleep(0)
        failures = self.part_failures.get(part_number)
        if failures:
            raise failures.pop(0)
        self.parts_uploaded.append(part_number)
        return f"etag-{part_number}"

    async def multipart_complete(self, upload_session_id, parts):
        self.calls.append(("multipart_complete", upload_session_id, dict(parts)))
        return {"etag": "final"}

    async def multipart_abort(self, upload_session_id):
        self.calls.append(("multipart_abort", upload_session_id))

    async def cancel_session(self, upload_session_id):
        self.calls.append(("cancel_session", upload_session_id))

    async def touch_activity(self, upload_session_id):
        self.calls.append(("touch_activity", upload_session_id))

    async def finalize(self, manifest):
        self.finalize_calls.append(list(manifest))
        response = self.finalize_response
        if isinstance(response, Exception):
            raise response
        if callable(response):
            response = response(manifest)
        if response is None:
            response = [
                {"upload_key": item.upload_key, "status": "success", "asset_id": index + 1}
                for index, item in enumerate(manifest)
            ]
        return [FinalizeResult.model_validate(item) for item in response]

class MockStateCollection:
    """Fixture stand-in for the motor UploadState collection"""

    def __init__(self):
        self.data = {}

    async def replace_one(self, query, document, upsert=False):
        self.data[query["client_reference"]] = dict(document)

    async def delete_one(self, query):
        self.data.pop(query["client_reference"], None)

    async def find(self, query=None):
        for document in list(self.data.values()):
            yield {"_id": "object-id", **document}

@pytest.fixture
def fake_client():
    """Fixture for the scripted DAM backend"""
    return FakeDamClient()

@pytest.fixture
def mock_state_collection():
    """Fixture for mocking the upload state collection"""
    return MockStateCollection()

@pytest.fixture
def make_file(tmp_path):
    """Factory writing a local file and returning its path"""
    def _make(name: str, size: int = 16) -> str:
        path = tmp_path / name
        path.write_bytes(b"x" * size)
        return str(path)
    return _make

@pytest.fixture
def upload_session(fake_client):
    """Upload session wired to the fake backend with a short auto-close delay"""
    return DesktopUploadSession(
        client=fake_client,
        auto_close_min_delay=0.01,
        auto_close_max_delay=0.02,
    )

@pytest.fixture
def wait_until():
    """Poll an async condition until it holds or the timeout expires"""
    async def _wait(predicate, timeout: float = 2.0):
        deadline = asyncio.get_running_loop().time() + timeout
        while not predicate():
            if asyncio.get_running_loop().time() > deadline:
                raise AssertionError("condition not reached in time")
            await asyncio.sleep(0.005)
    return _wait

@pytest.fixture(autouse=True)
def setup_test_env():
    """Automatically set up test environment variables"""
    os.environ["TESTING"] = "true"
    os.environ["ENVIRONMENT"] = "test"
    yield
    os.environ.pop("TESTING", None)
    os.environ.pop("ENVIRONMENT", None)
