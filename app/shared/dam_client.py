"""
DAM Backend Integration Module

This module provides the async HTTP client for the DAM backend upload
contract and for raw byte transfers to pre-signed storage URLs.

Features:
- Batch upload initiation
- Streaming direct PUT with progress
- Multipart session endpoints
- Session heartbeat and resume
- Batch finalize

Data Model:
- Initiate requests and results
- Multipart part ETags
- Finalize manifest and results

Security:
- CSRF token header
- Session cookie forwarding
- HTML error pages never parsed
- Pre-signed URL expiry detection

Dependencies:
- aiohttp for async HTTP
- dotenv-backed config
- logging for tracking

Author: Snapped Development Team
"""

import asyncio
import json
import logging
from typing import Any, Callable, Dict, List, Optional

import aiohttp

from app.shared.config import (
    DAM_BASE_URL,
    DAM_BRAND_ID,
    DAM_CSRF_TOKEN,
    DAM_REQUEST_TIMEOUT,
    DAM_SESSION_COOKIE,
    FINALIZE_PATH,
    INITIATE_BATCH_PATH,
    READ_CHUNK_SIZE,
    UPLOAD_SESSION_PATH,
)
from app.features.desktop_upload.errors import (
    ChunkedUploadError,
    FinalizeError,
    InitiateError,
    TransferError,
    UploadPipelineError,
    network_error,
    response_error,
    storage_error,
)
from app.features.desktop_upload.models import (
    FinalizeResult,
    InitiateFile,
    InitiateResult,
    LocalFile,
    ManifestItem,
    ResumeState,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]

def percent(sent: int, total: int) -> int:
    """Integer percentage clamped to [0, 100]."""
    if total <= 0:
        return 100
    return max(0, min(100, round(sent * 100 / total)))

class DamClient:
    """
    DAM backend client.

    Attributes:
        base_url: Backend origin
        brand_id: Brand sent with initiate-batch
        timeout: Total timeout for JSON calls, byte transfers have none
        headers: Headers sent on every backend JSON call
    """

    def __init__(
        self,
        base_url: str = DAM_BASE_URL,
        csrf_token: str = DAM_CSRF_TOKEN,
        session_cookie: str = DAM_SESSION_COOKIE,
        brand_id: str = DAM_BRAND_ID,
        timeout: float = DAM_REQUEST_TIMEOUT,
    ):
        self.base_url = base_url.rstrip('/')
        self.brand_id = brand_id
        self.timeout = timeout
        self.headers = {
            "Accept": "application/json",
            "X-Requested-With": "XMLHttpRequest",
        }
        if csrf_token:
            self.headers["X-CSRF-TOKEN"] = csrf_token
        if session_cookie:
            self.headers["Cookie"] = session_cookie
        logger.info(f"DamClient initialized for {self.base_url}")

    def _session_path(self, upload_session_id: str, suffix: str) -> str:
        return UPLOAD_SESSION_PATH.format(upload_session_id=upload_session_id) + suffix

    async def _request_json(
        self,
        method: str,
        path: str,
        phase: str,
        error_cls: type = UploadPipelineError,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Call a backend JSON endpoint.

        Raises:
            UploadPipelineError: error_cls for HTTP failures, network failures
                and bodies that are not JSON objects
        """
        url = f"{self.base_url}{path}"
        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.request(method, url, json=payload, headers=self.headers) as response:
                    body = await response.text()
                    content_type = response.headers.get("Content-Type", "")
                    if response.status >= 400 or "text/html" in content_type.lower():
                        logger.error(f"{phase} {method} {path} returned {response.status}")
                        raise response_error(
                            error_cls, phase, response.status, content_type, body, response.reason
                        )
                    if not body.strip():
                        return {}
                    try:
                        data = json.loads(body)
                    except ValueError:
                        raise error_cls(f"{phase} failed: invalid response", http_status=response.status)
                    if not isinstance(data, dict):
                        raise error_cls(f"{phase} failed: invalid response", http_status=response.status)
                    return data
        except UploadPipelineError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise network_error(e, error_cls)

    async def initiate_batch(
        self, files: List[InitiateFile], category_id: Optional[str] = None
    ) -> List[InitiateResult]:
        """
        Open upload sessions for a batch of files.

        Returns:
            List[InitiateResult]: one result per requested file, order-correlated
        """
        payload: Dict[str, Any] = {
            "files": [f.model_dump() for f in files],
            "brand_id": self.brand_id,
        }
        if category_id:
            payload["category_id"] = category_id
        data = await self._request_json("POST", INITIATE_BATCH_PATH, "Initiate", InitiateError, payload)
        uploads = data.get("uploads")
        if not isinstance(uploads, list):
            raise InitiateError("Initiate failed: response has no uploads")
        return [
            InitiateResult.model_validate(item) if isinstance(item, dict)
            else InitiateResult(error="Malformed upload result")
            for item in uploads
        ]

    async def put_file(
        self,
        url: str,
        local_file: LocalFile,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Optional[str]:
        """
        Stream a whole file to a pre-signed URL.

        Returns:
            Optional[str]: ETag reported by storage

        Notes:
            - Progress is bytes sent over bytes total
            - Cancelling the calling task aborts the request
        """
        total = local_file.size

        async def body():
            sent = 0
            with open(local_file.path, "rb") as handle:
                while True:
                    chunk = handle.read(READ_CHUNK_SIZE)
                    if not chunk:
                        break
                    sent += len(chunk)
                    yield chunk
                    if on_progress:
                        on_progress(percent(sent, total))

        headers = {"Content-Type": local_file.mime_type, "Content-Length": str(total)}
        try:
            timeout = aiohttp.ClientTimeout(total=None, sock_connect=30)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.put(url, data=body(), headers=headers) as response:
                    if not 200 <= response.status < 300:
                        text = await response.text()
                        logger.error(f"Direct PUT for {local_file.name} returned {response.status}")
                        raise storage_error(response.status, url, text)
                    if on_progress:
                        on_progress(100)
                    return response.headers.get("ETag")
        except UploadPipelineError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise network_error(e, TransferError)

    async def put_part(self, url: str, local_file: LocalFile, offset: int, length: int) -> str:
        """
        Upload one multipart part.

        Returns:
            str: Part ETag without quotes

        Raises:
            ChunkedUploadError: when storage answers without an ETag
        """
        with open(local_file.path, "rb") as handle:
            handle.seek(offset)
            data = handle.read(length)
        try:
            timeout = aiohttp.ClientTimeout(total=None, sock_connect=30)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.put(url, data=data) as response:
                    if not 200 <= response.status < 300:
                        text = await response.text()
                        raise storage_error(response.status, url, text)
                    etag = (response.headers.get("ETag") or "").replace('"', "")
        except UploadPipelineError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise network_error(e, ChunkedUploadError)
        if not etag:
            raise ChunkedUploadError("Storage did not return an ETag for an uploaded part.")
        return etag

    async def multipart_init(self, upload_session_id: str) -> Dict[str, Any]:
        return await self._request_json(
            "POST", self._session_path(upload_session_id, "/multipart/init"), "Multipart init", ChunkedUploadError, {}
        )

    async def sign_part(self, upload_session_id: str, part_number: int) -> str:
        data = await self._request_json(
            "POST",
            self._session_path(upload_session_id, "/multipart/sign-part"),
            "Sign part",
            ChunkedUploadError,
            {"part_number": part_number},
        )
        upload_url = data.get("upload_url")
        if not upload_url:
            raise ChunkedUploadError(f"Sign part failed: no URL for part {part_number}")
        return upload_url

    async def multipart_complete(self, upload_session_id: str, parts: Dict[int, str]) -> Dict[str, Any]:
        payload = {"parts": {str(number): etag for number, etag in sorted(parts.items())}}
        return await self._request_json(
            "POST",
            self._session_path(upload_session_id, "/multipart/complete"),
            "Multipart complete",
            ChunkedUploadError,
            payload,
        )

    async def multipart_abort(self, upload_session_id: str) -> None:
        await self._request_json(
            "POST", self._session_path(upload_session_id, "/multipart/abort"), "Multipart abort", ChunkedUploadError, {}
        )

    async def cancel_session(self, upload_session_id: str) -> None:
        await self._request_json(
            "POST", self._session_path(upload_session_id, "/cancel"), "Cancel", ChunkedUploadError, {}
        )

    async def fetch_resume(self, upload_session_id: str) -> ResumeState:
        """Backend view of a chunked session, including parts it already holds."""
        data = await self._request_json(
            "GET", self._session_path(upload_session_id, "/resume"), "Resume", ChunkedUploadError
        )
        multipart_state = data.get("multipart_state")
        if not isinstance(multipart_state, dict):
            multipart_state = {}
        completed = multipart_state.get("completed_parts") or {}
        if isinstance(completed, list):
            completed = {
                item.get("part_number"): item.get("etag")
                for item in completed
                if isinstance(item, dict) and item.get("part_number") and item.get("etag")
            }
        elif not isinstance(completed, dict):
            completed = {}
        return ResumeState(
            can_resume=bool(data.get("can_resume")),
            is_expired=bool(data.get("is_expired")),
            upload_session_status=data.get("upload_session_status"),
            part_size=data.get("part_size"),
            total_parts=data.get("total_parts"),
            completed_parts=completed,
        )

    async def touch_activity(self, upload_session_id: str) -> None:
        await self._request_json(
            "PUT", self._session_path(upload_session_id, "/activity"), "Activity", ChunkedUploadError, {}
        )

    async def finalize(self, manifest: List[ManifestItem]) -> List[FinalizeResult]:
        """
        Submit the finalize manifest in one call.

        Returns:
            List[FinalizeResult]: per-item results, unordered
        """
        payload = {"manifest": [item.model_dump() for item in manifest]}
        data = await self._request_json("POST", FINALIZE_PATH, "Finalize", FinalizeError, payload)
        results = data.get("results")
        if not isinstance(results, list):
            raise FinalizeError("Finalize failed: response has no results")
        return [FinalizeResult.model_validate(item) for item in results if isinstance(item, dict)]
