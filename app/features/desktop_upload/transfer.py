"""
Transfer Engine Module

This module executes the bytes-on-the-wire transfer of one entry, either
as a single pre-signed PUT or by delegating to the chunked upload manager.

Features:
- Upload initiation with result validation
- Direct streaming PUT with progress
- Chunked delegation with correlation callback
- Resume of recovered chunked uploads
- Storage key derivation

Dependencies:
- DamClient for backend calls
- ChunkedUploadManager for multipart sessions
- logging for tracking

Author: Snapped Development Team
"""

import logging
from typing import Callable, Optional

from pydantic import BaseModel

from app.shared.models import UploadType
from .chunked_manager import ChunkedUploadManager
from .constants import (
    ERROR_SESSION_MISSING,
    ERROR_STORAGE_LIMIT,
    MAX_ERROR_EXCERPT_LENGTH,
    MSG_SESSION_MISSING,
    MSG_STORAGE_LIMIT,
    UPLOAD_KEY_TEMPLATE,
)
from .errors import InitiateError
from .models import InitiateFile, InitiateResult, UploadEntry

logger = logging.getLogger(__name__)

def derive_upload_key(upload_session_id: str) -> str:
    """Storage key the backend assigns to a finished transfer of this session."""
    return UPLOAD_KEY_TEMPLATE.format(session_id=upload_session_id)

class TransferResult(BaseModel):
    """
    Outcome of a transfer.

    Direct transfers carry the upload key. Delegated chunked transfers carry
    the manager reference instead and finish asynchronously.
    """
    upload_type: UploadType
    upload_session_id: str
    upload_key: Optional[str] = None
    chunked_ref: Optional[str] = None

def _result_error(result: InitiateResult) -> InitiateError:
    error = result.error
    if isinstance(error, dict):
        if error.get("type") == ERROR_STORAGE_LIMIT or error.get("code") == ERROR_STORAGE_LIMIT:
            return InitiateError(MSG_STORAGE_LIMIT, code=ERROR_STORAGE_LIMIT, category="validation", retryable=False)
        error = error.get("message") or error.get("error")
    if isinstance(error, str) and error and len(error) < MAX_ERROR_EXCERPT_LENGTH and "<" not in error:
        return InitiateError(error)
    return InitiateError("Upload could not be started.")

class TransferEngine:
    """
    Runs one entry's transfer.

    Attributes:
        client: DAM backend client
        chunked: Manager that owns multipart sessions
    """

    def __init__(self, client, chunked: ChunkedUploadManager):
        self.client = client
        self.chunked = chunked

    async def initiate(self, entry: UploadEntry, category_id: Optional[str] = None) -> InitiateResult:
        """
        Open an upload session for one entry and validate the answer.

        Raises:
            InitiateError: on backend errors, mismatched correlation, or a
                result that lacks the data the transfer needs
        """
        request = InitiateFile(
            file_name=entry.file.name,
            file_size=entry.file.size,
            mime_type=entry.file.mime_type,
            client_reference=entry.client_id,
        )
        results = await self.client.initiate_batch([request], category_id)
        if not results:
            raise InitiateError("Initiate returned no result for this file.")
        result = results[0]

        if result.error:
            raise _result_error(result)
        if result.client_reference and result.client_reference != entry.client_id:
            logger.error(f"Initiate result for {result.client_reference} returned to {entry.client_id}")
            raise InitiateError("Upload session does not belong to this file.")
        if not result.upload_session_id:
            raise InitiateError(MSG_SESSION_MISSING, code=ERROR_SESSION_MISSING, category="pipeline")
        if result.upload_type is None:
            result = result.model_copy(
                update={"upload_type": UploadType.DIRECT if result.upload_url else UploadType.CHUNKED}
            )
        if result.upload_type == UploadType.DIRECT and not result.upload_url:
            raise InitiateError("Initiate returned no upload URL for this file.")
        return result

    async def transfer(
        self,
        entry: UploadEntry,
        category_id: Optional[str] = None,
        on_progress: Optional[Callable[[int], None]] = None,
        on_session: Optional[Callable[[str, UploadType], None]] = None,
        on_delegated: Optional[Callable[[str], None]] = None,
    ) -> TransferResult:
        """
        Transfer one entry.

        Args:
            entry: Entry in the uploading state
            category_id: Category sent with initiation
            on_progress: Receives integer percentages
            on_session: Receives the session id and upload type once known
            on_delegated: Receives the chunked manager reference before the
                chunked upload starts emitting updates

        Returns:
            TransferResult: upload key for direct transfers, manager
            reference for chunked ones
        """
        if entry.recovered_ref:
            return await self._resume(entry, on_session, on_delegated)

        result = await self.initiate(entry, category_id)
        session_id = result.upload_session_id
        if on_session:
            on_session(session_id, result.upload_type)

        if result.upload_type == UploadType.CHUNKED:
            ref = self.chunked.start(entry.file, session_id, part_size=result.chunk_size)
            if on_delegated:
                on_delegated(ref)
            logger.info(f"Delegated {entry.file.name} to chunked upload {ref}")
            return TransferResult(upload_type=UploadType.CHUNKED, upload_session_id=session_id, chunked_ref=ref)

        logger.info(f"Direct upload of {entry.file.name} ({entry.file.size} bytes) started")
        await self.client.put_file(result.upload_url, entry.file, on_progress)
        logger.info(f"Direct upload of {entry.file.name} finished")
        return TransferResult(
            upload_type=UploadType.DIRECT,
            upload_session_id=session_id,
            upload_key=derive_upload_key(session_id),
        )

    async def _resume(self, entry, on_session, on_delegated) -> TransferResult:
        ref = entry.recovered_ref
        record = self.chunked.get(ref)
        if record is None:
            raise InitiateError(MSG_SESSION_MISSING, code=ERROR_SESSION_MISSING, category="pipeline")
        if on_session:
            on_session(record.upload_session_id, UploadType.CHUNKED)
        if on_delegated:
            on_delegated(ref)
        await self.chunked.resume(ref, entry.file)
        return TransferResult(
            upload_type=UploadType.CHUNKED, upload_session_id=record.upload_session_id, chunked_ref=ref
        )
