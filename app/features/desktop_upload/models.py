"""
Desktop Upload Models Module

This module defines the data models used by the desktop upload
pipeline: registry entries, backend payloads and API bodies.

Features:
- Immutable registry entries
- Structured errors
- Backend request/response payloads
- Chunked session records
- API request/response models

Data Model:
- Local files
- Upload entries
- Batch context
- Finalize manifest
- Multipart state

Dependencies:
- pydantic for data validation
- typing for type hints
- datetime for timestamps

Author: Snapped Development Team
"""

import mimetypes
import os
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.shared.models import (
    BatchStatus,
    ChunkedStatus,
    EntryStatus,
    ErrorStage,
    UploadType,
)

class LocalFile(BaseModel):
    """
    Reference to a file on the local disk.

    Attributes:
        path (str): Absolute path
        name (str): Original file name
        size (int): Size in bytes
        mime_type (str): Detected MIME type
    """
    model_config = ConfigDict(frozen=True)

    path: str
    name: str
    size: int
    mime_type: str = "application/octet-stream"

    @classmethod
    def from_path(cls, path: str) -> "LocalFile":
        """Stat a path into a LocalFile, raising FileNotFoundError if it is not a regular file."""
        absolute = os.path.abspath(os.path.expanduser(path))
        if not os.path.isfile(absolute):
            raise FileNotFoundError(absolute)
        mime_type, _ = mimetypes.guess_type(absolute)
        return cls(
            path=absolute,
            name=os.path.basename(absolute),
            size=os.path.getsize(absolute),
            mime_type=mime_type or "application/octet-stream",
        )

class UploadError(BaseModel):
    """
    Normalized error attached to an entry.

    Attributes:
        stage (ErrorStage): Pipeline stage that failed
        code (str): Machine readable code
        message (str): Safe, user-facing message
        category (str): auth, network, storage, validation, pipeline or unknown
        http_status (Optional[int]): Backend status code when known
        retryable (bool): Whether a retry may succeed
        fields (Optional[Dict]): Per-field validation errors from finalize
    """
    model_config = ConfigDict(frozen=True)

    stage: ErrorStage
    code: str
    message: str
    category: str = "unknown"
    http_status: Optional[int] = None
    retryable: bool = True
    fields: Optional[Dict[str, Any]] = None

class UploadEntry(BaseModel):
    """
    One user-selected file tracked through the upload lifecycle.

    Entries are never mutated in place; every change produces a new
    instance through ``model_copy``.
    """
    model_config = ConfigDict(frozen=True)

    client_id: str
    file: LocalFile
    status: EntryStatus = EntryStatus.SELECTED
    progress: int = 0
    upload_key: Optional[str] = None
    upload_session_id: Optional[str] = None
    upload_type: Optional[UploadType] = None
    title: str
    resolved_filename: str
    title_edited: bool = False
    filename_edited: bool = False
    metadata_override: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[UploadError] = None
    recovered_ref: Optional[str] = None  # interrupted chunked upload to resume instead of initiating

class BatchContext(BaseModel):
    """Batch-wide settings shared by every entry."""
    model_config = ConfigDict(frozen=True)

    selected_category: Optional[str] = None
    global_metadata_defaults: Dict[str, Any] = Field(default_factory=dict)

# Backend payloads

class InitiateFile(BaseModel):
    file_name: str
    file_size: int
    mime_type: str
    client_reference: str

class InitiateResult(BaseModel):
    """One order-correlated item of the initiate-batch response."""
    model_config = ConfigDict(extra="ignore")

    upload_type: Optional[UploadType] = None
    upload_url: Optional[str] = None
    upload_session_id: Optional[str] = None
    chunk_size: Optional[int] = None
    client_reference: Optional[str] = None
    error: Optional[Any] = None

class ManifestItem(BaseModel):
    upload_key: str
    expected_size: int
    category_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    title: str
    resolved_filename: str

class FinalizeResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    upload_key: Optional[str] = None
    status: Optional[str] = None
    error: Optional[Dict[str, Any]] = None
    asset_id: Optional[Any] = None

class ResumeState(BaseModel):
    """Backend view of a chunked session, as returned by the resume endpoint."""
    model_config = ConfigDict(extra="ignore")

    can_resume: bool = False
    is_expired: bool = False
    upload_session_status: Optional[str] = None
    part_size: Optional[int] = None
    total_parts: Optional[int] = None
    completed_parts: Dict[int, str] = Field(default_factory=dict)

class ChunkedUpload(BaseModel):
    """
    Multipart session record owned by the chunked upload manager.

    Attributes:
        client_reference (str): Manager correlation id
        file (Optional[LocalFile]): Attached file, absent after rehydration
        upload_session_id (str): Backend session id
        multipart_upload_id (Optional[str]): Storage multipart id
        part_size (int): Bytes per part
        total_parts (int): Number of parts
        completed_parts (Dict[int, str]): part number to ETag
        status (ChunkedStatus): Session status
        progress (int): 0-100
        error (Optional[str]): Failure message
        error_code (Optional[str]): Failure code
        error_status (Optional[int]): HTTP status of the failure
    """
    client_reference: str
    file: Optional[LocalFile] = None
    file_name: str
    file_size: int
    mime_type: str = "application/octet-stream"
    upload_session_id: str
    multipart_upload_id: Optional[str] = None
    part_size: int = 0
    total_parts: int = 0
    completed_parts: Dict[int, str] = Field(default_factory=dict)
    status: ChunkedStatus = ChunkedStatus.PENDING
    progress: int = 0
    error: Optional[str] = None
    error_code: Optional[str] = None
    error_status: Optional[int] = None
    updated_at: datetime = Field(default_factory=datetime.utcnow)

# API bodies

class AddFilesRequest(BaseModel):
    paths: List[str]

class EntryUpdateRequest(BaseModel):
    title: Optional[str] = None
    resolved_filename: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

class CategoryRequest(BaseModel):
    category_id: Optional[str] = None

class MetadataRequest(BaseModel):
    key: str
    value: Any = None

class ReattachRequest(BaseModel):
    path: str

class BatchSnapshot(BaseModel):
    """Everything a UI needs to render the batch."""
    entries: List[UploadEntry]
    context: BatchContext
    batch_status: BatchStatus
    can_finalize: bool
    warnings: List[str]
    finalize_label: str
