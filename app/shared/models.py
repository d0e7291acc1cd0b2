"""
Shared Models Module

This module contains shared enums used across the upload pipeline.

Features:
- Entry status enum
- Batch status enum
- Chunked session status enum
- Upload type and error stage enums

Author: Snapped Development Team
"""

from enum import Enum

class EntryStatus(str, Enum):
    """
    Per-file upload status.

    Attributes:
        SELECTED: Admitted, waiting for a transfer slot
        UPLOADING: Bytes on the wire
        UPLOADED: Backend acknowledged the transfer
        FINALIZING: Part of an outstanding finalize call
        FINALIZED: Asset record created
        FAILED: Upload or finalize failed
    """
    SELECTED = "selected"
    UPLOADING = "uploading"
    UPLOADED = "uploaded"
    FINALIZING = "finalizing"
    FINALIZED = "finalized"
    FAILED = "failed"

class BatchStatus(str, Enum):
    """Whole-batch status derived from the entry list."""
    IDLE = "idle"
    UPLOADING = "uploading"
    READY = "ready"
    FINALIZING = "finalizing"
    PARTIAL_SUCCESS = "partial_success"
    COMPLETE = "complete"

class ChunkedStatus(str, Enum):
    """
    Multipart session status.

    Attributes:
        PENDING: Recovered from storage, waiting for a file
        INITIATING: Multipart upload being opened
        UPLOADING: Parts in flight
        COMPLETING: Completion requested
        COMPLETED: Backend acknowledged completion
        FAILED: Terminal failure
        CANCELLED: Cancelled by the user
    """
    PENDING = "pending"
    INITIATING = "initiating"
    UPLOADING = "uploading"
    COMPLETING = "completing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ChunkedStatus.COMPLETED, ChunkedStatus.FAILED, ChunkedStatus.CANCELLED)

class UploadType(str, Enum):
    DIRECT = "direct"
    CHUNKED = "chunked"

class ErrorStage(str, Enum):
    UPLOAD = "upload"
    FINALIZE = "finalize"
