"""
Desktop Upload Constants Module

This module defines constants used throughout the desktop upload
pipeline for storage keys, multipart tuning and user-facing messages.

Features:
- Storage key convention
- Multipart tuning values
- Error codes
- User-facing messages

Dependencies:
- None (pure Python)

Author: Snapped Development Team
"""

# Storage key the backend assigns to a finished transfer
UPLOAD_KEY_TEMPLATE = "temp/uploads/{session_id}/original"

# Multipart tuning
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024  # default part size (10MB) when the backend omits one
MAX_PARALLEL_PARTS = 3  # parts in flight per chunked upload
PART_MAX_ATTEMPTS = 3  # attempts per part before the upload fails
PART_RETRY_BASE_DELAY = 1.0  # seconds, doubled on every attempt
ACTIVITY_UPDATE_INTERVAL = 10.0  # seconds between session heartbeats
PERSIST_PROGRESS_STEP = 10  # persist chunked state every N percent

# Error excerpts longer than this are never shown
MAX_ERROR_EXCERPT_LENGTH = 200

# Error codes
ERROR_UPLOAD_FAILED = "upload_failed"
ERROR_SESSION_MISSING = "session_missing"
ERROR_OLD_UPLOAD_EXPIRED = "old_upload_expired"
ERROR_NETWORK = "network"
ERROR_FINALIZE_FAILED = "finalize_failed"
ERROR_COMPLETION = "completion_error"
ERROR_SESSION_EXPIRED = "session_expired"
ERROR_URL_EXPIRED = "url_expired"
ERROR_PERMISSION_DENIED = "permission_denied"
ERROR_SERVER = "server_error"
ERROR_STORAGE_LIMIT = "storage_limit_exceeded"
ERROR_UPLOAD_CANCELLED = "upload_cancelled"
ERROR_FILE_MISSING = "file_missing"

# User-facing messages
MSG_SESSION_EXPIRED = "Session expired. Please refresh the page and try again."
MSG_SERVER_ERROR = "Server error ({status}). Please refresh the page and try again."
MSG_SESSION_MISSING = "Upload session was interrupted. Please retry the upload."
MSG_COMPLETION_ERROR = "Upload completed without a session reference. Please retry the upload."
MSG_OLD_UPLOAD_EXPIRED = "Previous upload session expired. Please upload the file again."
MSG_NO_FINALIZE_RESULT = "Finalize did not return a result for this file."
MSG_UNKNOWN_FINALIZE_STATUS = "Finalize returned unknown status: {status}"
MSG_STORAGE_LIMIT = "Storage limit exceeded. Add more storage to continue."
MSG_UPLOAD_CANCELLED = "Upload was cancelled."
MSG_NETWORK = "Network error. Check your connection and try again."
MSG_URL_EXPIRED = "Upload link expired. Please retry the upload."
MSG_PERMISSION_DENIED = "Storage rejected the upload. Please retry the upload."
MSG_CATEGORY_REQUIRED = "Category is required before finalizing assets."

# Finalize button labels
LABEL_FINALIZING = "Finalizing uploads…"
LABEL_UPLOADING = "Uploading…"
LABEL_FINALIZE = "Finalize uploads"
LABEL_SELECT_CATEGORY = "Select category"
