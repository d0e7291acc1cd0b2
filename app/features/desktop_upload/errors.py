"""
Desktop Upload Errors Module

This module defines the upload pipeline exception hierarchy and the
helpers that turn backend responses and transport failures into safe,
user-facing errors.

Features:
- Exception hierarchy
- Failed response classification
- Pre-signed URL expiry detection
- Error normalization

Data Model:
- Error codes and categories
- Normalized UploadError

Security:
- HTML bodies are never parsed or surfaced
- Excerpts are length-bounded

Dependencies:
- aiohttp for transport exception types
- json for body parsing
- logging for tracking

Author: Snapped Development Team
"""

import asyncio
import json
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from urllib.parse import parse_qs, urlparse

import aiohttp

from app.shared.models import ErrorStage
from .constants import (
    ERROR_FILE_MISSING,
    ERROR_FINALIZE_FAILED,
    ERROR_NETWORK,
    ERROR_PERMISSION_DENIED,
    ERROR_SERVER,
    ERROR_SESSION_EXPIRED,
    ERROR_STORAGE_LIMIT,
    ERROR_UPLOAD_FAILED,
    ERROR_URL_EXPIRED,
    MAX_ERROR_EXCERPT_LENGTH,
    MSG_NETWORK,
    MSG_PERMISSION_DENIED,
    MSG_SERVER_ERROR,
    MSG_SESSION_EXPIRED,
    MSG_STORAGE_LIMIT,
    MSG_UNKNOWN_FINALIZE_STATUS,
    MSG_URL_EXPIRED,
)
from .models import FinalizeResult, UploadError

logger = logging.getLogger(__name__)

_MARKUP = re.compile(r"<\s*[a-zA-Z!/?]")
_S3_EXPIRY_MARKERS = ("ExpiredToken", "RequestTimeTooSkewed", "Request has expired")
URL_EXPIRY_SKEW = timedelta(seconds=5)

class UploadPipelineError(Exception):
    """
    Base class for every failure the upload pipeline reports.

    Attributes:
        message (str): Safe, user-facing message
        code (str): Machine readable code
        http_status (Optional[int]): Backend status when known
        category (str): Error category
        retryable (bool): Whether a retry may succeed
        fields (Optional[Dict]): Field level validation errors
    """

    def __init__(
        self,
        message: str,
        code: str = ERROR_UPLOAD_FAILED,
        http_status: Optional[int] = None,
        category: str = "unknown",
        retryable: bool = True,
        fields: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.http_status = http_status
        self.category = category
        self.retryable = retryable
        self.fields = fields

class InitiateError(UploadPipelineError):
    """Initiate-batch failed or returned an unusable result."""

class TransferError(UploadPipelineError):
    """Byte transfer to storage failed."""

class ChunkedUploadError(UploadPipelineError):
    """A multipart session step failed."""

class FinalizeError(UploadPipelineError):
    """The finalize call failed as a whole."""

class FinalizeNotAllowed(UploadPipelineError):
    """Finalize requested while the batch is not ready."""

    def __init__(self, message: str = "Batch is not ready to finalize."):
        super().__init__(message, code="finalize_not_allowed", category="validation", retryable=False)

class EntryNotFound(KeyError):
    """No entry with the requested client id."""

def classify_status(status: int) -> tuple:
    """(code, category, retryable) for a failed HTTP status."""
    if status in (401, 419):
        return ERROR_SESSION_EXPIRED, "auth", False
    if status == 403:
        return ERROR_PERMISSION_DENIED, "auth", False
    if status in (409, 423):
        return ERROR_UPLOAD_FAILED, "pipeline", True
    if status >= 500:
        return ERROR_SERVER, "network", True
    return ERROR_UPLOAD_FAILED, "validation", False

def _parse_json(body: str) -> Optional[Any]:
    try:
        return json.loads(body)
    except (TypeError, ValueError):
        return None

def response_error(
    error_cls: type,
    phase: str,
    status: int,
    content_type: Optional[str],
    body: Optional[str],
    reason: Optional[str] = None,
) -> UploadPipelineError:
    """
    Build a safe error for a failed backend response.

    Notes:
        - 419 is always the session expiry message
        - text/html bodies are never parsed or shown
        - JSON message/error fields are surfaced verbatim
        - Plain text is only shown when short and free of markup
    """
    code, category, retryable = classify_status(status)
    content_type = (content_type or "").lower()
    body = body or ""

    if status == 419:
        return error_cls(MSG_SESSION_EXPIRED, code=code, http_status=status, category=category, retryable=retryable)

    if "text/html" in content_type:
        return error_cls(
            MSG_SERVER_ERROR.format(status=status),
            code=code,
            http_status=status,
            category=category,
            retryable=retryable,
        )

    data = _parse_json(body) if body.strip()[:1] in ("{", "[") else None
    if isinstance(data, dict):
        if data.get("type") == ERROR_STORAGE_LIMIT or data.get("code") == ERROR_STORAGE_LIMIT:
            return error_cls(
                MSG_STORAGE_LIMIT,
                code=ERROR_STORAGE_LIMIT,
                http_status=status,
                category="validation",
                retryable=False,
            )
        message = data.get("message") or data.get("error")
        if isinstance(message, str) and message:
            fields = data.get("errors") if isinstance(data.get("errors"), dict) else None
            return error_cls(
                message, code=code, http_status=status, category=category, retryable=retryable, fields=fields
            )

    text = body.strip()
    if data is None and text and len(text) < MAX_ERROR_EXCERPT_LENGTH and not _MARKUP.search(text):
        return error_cls(text, code=code, http_status=status, category=category, retryable=retryable)

    suffix = f" {reason}" if reason else ""
    return error_cls(
        f"{phase} failed: {status}{suffix}",
        code=code,
        http_status=status,
        category=category,
        retryable=retryable,
    )

def presigned_url_expired(url: str, now: Optional[datetime] = None) -> bool:
    """
    Check the X-Amz-Date / X-Amz-Expires pair of a pre-signed URL.

    Returns False when the URL carries no signature timing or cannot be parsed.
    """
    try:
        query = parse_qs(urlparse(url).query)
        signed_at = query.get("X-Amz-Date", [None])[0]
        expires = query.get("X-Amz-Expires", [None])[0]
        if not signed_at or not expires:
            return False
        issued = datetime.strptime(signed_at, "%Y%m%dT%H%M%SZ").replace(tzinfo=timezone.utc)
        deadline = issued + timedelta(seconds=int(expires))
    except (ValueError, TypeError):
        return False
    now = now or datetime.now(timezone.utc)
    return now >= deadline - URL_EXPIRY_SKEW

def storage_error(status: int, url: str, body: Optional[str] = None) -> TransferError:
    """Classify a non-2xx response from object storage."""
    body = body or ""
    if status == 403:
        if presigned_url_expired(url) or any(marker in body for marker in _S3_EXPIRY_MARKERS):
            return TransferError(
                MSG_URL_EXPIRED, code=ERROR_URL_EXPIRED, http_status=status, category="storage", retryable=True
            )
        return TransferError(
            MSG_PERMISSION_DENIED, code=ERROR_PERMISSION_DENIED, http_status=status, category="storage", retryable=False
        )
    if status >= 500:
        return TransferError(
            MSG_SERVER_ERROR.format(status=status), code=ERROR_SERVER, http_status=status, category="network"
        )
    return TransferError(
        f"Upload failed: {status}", code=ERROR_UPLOAD_FAILED, http_status=status, category="storage", retryable=False
    )

def network_error(exc: BaseException, error_cls: type = TransferError) -> UploadPipelineError:
    logger.warning(f"Network failure: {exc!r}")
    return error_cls(MSG_NETWORK, code=ERROR_NETWORK, category="network", retryable=True)

def normalize_upload_error(exc: BaseException, stage: ErrorStage) -> UploadError:
    """
    Normalize any exception into the structured error attached to entries.

    Raw transport exceptions are mapped to a generic message, their text is
    only logged.
    """
    if isinstance(exc, UploadPipelineError):
        return UploadError(
            stage=stage,
            code=exc.code,
            message=exc.message,
            category=exc.category,
            http_status=exc.http_status,
            retryable=exc.retryable,
            fields=exc.fields,
        )
    if isinstance(exc, (aiohttp.ClientError, asyncio.TimeoutError, ConnectionError)):
        logger.warning(f"Transport failure during {stage.value}: {exc!r}")
        return UploadError(stage=stage, code=ERROR_NETWORK, message=MSG_NETWORK, category="network")
    if isinstance(exc, (FileNotFoundError, PermissionError, IsADirectoryError)):
        return UploadError(
            stage=stage,
            code=ERROR_FILE_MISSING,
            message="File is no longer readable on disk.",
            category="validation",
            retryable=False,
        )

    logger.error(f"Unexpected {stage.value} failure: {exc!r}")
    code = ERROR_FINALIZE_FAILED if stage == ErrorStage.FINALIZE else ERROR_UPLOAD_FAILED
    message = "Finalize failed. Please retry." if stage == ErrorStage.FINALIZE else "Upload failed. Please retry."
    return UploadError(stage=stage, code=code, message=message)

def finalize_result_error(result: FinalizeResult) -> UploadError:
    """Error for a finalize result whose status is not 'success'."""
    error = result.error or {}
    if result.status == "failed":
        message = error.get("message") or "Finalize failed."
    else:
        message = MSG_UNKNOWN_FINALIZE_STATUS.format(status=result.status)
    code = error.get("code") or ERROR_FINALIZE_FAILED
    fields = error.get("fields") if isinstance(error.get("fields"), dict) else None
    return UploadError(
        stage=ErrorStage.FINALIZE,
        code=str(code),
        message=str(message),
        category="validation" if fields else "pipeline",
        retryable=True,
        fields=fields,
    )
