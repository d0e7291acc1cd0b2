"""
Desktop Upload API Routes - Batch Upload Endpoints

This module exposes the desktop agent's upload batch over HTTP so a
desktop UI can add files, follow progress, edit titles and metadata,
retry failures and finalize the batch.

Features:
--------
1. Batch Management:
   - Admit local files by path
   - Batch snapshot with derived status and warnings
   - Remove entries and reset the batch

2. Editing:
   - Title, filename and metadata overrides
   - Category and batch metadata defaults

3. Recovery:
   - Retry upload or finalize per entry
   - Resume interrupted chunked uploads

Security:
--------
- Paths must point at readable regular files
- Pipeline errors are returned as safe messages only

Dependencies:
-----------
- FastAPI: Web framework and routing
- Pydantic: Request/response models
- DesktopUploadSession: upload pipeline

Author: Snapped Development Team
"""

from fastapi import APIRouter, HTTPException, Depends
from typing import List
import logging

from app.shared.database import upload_state_collection
from .coordinator import InvalidTransition
from .desktop_upload import DesktopUploadSession
from .errors import EntryNotFound, FinalizeNotAllowed, UploadPipelineError
from .models import (
    AddFilesRequest,
    BatchSnapshot,
    CategoryRequest,
    ChunkedUpload,
    EntryUpdateRequest,
    MetadataRequest,
    ReattachRequest,
    UploadEntry,
)
from .upload_state_db import UploadStateDB

router = APIRouter(prefix="/api/desktop-upload")
logger = logging.getLogger(__name__)

upload_session = DesktopUploadSession(
    state_db=UploadStateDB() if upload_state_collection is not None else None
)

def get_upload_session() -> DesktopUploadSession:
    """Dependency returning the agent's upload session."""
    return upload_session

def _not_found(client_id: str) -> HTTPException:
    return HTTPException(status_code=404, detail=f"Upload {client_id} not found")

@router.post("/files", response_model=List[UploadEntry])
async def add_files(
    request: AddFilesRequest,
    session: DesktopUploadSession = Depends(get_upload_session)
):
    """
    Admit local files to the batch.

    Raises:
        HTTPException: 400 when a path is not a readable file
    """
    if not request.paths:
        raise HTTPException(status_code=400, detail="No files selected")
    try:
        return session.add_paths(request.paths)
    except (FileNotFoundError, PermissionError) as e:
        logger.warning(f"Rejected file selection: {str(e)}")
        raise HTTPException(status_code=400, detail=f"Not a readable file: {e}")

@router.get("/batch", response_model=BatchSnapshot)
async def get_batch(session: DesktopUploadSession = Depends(get_upload_session)):
    """Current entries, context and derived batch state."""
    return session.snapshot()

@router.patch("/files/{client_id}", response_model=UploadEntry)
async def update_file(
    client_id: str,
    request: EntryUpdateRequest,
    session: DesktopUploadSession = Depends(get_upload_session)
):
    try:
        return session.update_entry(client_id, request)
    except EntryNotFound:
        raise _not_found(client_id)

@router.delete("/files/{client_id}/metadata/{key}", response_model=UploadEntry)
async def clear_metadata_override(
    client_id: str,
    key: str,
    session: DesktopUploadSession = Depends(get_upload_session)
):
    try:
        return session.clear_override(client_id, key)
    except EntryNotFound:
        raise _not_found(client_id)

@router.delete("/files/{client_id}")
async def remove_file(client_id: str, session: DesktopUploadSession = Depends(get_upload_session)):
    """Remove an entry, cancelling its transfer if one is running."""
    removed = await session.remove(client_id)
    if removed is None:
        raise _not_found(client_id)
    return {"status": "success", "client_id": client_id}

@router.post("/files/{client_id}/retry", response_model=UploadEntry)
async def retry_file(client_id: str, session: DesktopUploadSession = Depends(get_upload_session)):
    """
    Retry a failed entry.

    Upload failures transfer the bytes again, finalize failures only
    repeat finalize.
    """
    try:
        return session.retry(client_id)
    except EntryNotFound:
        raise _not_found(client_id)
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))

@router.put("/category")
async def set_category(request: CategoryRequest, session: DesktopUploadSession = Depends(get_upload_session)):
    return session.set_category(request.category_id)

@router.put("/metadata")
async def set_metadata(request: MetadataRequest, session: DesktopUploadSession = Depends(get_upload_session)):
    return session.set_metadata(request.key, request.value)

@router.post("/finalize", response_model=BatchSnapshot)
async def finalize_batch(session: DesktopUploadSession = Depends(get_upload_session)):
    """
    Finalize every uploaded entry.

    Per-file failures are reported on the entries; 409 when the batch is
    not ready to finalize.
    """
    try:
        await session.finalize()
    except FinalizeNotAllowed as e:
        raise HTTPException(status_code=409, detail=e.message)
    return session.snapshot()

@router.post("/reset")
async def reset_batch(session: DesktopUploadSession = Depends(get_upload_session)):
    await session.reset()
    return {"status": "success"}

@router.get("/recoverable", response_model=List[ChunkedUpload])
async def list_recoverable(session: DesktopUploadSession = Depends(get_upload_session)):
    """Interrupted chunked uploads waiting for their file."""
    return session.recoverable()

@router.post("/recoverable/{client_reference}", response_model=UploadEntry)
async def reattach_file(
    client_reference: str,
    request: ReattachRequest,
    session: DesktopUploadSession = Depends(get_upload_session)
):
    try:
        return session.reattach(client_reference, request.path)
    except (FileNotFoundError, PermissionError) as e:
        raise HTTPException(status_code=400, detail=f"Not a readable file: {e}")
    except UploadPipelineError as e:
        raise HTTPException(status_code=409, detail=e.message)
