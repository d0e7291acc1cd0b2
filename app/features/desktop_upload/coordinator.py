"""
Upload Coordinator Module

This module schedules transfers for the batch. It watches the registry
and, whenever nothing is uploading, starts the oldest selected entry.

Features:
- Level-triggered single-flight scheduling
- Progress and outcome writes to the registry
- Chunked upload status merging
- Retry upload / retry finalize
- Cancellation on removal and reset

Data Model:
- clientId to chunked reference cross-reference
- In-flight transfer tasks

Dependencies:
- asyncio for transfer tasks
- FileRegistry, TransferEngine, ChunkedUploadManager
- logging for tracking

Author: Snapped Development Team
"""

import asyncio
import logging
from typing import Dict, Optional

from app.shared.config import MAX_CONCURRENT_TRANSFERS
from app.shared.models import ChunkedStatus, EntryStatus, ErrorStage, UploadType
from .chunked_manager import ChunkedUploadManager
from .constants import (
    ERROR_COMPLETION,
    ERROR_SESSION_MISSING,
    ERROR_UPLOAD_CANCELLED,
    ERROR_UPLOAD_FAILED,
    MSG_COMPLETION_ERROR,
    MSG_SESSION_MISSING,
    MSG_UPLOAD_CANCELLED,
)
from .errors import normalize_upload_error
from .models import ChunkedUpload, UploadEntry, UploadError
from .registry import FileRegistry
from .transfer import TransferEngine, derive_upload_key

logger = logging.getLogger(__name__)

class InvalidTransition(ValueError):
    """Requested action does not apply to the entry's current state."""

class CrossReference:
    """Bidirectional clientId <-> chunked reference map."""

    def __init__(self):
        self._by_client: Dict[str, str] = {}
        self._by_ref: Dict[str, str] = {}

    def link(self, client_id: str, ref: str) -> None:
        self.unlink_client(client_id)
        self._by_client[client_id] = ref
        self._by_ref[ref] = client_id

    def ref_for(self, client_id: str) -> Optional[str]:
        return self._by_client.get(client_id)

    def client_for(self, ref: str) -> Optional[str]:
        return self._by_ref.get(ref)

    def unlink_client(self, client_id: str) -> Optional[str]:
        ref = self._by_client.pop(client_id, None)
        if ref is not None:
            self._by_ref.pop(ref, None)
        return ref

    def refs(self):
        return list(self._by_ref)

    def clear(self) -> None:
        self._by_client.clear()
        self._by_ref.clear()

    def __len__(self):
        return len(self._by_client)

def _when_uploading(patch):
    """Patch that only applies while the entry is still uploading."""
    return lambda entry: patch if entry.status == EntryStatus.UPLOADING else None

class UploadCoordinator:
    """
    Sequential transfer scheduler.

    At most ``max_concurrent`` entries (1 unless configured) are uploading
    at any time. The scheduling rule reads the registry on every change and
    is safe to run repeatedly.

    Attributes:
        registry: Batch state
        engine: Transfer engine
        chunked: Chunked upload manager
        xref: clientId to chunked reference map
    """

    def __init__(
        self,
        registry: FileRegistry,
        engine: TransferEngine,
        chunked: ChunkedUploadManager,
        max_concurrent: int = MAX_CONCURRENT_TRANSFERS,
    ):
        self.registry = registry
        self.engine = engine
        self.chunked = chunked
        self.max_concurrent = max(1, max_concurrent)
        self.xref = CrossReference()
        self._tasks: Dict[str, asyncio.Task] = {}
        self._scheduling = False
        self._reschedule = False
        registry.subscribe(self._on_registry_change)
        chunked.subscribe(self._on_chunked_update)

    # Scheduling

    def _on_registry_change(self, registry: FileRegistry) -> None:
        self.schedule()

    def in_flight(self) -> int:
        return sum(1 for entry in self.registry.entries if entry.status == EntryStatus.UPLOADING)

    def schedule(self) -> None:
        """
        Start the oldest selected entries while slots are free.

        Re-entrant calls (the registry notifies while we write) are folded
        into one more pass of the running call.
        """
        if self._scheduling:
            self._reschedule = True
            return
        self._scheduling = True
        try:
            while True:
                self._reschedule = False
                self._schedule_once()
                if not self._reschedule:
                    break
        finally:
            self._scheduling = False

    def _schedule_once(self) -> None:
        free = self.max_concurrent - self.in_flight()
        if free <= 0:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        for entry in self.registry.entries:
            if free <= 0:
                break
            if entry.status != EntryStatus.SELECTED or entry.client_id in self._tasks:
                continue
            started = self.registry.update_entry(
                entry.client_id,
                lambda e: {"status": EntryStatus.UPLOADING, "progress": 0, "error": None}
                if e.status == EntryStatus.SELECTED else None,
            )
            if started is None:
                continue
            self._tasks[entry.client_id] = loop.create_task(self._run_transfer(entry.client_id))
            free -= 1

    # Transfer outcome

    async def _run_transfer(self, client_id: str) -> None:
        entry = self.registry.get(client_id)
        if entry is None or entry.status != EntryStatus.UPLOADING:
            self._release(client_id)
            return
        logger.info(f"Upload started for {entry.file.name} ({client_id})")
        try:
            result = await self.engine.transfer(
                entry,
                category_id=self.registry.context.selected_category,
                on_progress=lambda pct: self._on_progress(client_id, pct),
                on_session=lambda session_id, upload_type: self._on_session(client_id, session_id, upload_type),
                on_delegated=lambda ref: self.xref.link(client_id, ref),
            )
            if result.upload_key:
                self.registry.update_entry(
                    client_id,
                    _when_uploading({
                        "status": EntryStatus.UPLOADED,
                        "progress": 100,
                        "upload_key": result.upload_key,
                        "error": None,
                    }),
                )
                logger.info(f"Upload finished for {entry.file.name} ({client_id})")
        except asyncio.CancelledError:
            logger.info(f"Upload cancelled for {client_id}")
            raise
        except Exception as e:
            error = normalize_upload_error(e, ErrorStage.UPLOAD)
            logger.error(f"Upload failed for {entry.file.name} ({client_id}): {error.code} {error.message}")
            self._fail(client_id, error)
        finally:
            self._release(client_id)

    def _release(self, client_id: str) -> None:
        task = self._tasks.get(client_id)
        if task is not None and task is asyncio.current_task():
            self._tasks.pop(client_id, None)

    def _fail(self, client_id: str, error: UploadError) -> None:
        self.registry.update_entry(
            client_id,
            _when_uploading({"status": EntryStatus.FAILED, "error": error, "upload_key": None}),
        )

    def _on_progress(self, client_id: str, pct: int) -> None:
        pct = max(0, min(100, int(pct)))

        def patch(entry: UploadEntry):
            if entry.status != EntryStatus.UPLOADING or pct <= entry.progress:
                return None
            return {"progress": pct}

        self.registry.update_entry(client_id, patch)

    def _on_session(self, client_id: str, session_id: str, upload_type: UploadType) -> None:
        self.registry.update_entry(
            client_id, _when_uploading({"upload_session_id": session_id, "upload_type": upload_type})
        )

    def _on_chunked_update(self, record: ChunkedUpload) -> None:
        """
        Merge a chunked upload update into the registry.

        Updates for unknown references, removed entries or entries that left
        the uploading state are dropped.
        """
        client_id = self.xref.client_for(record.client_reference)
        if client_id is None:
            return
        entry = self.registry.get(client_id)
        if entry is None:
            self.xref.unlink_client(client_id)
            return
        if entry.status != EntryStatus.UPLOADING:
            return

        if record.status == ChunkedStatus.COMPLETED:
            if not entry.upload_session_id:
                self._fail(client_id, UploadError(
                    stage=ErrorStage.UPLOAD, code=ERROR_SESSION_MISSING, message=MSG_SESSION_MISSING,
                    category="pipeline",
                ))
            elif record.error:
                self._fail(client_id, UploadError(
                    stage=ErrorStage.UPLOAD, code=ERROR_COMPLETION, message=MSG_COMPLETION_ERROR,
                    category="pipeline",
                ))
            else:
                self.registry.update_entry(
                    client_id,
                    _when_uploading({
                        "status": EntryStatus.UPLOADED,
                        "progress": 100,
                        "upload_key": derive_upload_key(entry.upload_session_id),
                        "error": None,
                    }),
                )
                logger.info(f"Chunked upload finished for {entry.file.name} ({client_id})")
        elif record.status == ChunkedStatus.FAILED:
            self._fail(client_id, UploadError(
                stage=ErrorStage.UPLOAD,
                code=record.error_code or ERROR_UPLOAD_FAILED,
                message=record.error or "Upload failed. Please retry.",
                http_status=record.error_status,
            ))
        elif record.status == ChunkedStatus.CANCELLED:
            self._fail(client_id, UploadError(
                stage=ErrorStage.UPLOAD, code=ERROR_UPLOAD_CANCELLED, message=MSG_UPLOAD_CANCELLED,
                category="pipeline",
            ))
        else:
            self._on_progress(client_id, record.progress)

    # User actions

    def retry(self, client_id: str) -> UploadEntry:
        """Retry a failed entry along the path its error stage calls for."""
        entry = self.registry.require(client_id)
        if entry.status != EntryStatus.FAILED:
            raise InvalidTransition(f"Entry {client_id} is {entry.status.value}, only failed entries can be retried")
        if entry.error is not None and entry.error.stage == ErrorStage.FINALIZE:
            return self.retry_finalize(client_id)
        return self.retry_upload(client_id)

    def retry_upload(self, client_id: str) -> UploadEntry:
        """Back to selected, the bytes are transferred again."""
        self.registry.require(client_id)
        ref = self.xref.unlink_client(client_id)
        if ref is not None:
            self.chunked.forget(ref)
        updated = self.registry.update_entry(client_id, {
            "status": EntryStatus.SELECTED,
            "progress": 0,
            "upload_key": None,
            "upload_session_id": None,
            "upload_type": None,
            "error": None,
            "recovered_ref": None,
        })
        logger.info(f"Retrying upload for {client_id}")
        return updated

    def retry_finalize(self, client_id: str) -> UploadEntry:
        """Back to uploaded, the stored bytes are reused."""
        entry = self.registry.require(client_id)
        upload_key = entry.upload_key or (
            derive_upload_key(entry.upload_session_id) if entry.upload_session_id else None
        )
        if not upload_key:
            raise InvalidTransition(f"Entry {client_id} has no stored upload to finalize")
        logger.info(f"Retrying finalize for {client_id}")
        return self.registry.update_entry(
            client_id, {"status": EntryStatus.UPLOADED, "upload_key": upload_key, "error": None}
        )

    async def remove(self, client_id: str) -> Optional[UploadEntry]:
        """
        Remove an entry and cancel whatever transfer it has running.

        The entry leaves the registry first, so callbacks still in flight
        find nothing to update.
        """
        removed = self.registry.remove_entry(client_id)
        task = self._tasks.pop(client_id, None)
        ref = self.xref.unlink_client(client_id)
        if task is not None:
            task.cancel()
        if ref is not None:
            await self.chunked.cancel(ref, purge=True)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        if removed is not None:
            logger.info(f"Removed {removed.file.name} ({client_id}) from the batch")
        return removed

    async def reset(self) -> None:
        """Cancel everything and empty the batch."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        refs = self.xref.refs()
        self.xref.clear()
        self.registry.reset()
        for task in tasks:
            task.cancel()
        for ref in refs:
            await self.chunked.cancel(ref, purge=True)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
