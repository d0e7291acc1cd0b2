"""
Desktop Upload Service - Batch Upload Session

This module wires the upload pipeline together for the desktop agent.
A DesktopUploadSession owns one batch: the file registry, the sequential
upload coordinator, the transfer engine with its chunked upload manager,
and the finalize orchestrator.

Architecture:
-----------
1. FileRegistry holds every entry and the batch context
2. UploadCoordinator reacts to registry changes and starts transfers
3. TransferEngine moves bytes (direct PUT or chunked delegation)
4. ChunkedUploadManager runs multipart sessions in the background
5. FinalizeOrchestrator submits the manifest and reconciles results

Features:
--------
1. File Admission:
   - Local paths are stat'ed into entries
   - Default titles and filenames derived from the file name

2. Batch Editing:
   - Titles, filenames and metadata overrides
   - Category and batch metadata defaults

3. Recovery:
   - Interrupted chunked uploads are rehydrated on start
   - A file of the same size can be reattached to resume

Dependencies:
-----------
- DamClient: DAM backend calls
- UploadStateDB: optional MongoDB persistence
- asyncio: background transfers

Author: Snapped Development Team
"""

import logging
from typing import List, Optional

from app.shared.config import AUTO_CLOSE_MAX_DELAY, AUTO_CLOSE_MIN_DELAY, MAX_CONCURRENT_TRANSFERS
from app.shared.dam_client import DamClient
from app.shared.models import ChunkedStatus
from .chunked_manager import ChunkedUploadManager
from .coordinator import UploadCoordinator
from .errors import ChunkedUploadError
from .finalize import AutoCloseTimer, FinalizeOrchestrator
from .models import BatchSnapshot, ChunkedUpload, EntryUpdateRequest, FinalizeResult, LocalFile, UploadEntry
from .registry import FileRegistry
from .transfer import TransferEngine

logger = logging.getLogger(__name__)

class DesktopUploadSession:
    """
    One upload batch and the components that drive it.

    Attributes:
        registry: Batch state
        chunked: Chunked upload manager
        engine: Transfer engine
        coordinator: Transfer scheduler
        auto_close: Auto-close timer
        finalizer: Finalize orchestrator
        auto_closed (int): Number of batches dismissed by auto-close
    """

    def __init__(
        self,
        client=None,
        state_db=None,
        max_concurrent: int = MAX_CONCURRENT_TRANSFERS,
        auto_close_min_delay: float = AUTO_CLOSE_MIN_DELAY,
        auto_close_max_delay: float = AUTO_CLOSE_MAX_DELAY,
        chunked: Optional[ChunkedUploadManager] = None,
    ):
        client = client or DamClient()
        self.client = client
        self.registry = FileRegistry()
        self.chunked = chunked or ChunkedUploadManager(client, state_db=state_db)
        self.engine = TransferEngine(client, self.chunked)
        self.coordinator = UploadCoordinator(self.registry, self.engine, self.chunked, max_concurrent)
        self.auto_close = AutoCloseTimer(self._auto_close, auto_close_min_delay, auto_close_max_delay)
        self.finalizer = FinalizeOrchestrator(self.registry, client, self.auto_close)
        self.auto_closed = 0
        self.registry.subscribe(lambda registry: self.auto_close.evaluate(registry.entries))

    async def start(self) -> int:
        """Rehydrate interrupted chunked uploads, returns how many are recoverable."""
        return await self.chunked.rehydrate()

    async def shutdown(self) -> None:
        await self.chunked.shutdown()

    def snapshot(self) -> BatchSnapshot:
        return self.registry.snapshot()

    def add_paths(self, paths: List[str]) -> List[UploadEntry]:
        """
        Admit local files.

        Raises:
            FileNotFoundError: when any path is not a readable file, nothing
                is admitted in that case
        """
        files = [LocalFile.from_path(path) for path in paths]
        return self.registry.add_files(files)

    def update_entry(self, client_id: str, request: EntryUpdateRequest) -> UploadEntry:
        entry = self.registry.require(client_id)
        if request.title is not None:
            entry = self.registry.set_title(client_id, request.title)
        if request.resolved_filename is not None:
            entry = self.registry.set_resolved_filename(client_id, request.resolved_filename)
        for key, value in (request.metadata or {}).items():
            entry = self.registry.override_metadata(client_id, key, value)
        return entry

    def clear_override(self, client_id: str, key: str) -> UploadEntry:
        return self.registry.clear_override(client_id, key)

    async def remove(self, client_id: str) -> Optional[UploadEntry]:
        return await self.coordinator.remove(client_id)

    def retry(self, client_id: str) -> UploadEntry:
        return self.coordinator.retry(client_id)

    def set_category(self, category_id: Optional[str]):
        return self.registry.set_category(category_id)

    def set_metadata(self, key: str, value):
        return self.registry.set_global_metadata(key, value)

    async def finalize(self) -> List[FinalizeResult]:
        return await self.finalizer.finalize()

    async def reset(self) -> None:
        await self.coordinator.reset()
        self.auto_close.rearm()
        logger.info("Upload batch reset")

    async def _auto_close(self) -> None:
        self.auto_closed += 1
        await self.reset()

    def recoverable(self) -> List[ChunkedUpload]:
        return self.chunked.pending_recoveries()

    def reattach(self, client_reference: str, path: str) -> UploadEntry:
        """
        Attach a local file to an interrupted chunked upload.

        The entry joins the batch as selected and resumes when the
        coordinator gives it the transfer slot.

        Raises:
            ChunkedUploadError: unknown upload or size mismatch
            FileNotFoundError: path is not a readable file
        """
        record = self.chunked.get(client_reference)
        if record is None or record.status != ChunkedStatus.PENDING:
            raise ChunkedUploadError("No interrupted upload to resume.", retryable=False)
        local_file = LocalFile.from_path(path)
        if local_file.size != record.file_size:
            raise ChunkedUploadError(
                "Selected file does not match the interrupted upload.", category="validation", retryable=False
            )
        if any(entry.recovered_ref == client_reference for entry in self.registry.entries):
            raise ChunkedUploadError("This upload is already attached to the batch.", retryable=False)
        return self.registry.add_recovered(local_file, client_reference)
