"""
Chunked Upload Manager Module

This module owns multipart upload sessions for large files. Each session
runs as its own asyncio task and reports status changes to subscribers.

Features:
- Multipart init, part signing and completion
- Parallel part uploads with per-part retry
- Resume from parts the backend already holds
- Session heartbeat
- Cancellation with best-effort backend cleanup
- Persistence and recovery across restarts

Data Model:
- ChunkedUpload records keyed by client reference
- Part number to ETag maps

Dependencies:
- asyncio for tasks and concurrency limits
- DamClient for backend calls
- UploadStateDB for persistence
- logging for tracking

Author: Snapped Development Team
"""

import asyncio
import logging
import math
import uuid
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set

from app.shared.models import ChunkedStatus
from .constants import (
    ACTIVITY_UPDATE_INTERVAL,
    ERROR_OLD_UPLOAD_EXPIRED,
    ERROR_UPLOAD_FAILED,
    MAX_PARALLEL_PARTS,
    MSG_OLD_UPLOAD_EXPIRED,
    MULTIPART_CHUNK_SIZE,
    PART_MAX_ATTEMPTS,
    PART_RETRY_BASE_DELAY,
    PERSIST_PROGRESS_STEP,
)
from .errors import ChunkedUploadError, UploadPipelineError
from .models import ChunkedUpload, LocalFile

logger = logging.getLogger(__name__)

Listener = Callable[[ChunkedUpload], None]

ACTIVE_STATUSES = (ChunkedStatus.INITIATING, ChunkedStatus.UPLOADING)

def _percent(done: int, total: int) -> int:
    if total <= 0:
        return 0
    return max(0, min(100, (done * 100) // total))

class ChunkedUploadManager:
    """
    Multipart upload sessions.

    Terminal statuses (completed, failed, cancelled) are final: once a
    record reaches one, later updates for it are dropped.

    Attributes:
        client: DAM backend client
        state_db: Optional persistence for recovery
        max_parallel_parts: Parts in flight per upload
        part_attempts: Attempts per part
        retry_base_delay: First retry delay in seconds, doubled per attempt
        heartbeat_interval: Seconds between activity pings
    """

    def __init__(
        self,
        client,
        state_db=None,
        max_parallel_parts: int = MAX_PARALLEL_PARTS,
        part_attempts: int = PART_MAX_ATTEMPTS,
        retry_base_delay: float = PART_RETRY_BASE_DELAY,
        heartbeat_interval: float = ACTIVITY_UPDATE_INTERVAL,
    ):
        self.client = client
        self.state_db = state_db
        self.max_parallel_parts = max_parallel_parts
        self.part_attempts = part_attempts
        self.retry_base_delay = retry_base_delay
        self.heartbeat_interval = heartbeat_interval
        self._uploads: Dict[str, ChunkedUpload] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._listeners: List[Listener] = []
        self._persisted_progress: Dict[str, int] = {}
        self._background: Set[asyncio.Task] = set()

    # Read access

    def get(self, ref: str) -> Optional[ChunkedUpload]:
        record = self._uploads.get(ref)
        return record.model_copy() if record else None

    def pending_recoveries(self) -> List[ChunkedUpload]:
        """Rehydrated uploads waiting for their file to be reattached."""
        return [
            record.model_copy()
            for record in self._uploads.values()
            if record.status == ChunkedStatus.PENDING and record.file is None
        ]

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # State changes

    def _notify(self, record: ChunkedUpload) -> None:
        for listener in list(self._listeners):
            try:
                listener(record.model_copy())
            except Exception:
                logger.exception(f"Chunked upload listener failed for {record.client_reference}")

    def _update(self, ref: str, **changes) -> Optional[ChunkedUpload]:
        record = self._uploads.get(ref)
        if record is None or record.status.is_terminal:
            return None
        if "progress" in changes:
            changes["progress"] = max(record.progress, changes["progress"])
        changes["updated_at"] = datetime.utcnow()
        updated = record.model_copy(update=changes)
        self._uploads[ref] = updated
        self._persist(record, updated)
        self._notify(updated)
        return updated

    def _fail(self, ref: str, error: UploadPipelineError) -> None:
        logger.error(f"Chunked upload {ref} failed: {error.message}")
        self._update(
            ref,
            status=ChunkedStatus.FAILED,
            error=error.message,
            error_code=error.code,
            error_status=error.http_status,
        )

    # Persistence

    def _persist(self, before: ChunkedUpload, after: ChunkedUpload) -> None:
        if self.state_db is None:
            return
        ref = after.client_reference
        if after.status in (ChunkedStatus.COMPLETED, ChunkedStatus.CANCELLED):
            self._persisted_progress.pop(ref, None)
            self._spawn_background(self.state_db.delete(ref))
            return
        last = self._persisted_progress.get(ref)
        if (
            before.status != after.status
            or last is None
            or after.progress - last >= PERSIST_PROGRESS_STEP
        ):
            self._persisted_progress[ref] = after.progress
            self._spawn_background(self.state_db.save(after))

    def _spawn_background(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)

        def done(t):
            self._background.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.warning(f"Upload state persistence failed: {t.exception()!r}")

        task.add_done_callback(done)

    async def rehydrate(self) -> int:
        """
        Load persisted uploads after a restart.

        Returns:
            int: number of uploads waiting for their file
        """
        if self.state_db is None:
            return 0
        count = 0
        for record in await self.state_db.load_all():
            if record.client_reference in self._uploads or record.status.is_terminal:
                continue
            record = record.model_copy(update={"file": None, "status": ChunkedStatus.PENDING})
            self._uploads[record.client_reference] = record
            self._persisted_progress[record.client_reference] = record.progress
            count += 1
        if count:
            logger.info(f"Rehydrated {count} interrupted chunked upload(s)")
        return count

    # Lifecycle

    def start(self, local_file: LocalFile, upload_session_id: str, part_size: Optional[int] = None) -> str:
        """
        Register and launch a chunked upload.

        Returns:
            str: the manager's correlation reference for this upload
        """
        ref = uuid.uuid4().hex
        record = ChunkedUpload(
            client_reference=ref,
            file=local_file,
            file_name=local_file.name,
            file_size=local_file.size,
            mime_type=local_file.mime_type,
            upload_session_id=upload_session_id,
            part_size=part_size or 0,
            status=ChunkedStatus.INITIATING,
        )
        self._uploads[ref] = record
        self._persist(record.model_copy(update={"status": ChunkedStatus.PENDING}), record)
        self._launch(ref)
        return ref

    def _launch(self, ref: str) -> None:
        self._tasks[ref] = asyncio.get_running_loop().create_task(self._run(ref))

    async def resume(self, ref: str, local_file: LocalFile) -> ChunkedUpload:
        """
        Reattach a file to a rehydrated upload and continue it.

        Raises:
            ChunkedUploadError: unknown upload, size mismatch, or the
                backend no longer accepts the session
        """
        record = self._uploads.get(ref)
        if record is None or record.status != ChunkedStatus.PENDING:
            raise ChunkedUploadError("No interrupted upload to resume.", retryable=False)
        if local_file.size != record.file_size:
            raise ChunkedUploadError(
                "Selected file does not match the interrupted upload.", category="validation", retryable=False
            )

        state = await self.client.fetch_resume(record.upload_session_id)
        if not state.can_resume or state.is_expired:
            error = ChunkedUploadError(
                MSG_OLD_UPLOAD_EXPIRED, code=ERROR_OLD_UPLOAD_EXPIRED, category="pipeline", retryable=False
            )
            self._fail(ref, error)
            raise error

        if state.upload_session_status == ChunkedStatus.COMPLETED.value:
            return self._update(ref, file=local_file, status=ChunkedStatus.COMPLETED, progress=100)

        completed = {**record.completed_parts, **state.completed_parts}
        updated = self._update(
            ref,
            file=local_file,
            status=ChunkedStatus.UPLOADING,
            part_size=state.part_size or record.part_size,
            total_parts=state.total_parts or record.total_parts,
            completed_parts=completed,
        )
        self._launch(ref)
        logger.info(f"Resumed chunked upload {ref} with {len(completed)} part(s) already stored")
        return updated

    async def cancel(self, ref: str, purge: bool = False) -> bool:
        """
        Cancel an upload.

        Aborting the multipart upload and cancelling the backend session are
        best effort. With purge the record is forgotten entirely.

        Returns:
            bool: whether the reference was known
        """
        record = self._uploads.get(ref)
        if record is None:
            return False

        was_active = not record.status.is_terminal
        if was_active:
            self._update(ref, status=ChunkedStatus.CANCELLED)

        task = self._tasks.pop(ref, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        if was_active:
            if record.multipart_upload_id:
                try:
                    await self.client.multipart_abort(record.upload_session_id)
                except UploadPipelineError as e:
                    logger.warning(f"Multipart abort for {ref} failed: {e.message}")
            try:
                await self.client.cancel_session(record.upload_session_id)
            except UploadPipelineError as e:
                logger.warning(f"Session cancel for {ref} failed: {e.message}")
            logger.info(f"Chunked upload {ref} cancelled")

        if purge:
            self._uploads.pop(ref, None)
            self._persisted_progress.pop(ref, None)
            if self.state_db is not None:
                self._spawn_background(self.state_db.delete(ref))
        return True

    def forget(self, ref: str) -> None:
        """Drop a terminal record that nobody tracks any more."""
        record = self._uploads.get(ref)
        if record is not None and record.status.is_terminal:
            self._uploads.pop(ref, None)
            self._persisted_progress.pop(ref, None)
            if self.state_db is not None:
                self._spawn_background(self.state_db.delete(ref))

    async def shutdown(self) -> None:
        """Stop running uploads without touching backend sessions so they stay resumable."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # Transfer

    async def _run(self, ref: str) -> None:
        heartbeat = asyncio.ensure_future(self._heartbeat(ref))
        try:
            await self._upload(ref)
        except UploadPipelineError as e:
            self._fail(ref, e)
        except (OSError, ValueError) as e:
            self._fail(ref, ChunkedUploadError(f"Chunked upload failed: {e}", code=ERROR_UPLOAD_FAILED))
        except Exception:
            logger.exception(f"Chunked upload {ref} crashed")
            self._fail(ref, ChunkedUploadError("Chunked upload failed.", code=ERROR_UPLOAD_FAILED))
        finally:
            heartbeat.cancel()
            if self._tasks.get(ref) is asyncio.current_task():
                self._tasks.pop(ref, None)

    async def _upload(self, ref: str) -> None:
        record = self._uploads[ref]
        session_id = record.upload_session_id

        if not record.multipart_upload_id:
            init = await self.client.multipart_init(session_id)
            multipart_upload_id = init.get("multipart_upload_id")
            if not multipart_upload_id:
                raise ChunkedUploadError("Multipart init returned no upload id.", category="pipeline")
            part_size = int(init.get("part_size") or record.part_size or MULTIPART_CHUNK_SIZE)
            total_parts = int(init.get("total_parts") or max(1, math.ceil(record.file_size / part_size)))
            record = self._update(
                ref,
                multipart_upload_id=multipart_upload_id,
                part_size=part_size,
                total_parts=total_parts,
                status=ChunkedStatus.UPLOADING,
            )
            if record is None:
                return

            try:
                state = await self.client.fetch_resume(session_id)
                if state.completed_parts:
                    completed = {**record.completed_parts, **state.completed_parts}
                    record = self._update(
                        ref,
                        completed_parts=completed,
                        progress=_percent(len(completed), record.total_parts),
                    )
                    if record is None:
                        return
            except UploadPipelineError as e:
                logger.warning(f"Resume lookup for {ref} failed, uploading every part: {e.message}")

        pending = [n for n in range(1, record.total_parts + 1) if n not in record.completed_parts]
        if pending:
            await self._upload_parts(ref, pending)

        record = self._update(ref, status=ChunkedStatus.COMPLETING)
        if record is None:
            return
        await self.client.multipart_complete(session_id, record.completed_parts)
        self._update(ref, status=ChunkedStatus.COMPLETED, progress=100)
        logger.info(f"Chunked upload {ref} completed ({record.total_parts} parts)")

    async def _upload_parts(self, ref: str, part_numbers: List[int]) -> None:
        semaphore = asyncio.Semaphore(self.max_parallel_parts)

        async def run_part(part_number: int):
            async with semaphore:
                etag = await self._upload_part(ref, part_number)
            self._part_done(ref, part_number, etag)

        tasks = [asyncio.ensure_future(run_part(n)) for n in part_numbers]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _upload_part(self, ref: str, part_number: int) -> str:
        record = self._uploads[ref]
        offset = (part_number - 1) * record.part_size
        length = min(record.part_size, record.file_size - offset)

        for attempt in range(self.part_attempts):
            try:
                url = await self.client.sign_part(record.upload_session_id, part_number)
                return await self.client.put_part(url, record.file, offset, length)
            except UploadPipelineError as e:
                if not e.retryable or attempt == self.part_attempts - 1:
                    raise
                delay = self.retry_base_delay * (2 ** attempt)
                logger.warning(
                    f"Part {part_number} of {ref} failed ({e.message}), retry {attempt + 1} in {delay:.1f}s"
                )
                await asyncio.sleep(delay)
        raise ChunkedUploadError(f"Part {part_number} could not be uploaded.")

    def _part_done(self, ref: str, part_number: int, etag: str) -> None:
        record = self._uploads.get(ref)
        if record is None or record.status.is_terminal:
            return
        completed = {**record.completed_parts, part_number: etag}
        self._update(ref, completed_parts=completed, progress=_percent(len(completed), record.total_parts))

    async def _heartbeat(self, ref: str) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            record = self._uploads.get(ref)
            if record is None or record.status.is_terminal:
                return
            if record.status not in ACTIVE_STATUSES:
                continue
            try:
                await self.client.touch_activity(record.upload_session_id)
            except UploadPipelineError as e:
                logger.warning(f"Activity update for {ref} failed: {e.message}")
