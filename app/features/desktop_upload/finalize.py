"""
Finalize Orchestrator Module

This module turns uploaded entries into asset records: it builds the
manifest, submits it in one backend call and reconciles the per-file
results back into the registry. It also owns the auto-close timer that
dismisses a fully successful batch.

Features:
- Manifest construction with effective metadata
- Optimistic finalizing state
- Two-tier result matching
- Whole-call failure fan-out
- Randomized auto-close

Data Model:
- ManifestItem per uploaded entry
- FinalizeResult per backend item

Dependencies:
- asyncio for the auto-close timer
- DamClient for the finalize call
- logging for tracking

Author: Snapped Development Team
"""

import asyncio
import inspect
import logging
import random
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, Union

from app.shared.config import AUTO_CLOSE_MAX_DELAY, AUTO_CLOSE_MIN_DELAY
from app.shared.models import EntryStatus, ErrorStage
from .constants import ERROR_FINALIZE_FAILED, MSG_NO_FINALIZE_RESULT
from .errors import FinalizeNotAllowed, finalize_result_error, normalize_upload_error
from .models import FinalizeResult, ManifestItem, UploadEntry, UploadError
from .registry import FileRegistry, active_entries, can_finalize
from .transfer import derive_upload_key

logger = logging.getLogger(__name__)

def _when_finalizing(patch):
    return lambda entry: patch if entry.status == EntryStatus.FINALIZING else None

def _to_finalizing(entry: UploadEntry):
    if entry.status != EntryStatus.UPLOADED:
        return None
    return {"status": EntryStatus.FINALIZING, "error": None}

class FinalizeOrchestrator:
    """
    Batch finalize.

    Never retries on its own; failed entries come back through the
    coordinator's retry-finalize path.
    """

    def __init__(self, registry: FileRegistry, client, auto_close: Optional["AutoCloseTimer"] = None):
        self.registry = registry
        self.client = client
        self.auto_close = auto_close

    def build_manifest(self) -> List[Tuple[UploadEntry, ManifestItem]]:
        """One manifest item per uploaded entry, paired with its entry."""
        context = self.registry.context
        manifest = []
        for entry in active_entries(self.registry.entries):
            if entry.status != EntryStatus.UPLOADED:
                continue
            upload_key = entry.upload_key or derive_upload_key(entry.upload_session_id)
            manifest.append((entry, ManifestItem(
                upload_key=upload_key,
                expected_size=entry.file.size,
                category_id=context.selected_category,
                metadata=self.registry.effective_metadata(entry),
                title=entry.title,
                resolved_filename=entry.resolved_filename,
            )))
        return manifest

    async def finalize(self) -> List[FinalizeResult]:
        """
        Finalize every uploaded entry.

        Returns:
            List[FinalizeResult]: backend results, empty when the call failed

        Raises:
            FinalizeNotAllowed: when the batch is not ready
        """
        if not can_finalize(self.registry.entries, self.registry.context):
            raise FinalizeNotAllowed()

        manifest = self.build_manifest()
        self.registry.update_many({entry.client_id: _to_finalizing for entry, _ in manifest})
        logger.info(f"Finalizing {len(manifest)} upload(s)")

        try:
            results = await self.client.finalize([item for _, item in manifest])
        except Exception as e:
            error = normalize_upload_error(e, ErrorStage.FINALIZE)
            logger.error(f"Finalize call failed for the whole batch: {error.code} {error.message}")
            self.registry.update_many({
                entry.client_id: _when_finalizing({"status": EntryStatus.FAILED, "error": error})
                for entry, _ in manifest
            })
            self._evaluate_auto_close()
            return []

        self.reconcile(manifest, results)
        self._evaluate_auto_close()
        return results

    def reconcile(
        self, manifest: List[Tuple[UploadEntry, ManifestItem]], results: List[FinalizeResult]
    ) -> Dict[str, UploadEntry]:
        """
        Apply finalize results to the manifest's entries.

        Results are matched by upload key, falling back to the key derived
        from the entry's session id.
        """
        by_key: Dict[str, FinalizeResult] = {}
        for result in results:
            if result.upload_key and result.upload_key not in by_key:
                by_key[result.upload_key] = result

        patches = {}
        finalized = failed = 0
        for entry, item in manifest:
            result = by_key.get(item.upload_key)
            if result is None and entry.upload_session_id:
                result = by_key.get(derive_upload_key(entry.upload_session_id))

            if result is None:
                error = UploadError(
                    stage=ErrorStage.FINALIZE, code=ERROR_FINALIZE_FAILED, message=MSG_NO_FINALIZE_RESULT,
                    category="pipeline",
                )
                patches[entry.client_id] = _when_finalizing({"status": EntryStatus.FAILED, "error": error})
                failed += 1
            elif result.status == "success":
                patches[entry.client_id] = _when_finalizing({"status": EntryStatus.FINALIZED, "error": None})
                finalized += 1
            else:
                patches[entry.client_id] = _when_finalizing(
                    {"status": EntryStatus.FAILED, "error": finalize_result_error(result)}
                )
                failed += 1

        logger.info(f"Finalize reconciled: {finalized} finalized, {failed} failed")
        return self.registry.update_many(patches)

    def _evaluate_auto_close(self) -> None:
        if self.auto_close is not None:
            self.auto_close.evaluate(self.registry.entries)

CloseCallback = Callable[[], Union[None, Awaitable[None]]]

class AutoCloseTimer:
    """
    Dismisses a successful batch after a short randomized delay.

    Arms once an entry is finalized with nothing failed. Any failed entry
    disarms it for the rest of the batch; ``rearm`` starts a new batch.
    """

    def __init__(
        self,
        on_close: CloseCallback,
        min_delay: float = AUTO_CLOSE_MIN_DELAY,
        max_delay: float = AUTO_CLOSE_MAX_DELAY,
    ):
        self.on_close = on_close
        self.min_delay = min_delay
        self.max_delay = max(min_delay, max_delay)
        self.blocked = False
        self.fired = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def armed(self) -> bool:
        return self._task is not None and not self._task.done()

    def evaluate(self, entries) -> None:
        statuses = [entry.status for entry in active_entries(entries)]
        if EntryStatus.FAILED in statuses:
            if not self.blocked:
                logger.info("Auto-close cancelled, batch has failures")
            self.blocked = True
            self._cancel()
            return
        if self.blocked or self.armed:
            return
        if EntryStatus.FINALIZED in statuses and EntryStatus.FINALIZING not in statuses:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                return
            delay = random.uniform(self.min_delay, self.max_delay)
            self._task = loop.create_task(self._fire(delay))

    async def _fire(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._task = None
        self.fired += 1
        logger.info("Auto-closing finalized batch")
        result = self.on_close()
        if inspect.isawaitable(result):
            await result

    def _cancel(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    def rearm(self) -> None:
        """Start over for a new batch."""
        self._cancel()
        self.blocked = False
