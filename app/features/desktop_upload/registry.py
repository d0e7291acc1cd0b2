"""
File Registry Module

This module holds the authoritative list of files in the current upload
batch together with the batch-wide context, and the pure projections
derived from them.

Features:
- Entry admission
- Whole-entry replacement updates
- Change notification
- Title, filename and metadata edits
- Batch status projections

Data Model:
- Immutable entry tuple
- Batch context
- Derived batch status

Dependencies:
- pydantic models
- uuid for client ids
- logging for tracking

Author: Snapped Development Team
"""

import logging
import uuid
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from app.shared.models import BatchStatus, EntryStatus, ErrorStage
from .constants import (
    ERROR_UPLOAD_CANCELLED,
    LABEL_FINALIZE,
    LABEL_FINALIZING,
    LABEL_SELECT_CATEGORY,
    LABEL_UPLOADING,
    MSG_CATEGORY_REQUIRED,
)
from .errors import EntryNotFound
from .models import BatchContext, BatchSnapshot, LocalFile, UploadEntry
from .naming import default_names, normalize_title, resolve_filename, file_extension, default_title, user_filename

logger = logging.getLogger(__name__)

Listener = Callable[["FileRegistry"], None]
Patch = Union[Dict[str, Any], Callable[[UploadEntry], Optional[Dict[str, Any]]]]

# Statuses that carry a storage key
KEYED_STATUSES = (EntryStatus.UPLOADED, EntryStatus.FINALIZING, EntryStatus.FINALIZED)

class FileRegistry:
    """
    Authoritative state of the current batch.

    Every change replaces the entry tuple (and the replaced entries) as a
    whole, so readers can detect changes by identity. Listeners run
    synchronously after each change.

    Attributes:
        entries: Current entries in insertion order
        context: Current batch context
    """

    def __init__(self):
        self._entries: Tuple[UploadEntry, ...] = ()
        self._context = BatchContext()
        self._listeners: List[Listener] = []

    @property
    def entries(self) -> Tuple[UploadEntry, ...]:
        return self._entries

    @property
    def context(self) -> BatchContext:
        return self._context

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener, returns its unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _commit(
        self,
        entries: Optional[Tuple[UploadEntry, ...]] = None,
        context: Optional[BatchContext] = None,
    ) -> None:
        if entries is not None:
            self._entries = entries
        if context is not None:
            self._context = context
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.exception("Registry listener failed")

    def get(self, client_id: str) -> Optional[UploadEntry]:
        for entry in self._entries:
            if entry.client_id == client_id:
                return entry
        return None

    def require(self, client_id: str) -> UploadEntry:
        entry = self.get(client_id)
        if entry is None:
            raise EntryNotFound(client_id)
        return entry

    def add_files(self, files: Iterable[LocalFile]) -> List[UploadEntry]:
        """
        Admit files as new entries in the selected state.

        Returns:
            List[UploadEntry]: the new entries
        """
        added = []
        for local_file in files:
            title, resolved = default_names(local_file.name)
            added.append(
                UploadEntry(
                    client_id=uuid.uuid4().hex,
                    file=local_file,
                    title=title,
                    resolved_filename=resolved,
                )
            )
        if added:
            logger.info(f"Admitted {len(added)} file(s) to the batch")
            self._commit(entries=self._entries + tuple(added))
        return added

    def add_recovered(self, local_file: LocalFile, recovered_ref: str) -> UploadEntry:
        """Admit a file that continues an interrupted chunked upload."""
        title, resolved = default_names(local_file.name)
        entry = UploadEntry(
            client_id=uuid.uuid4().hex,
            file=local_file,
            title=title,
            resolved_filename=resolved,
            recovered_ref=recovered_ref,
        )
        logger.info(f"Admitted {local_file.name} to resume chunked upload {recovered_ref}")
        self._commit(entries=self._entries + (entry,))
        return entry

    def _apply(self, entry: UploadEntry, patch: Dict[str, Any]) -> UploadEntry:
        updated = entry.model_copy(update=patch)
        if updated.status in (EntryStatus.SELECTED, EntryStatus.UPLOADING) and updated.upload_key:
            updated = updated.model_copy(update={"upload_key": None})
        if (
            updated.status == EntryStatus.FAILED
            and updated.error is not None
            and updated.error.stage == ErrorStage.UPLOAD
            and updated.upload_key
        ):
            updated = updated.model_copy(update={"upload_key": None})
        if updated.status in KEYED_STATUSES and not updated.upload_key:
            raise ValueError(f"Entry {entry.client_id} cannot be {updated.status.value} without an upload key")
        return updated

    def update_entry(self, client_id: str, patch: Patch) -> Optional[UploadEntry]:
        """
        Replace one entry.

        Args:
            client_id: Entry to update
            patch: Field dict, or a function of the current entry returning a
                field dict (None skips the update)

        Returns:
            Optional[UploadEntry]: the new entry, or None when the entry no
            longer exists or the patch function declined
        """
        return self.update_many({client_id: patch}).get(client_id)

    def update_many(self, patches: Dict[str, Patch]) -> Dict[str, UploadEntry]:
        """Apply several patches with a single replacement and notification."""
        changed: Dict[str, UploadEntry] = {}
        new_entries = []
        for entry in self._entries:
            patch = patches.get(entry.client_id)
            if patch is not None and callable(patch):
                patch = patch(entry)
            if patch:
                entry = self._apply(entry, patch)
                changed[entry.client_id] = entry
            new_entries.append(entry)
        if changed:
            self._commit(entries=tuple(new_entries))
        return changed

    def remove_entry(self, client_id: str) -> Optional[UploadEntry]:
        removed = self.get(client_id)
        if removed is None:
            return None
        self._commit(entries=tuple(e for e in self._entries if e.client_id != client_id))
        return removed

    def reset(self) -> None:
        """Drop every entry and the batch context."""
        self._commit(entries=(), context=BatchContext())

    # Batch context

    def set_category(self, category_id: Optional[str]) -> BatchContext:
        self._commit(context=self._context.model_copy(update={"selected_category": category_id or None}))
        return self._context

    def set_global_metadata(self, key: str, value: Any) -> BatchContext:
        """Set a batch default, a None value removes the key."""
        defaults = dict(self._context.global_metadata_defaults)
        if value is None:
            defaults.pop(key, None)
        else:
            defaults[key] = value
        self._commit(context=self._context.model_copy(update={"global_metadata_defaults": defaults}))
        return self._context

    # Entry edits

    def override_metadata(self, client_id: str, key: str, value: Any) -> Optional[UploadEntry]:
        self.require(client_id)
        return self.update_entry(
            client_id, lambda e: {"metadata_override": {**e.metadata_override, key: value}}
        )

    def clear_override(self, client_id: str, key: str) -> Optional[UploadEntry]:
        self.require(client_id)

        def patch(entry):
            if key not in entry.metadata_override:
                return None
            return {"metadata_override": {k: v for k, v in entry.metadata_override.items() if k != key}}

        return self.update_entry(client_id, patch) or self.get(client_id)

    def set_title(self, client_id: str, raw_title: str) -> Optional[UploadEntry]:
        """
        Normalize and store a user title.

        The resolved filename follows the title unless the user edited the
        filename directly.
        """
        entry = self.require(client_id)
        title = normalize_title(raw_title) or default_title(entry.file.name)
        patch: Dict[str, Any] = {"title": title, "title_edited": True}
        if not entry.filename_edited:
            patch["resolved_filename"] = resolve_filename(title, file_extension(entry.file.name))
        return self.update_entry(client_id, patch)

    def set_resolved_filename(self, client_id: str, filename: str) -> Optional[UploadEntry]:
        entry = self.require(client_id)
        if not filename or not filename.strip():
            return self.update_entry(
                client_id,
                {
                    "resolved_filename": resolve_filename(entry.title, file_extension(entry.file.name)),
                    "filename_edited": False,
                },
            )
        return self.update_entry(
            client_id,
            {"resolved_filename": user_filename(filename, entry.file.name), "filename_edited": True},
        )

    def effective_metadata(self, entry: UploadEntry) -> Dict[str, Any]:
        """Batch defaults merged with the entry's overrides, overrides win."""
        return {**self._context.global_metadata_defaults, **entry.metadata_override}

    def snapshot(self) -> BatchSnapshot:
        entries = self._entries
        status = batch_status(entries)
        finalizable = can_finalize(entries, self._context)
        return BatchSnapshot(
            entries=list(entries),
            context=self._context,
            batch_status=status,
            can_finalize=finalizable,
            warnings=warnings(entries, self._context),
            finalize_label=finalize_button_label(status, finalizable),
        )

# Projections

def is_cancelled(entry: UploadEntry) -> bool:
    return (
        entry.status == EntryStatus.FAILED
        and entry.error is not None
        and entry.error.code == ERROR_UPLOAD_CANCELLED
    )

def active_entries(entries: Sequence[UploadEntry]) -> List[UploadEntry]:
    """Entries that count towards batch aggregates."""
    return [entry for entry in entries if not is_cancelled(entry)]

def batch_status(entries: Sequence[UploadEntry]) -> BatchStatus:
    """
    Derive the whole-batch status.

    Evaluated in order: finalizing, complete, partial_success, uploading,
    ready, idle.
    """
    active = active_entries(entries)
    if not active:
        return BatchStatus.IDLE

    statuses = [entry.status for entry in active]
    if EntryStatus.FINALIZING in statuses:
        return BatchStatus.FINALIZING
    if all(status == EntryStatus.FINALIZED for status in statuses):
        return BatchStatus.COMPLETE

    succeeded = sum(1 for s in statuses if s in (EntryStatus.UPLOADED, EntryStatus.FINALIZED))
    failed = statuses.count(EntryStatus.FAILED)
    transferring = sum(1 for s in statuses if s in (EntryStatus.SELECTED, EntryStatus.UPLOADING))

    if succeeded and failed:
        return BatchStatus.PARTIAL_SUCCESS
    if transferring:
        return BatchStatus.UPLOADING
    if succeeded and not failed:
        return BatchStatus.READY
    return BatchStatus.IDLE

def can_finalize(entries: Sequence[UploadEntry], context: BatchContext) -> bool:
    """
    Every active entry has reached uploaded and a category is set.

    Already finalized entries do not block a retried finalize, but at least
    one entry must be waiting in uploaded.
    """
    active = active_entries(entries)
    if not active or not context.selected_category:
        return False
    statuses = [entry.status for entry in active]
    if EntryStatus.UPLOADED not in statuses:
        return False
    return all(status in (EntryStatus.UPLOADED, EntryStatus.FINALIZED) for status in statuses)

def warnings(entries: Sequence[UploadEntry], context: BatchContext) -> List[str]:
    """Non-blocking warnings, only once something is ready to finalize."""
    if not any(entry.status == EntryStatus.UPLOADED for entry in entries):
        return []
    found = []
    if not context.selected_category:
        found.append(MSG_CATEGORY_REQUIRED)
    return found

def finalize_button_label(status: BatchStatus, finalizable: bool) -> str:
    if status == BatchStatus.FINALIZING:
        return LABEL_FINALIZING
    if status == BatchStatus.UPLOADING:
        return LABEL_UPLOADING
    if finalizable:
        return LABEL_FINALIZE
    if status in (BatchStatus.READY, BatchStatus.PARTIAL_SUCCESS):
        return LABEL_SELECT_CATEGORY
    return LABEL_UPLOADING
