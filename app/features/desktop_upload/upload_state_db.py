"""
Upload State Database Module

This module persists chunked upload sessions so an interrupted upload
can be picked up again after the agent restarts.

Features:
- Session upserts
- Session removal
- Recovery listing

Data Model:
- One document per chunked upload, keyed by client_reference
- File bytes and local handles are never stored

Dependencies:
- MongoDB (motor) for storage
- pydantic models
- logging for tracking

Author: Snapped Development Team
"""

import logging
from typing import List

from pymongo.errors import PyMongoError

from app.shared.database import upload_state_collection
from .models import ChunkedUpload

logger = logging.getLogger(__name__)

class UploadStateDB:
    """
    Chunked upload persistence.

    Attributes:
        collection: MongoDB collection holding upload state
    """

    def __init__(self, collection=None):
        self.collection = collection if collection is not None else upload_state_collection

    async def save(self, record: ChunkedUpload) -> None:
        document = record.model_dump(mode="json", exclude={"file"})
        try:
            await self.collection.replace_one(
                {"client_reference": record.client_reference},
                document,
                upsert=True
            )
        except PyMongoError as e:
            logger.error(f"Error saving upload state {record.client_reference}: {str(e)}")
            raise

    async def delete(self, client_reference: str) -> None:
        await self.collection.delete_one({"client_reference": client_reference})

    async def load_all(self) -> List[ChunkedUpload]:
        """
        Load every persisted upload.

        Notes:
            - Skips documents that no longer validate
            - Drops Mongo ids
        """
        records = []
        async for document in self.collection.find({}):
            document.pop("_id", None)
            try:
                records.append(ChunkedUpload.model_validate(document))
            except ValueError as e:
                logger.warning(f"Skipping unreadable upload state {document.get('client_reference')}: {e}")
        return records
