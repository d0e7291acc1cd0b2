"""
Database Module

This module manages the MongoDB connection used to persist chunked
upload sessions so they can be recovered after an agent restart.

Features:
- Connection management
- Collection access
- Database initialization
- Error handling
- Lifecycle management

Data Model:
- Upload state records

Security:
- SSL/TLS
- Credentials from environment
- Retry logic

Dependencies:
- Motor for async MongoDB
- FastAPI for lifecycle
- certifi for SSL

Author: Snapped Development Team
"""

from motor.motor_asyncio import AsyncIOMotorClient
import asyncio
import logging
from typing import Optional
from fastapi import FastAPI
from contextlib import asynccontextmanager

from app.shared.config import MONGODB_URL, MONGODB_TLS, UPLOAD_STATE_DB, SSL_CA_FILE

logger = logging.getLogger(__name__)

UPLOAD_STATE_COLLECTION = "UploadState"

# MongoDB Connection Settings
MONGO_SETTINGS = {
    "serverSelectionTimeoutMS": 10000,
    "connectTimeoutMS": 20000,
    "maxPoolSize": 20,
    "retryWrites": True
}
if MONGODB_TLS:
    MONGO_SETTINGS.update({"tls": True, "tlsCAFile": SSL_CA_FILE})

# Persistence is optional: without a URL the agent keeps state in memory only
async_client: Optional[AsyncIOMotorClient] = (
    AsyncIOMotorClient(MONGODB_URL, **MONGO_SETTINGS) if MONGODB_URL else None
)

# UploadDB Collections
upload_state_collection = (
    async_client[UPLOAD_STATE_DB][UPLOAD_STATE_COLLECTION] if async_client is not None else None
)

async def init_db(retry_count: int = 3, retry_delay: float = 5) -> bool:
    """
    Initialize database connection.

    Returns:
        bool: Connection status

    Notes:
        - Retries connection
        - Validates ping
        - Skipped when persistence is disabled
    """
    if async_client is None:
        logger.info("MONGODB_URL not set, upload state persistence disabled")
        return True

    for attempt in range(retry_count):
        try:
            logger.info(f"Database initialization attempt {attempt + 1}/{retry_count}...")
            await async_client.admin.command('ping')
            await upload_state_collection.create_index("client_reference", unique=True)
            logger.info("MongoDB ping successful")
            return True
        except Exception as e:
            logger.warning(f"Database connection attempt {attempt + 1} failed: {e}")
            if attempt < retry_count - 1:
                await asyncio.sleep(retry_delay)
    logger.error("All connection attempts failed")
    return False

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage database and upload session lifecycle.

    Notes:
        - Initializes DB
        - Rehydrates persisted chunked uploads
        - Cancels running work on shutdown
    """
    # Imported here, the upload feature imports this module
    from app.features.desktop_upload.routes_desktop_upload import get_upload_session

    logger.info("Starting database initialization...")
    if not await init_db():
        raise Exception("Failed to initialize database")
    logger.info("Database initialization complete")

    session = get_upload_session()
    await session.start()

    yield

    await session.shutdown()
    if async_client is not None:
        async_client.close()
        logger.info("Database connections closed")

__all__ = [
    'async_client',
    'upload_state_collection',
    'lifespan',
    'init_db'
]
