"""
Configuration Module

This module manages application configuration settings and environment
variables for the desktop upload agent.

Features:
- Environment loading
- DAM backend credentials
- Upload scheduling limits
- Persistence settings
- SSL certificates

Data Model:
- Backend URLs and paths
- Session tokens
- Concurrency limits
- Timers
- Mongo settings

Dependencies:
- certifi for SSL
- os for env
- dotenv for loading

Author: Snapped Development Team
"""

import certifi
import os
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# DAM Backend Configuration
DAM_BASE_URL = os.getenv('DAM_BASE_URL', 'http://localhost:8000').rstrip('/')
DAM_CSRF_TOKEN = os.getenv('DAM_CSRF_TOKEN', '')
DAM_SESSION_COOKIE = os.getenv('DAM_SESSION_COOKIE', '')
DAM_BRAND_ID = os.getenv('DAM_BRAND_ID', '')
DAM_REQUEST_TIMEOUT = float(os.getenv('DAM_REQUEST_TIMEOUT', '60'))

# Backend paths
INITIATE_BATCH_PATH = "/app/uploads/initiate-batch"
FINALIZE_PATH = "/app/assets/upload/finalize"
UPLOAD_SESSION_PATH = "/app/uploads/{upload_session_id}"

# Upload scheduling
MAX_CONCURRENT_TRANSFERS = int(os.getenv('MAX_CONCURRENT_TRANSFERS', '1'))
AUTO_CLOSE_MIN_DELAY = float(os.getenv('AUTO_CLOSE_MIN_DELAY', '0.4'))
AUTO_CLOSE_MAX_DELAY = float(os.getenv('AUTO_CLOSE_MAX_DELAY', '0.7'))

# Byte transfer
READ_CHUNK_SIZE = 256 * 1024  # streaming read size for direct PUTs

# Persistence (chunked session recovery)
MONGODB_URL = os.getenv('MONGODB_URL', '')
MONGODB_TLS = _env_bool('MONGODB_TLS')
UPLOAD_STATE_DB = os.getenv('UPLOAD_STATE_DB', 'UploadDB')
SSL_CA_FILE = certifi.where()

# CORS
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv('CORS_ORIGINS', 'http://localhost:3000').split(',')
    if origin.strip()
]
