"""
Main Entry Module

This module serves as the desktop upload agent's entry point,
configuring FastAPI and running the local server.

Features:
- Server configuration
- CORS setup
- Router mounting
- Request logging
- Development server

Security:
- CORS policies
- Origin validation

Dependencies:
- FastAPI for API
- CORS middleware
- uvicorn for server
- Logging

Author: Snapped Development Team
"""

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from app.shared.config import CORS_ORIGINS
from app.shared.database import lifespan
from app.features.desktop_upload.routes_desktop_upload import router as desktop_upload_router

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(lifespan=lifespan)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,  # desktop UI dev server
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.middleware("http")
async def log_requests(request: Request, call_next):
    logger.info(f"{request.method} {request.url.path}")
    response = await call_next(request)
    logger.info(f"{request.method} {request.url.path} -> {response.status_code}")
    return response

# Add routers
app.include_router(desktop_upload_router)

@app.get("/health")
async def health():
    return {"status": "ok"}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host="127.0.0.1",
        port=8000,
        reload=True,
        log_level="debug"
    )
