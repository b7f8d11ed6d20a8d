"""
FastAPI Application Entry Point

This module creates and configures the FastAPI application for the local
Face ID service.

The application provides:
- REST endpoints to start, inspect and cancel Face ID sessions
- WebSocket stream of session events
- Status, reset and camera diagnostic endpoints
- Health check endpoint

Usage:
    # From project root:
    uvicorn faceid_api.app:app --host 127.0.0.1 --port 8010

    # Or run directly:
    python -m faceid_api.app
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from faceid import gate as gate_module
from faceid.config import get_server_config, setup_logging
from faceid_api.routes import management_router, session_router
from faceid_api.schemas import HealthResponse

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Runs on startup:
    - Build the Face ID gate (repository, camera, extractor, matcher)

    Runs on shutdown:
    - Cancel any running session and close the repository
    """
    logger.info("=" * 60)
    logger.info("Starting Face ID API")
    logger.info("=" * 60)

    gate = gate_module.get_gate(source="api")
    status = gate.status()
    logger.info(
        f"Gate ready: enrolled={status['enrolled']}, "
        f"locked_out={status['locked_out']}, camera_present={status['camera_present']}"
    )
    if not status["camera_present"]:
        logger.warning("No camera detected - sessions will end as resource_unavailable")

    yield

    logger.info("Shutting down API...")
    gate_module.close_gate()
    logger.info("Shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="Face ID Gate API",
    description="""
Local API for the journal's Face ID gate.

## Features
- **Sessions**: enroll a face or verify against the enrolled one
- **Lockout**: 5 failed verifications within 30 minutes block new attempts
- **Management**: status report, full reset, camera diagnostics

## WebSocket
Connect to `/ws/session` to receive state and progress events.
    """,
    version="0.1.0",
    lifespan=lifespan,
)

# Configure CORS for the host shell
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(session_router)
app.include_router(management_router)


# ============================================================
# Health Check Endpoint
# ============================================================

@app.get("/health", response_model=HealthResponse, tags=["system"])
async def health_check():
    """
    Check the health of the service.

    Reports "degraded" when no camera is present, since no session can
    succeed then.
    """
    gate = gate_module.get_gate()
    camera_present = gate.camera.is_camera_present()

    return HealthResponse(
        status="healthy" if camera_present else "degraded",
        camera_present=camera_present,
        enrolled=gate.is_enrolled(),
        locked_out=gate.is_locked_out(),
        session_state=gate.current_event.state,
    )


@app.get("/", tags=["system"])
async def root():
    """Root endpoint with API information."""
    return {
        "name": "Face ID Gate API",
        "version": "0.1.0",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    setup_logging()
    server = get_server_config()

    logger.info(f"Starting server on {server['host']}:{server['port']}")
    uvicorn.run(
        "faceid_api.app:app",
        host=server["host"],
        port=server["port"],
        log_level="info",
    )
