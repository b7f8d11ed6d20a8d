"""
Pydantic Schemas for API Request/Response Models

Data models for the local Face ID HTTP surface used by a host shell (the
journal app). They provide validation and OpenAPI documentation.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from faceid.session import SessionMode, SessionState


# ============================================================
# Session Schemas
# ============================================================

class SessionStartRequest(BaseModel):
    """Request to start an enrollment or verification session."""
    mode: SessionMode = Field(..., description="'enrollment' or 'verification'")


class SessionEventResponse(BaseModel):
    """Snapshot of the session state machine."""
    state: SessionState = Field(..., description="Current session state")
    mode: Optional[SessionMode] = Field(None, description="Mode of the current/last session")
    reason: Optional[str] = Field(None, description="Human-readable outcome reason")
    progress: int = Field(0, description="Scan progress of the current round (0-100)")
    round: int = Field(0, description="Current capture round (1-based)")
    total_rounds: int = Field(0, description="Capture rounds required by this session")
    lockout_minutes: int = Field(0, description="Remaining lockout minutes when locked")


class SessionStartResponse(BaseModel):
    """Response after starting a session."""
    started: bool = Field(..., description="Whether a new session was started")
    session: SessionEventResponse


class SessionCancelResponse(BaseModel):
    """Response after a cancel request."""
    cancelled: bool = Field(..., description="False if there was nothing to cancel")
    session: SessionEventResponse


# ============================================================
# Management Schemas
# ============================================================

class StatusResponse(BaseModel):
    """Auth system status report."""
    enrolled: bool = Field(..., description="Whether a face is enrolled")
    has_descriptor: bool = Field(..., description="Whether descriptor data is stored")
    enrolled_at: Optional[str] = Field(None, description="ISO timestamp of enrollment")
    locked_out: bool = Field(..., description="Whether verification is locked out")
    lockout_minutes_remaining: int = Field(0, description="Minutes until lockout lifts")
    recent_failures: int = Field(0, description="Failed attempts inside the lockout window")
    max_failures: int = Field(..., description="Failures inside the window that trigger lockout")
    total_attempts: int = Field(0, description="Attempts kept in the ledger")
    camera_present: bool = Field(..., description="Whether a capture device is present")
    session: SessionEventResponse


class ResetResponse(BaseModel):
    """Response from clearing all Face ID data."""
    success: bool = Field(..., description="Whether the reset was applied")
    message: str = Field(..., description="Status message")


class CameraDiagnosticsResponse(BaseModel):
    """Result of a camera open/release cycle."""
    success: bool = Field(..., description="Whether the camera opened")
    time_to_init_ms: int = Field(..., description="Time spent opening the camera")
    error: Optional[str] = Field(None, description="Failure message")
    kind: Optional[str] = Field(None, description="Camera error kind")
    stream: Optional[Dict[str, Any]] = Field(None, description="Opened stream properties")


# ============================================================
# Health Check Schemas
# ============================================================

class HealthResponse(BaseModel):
    """System health check response."""
    status: str = Field(..., description="'healthy' or 'degraded' (no camera)")
    camera_present: bool = Field(..., description="Whether a capture device is present")
    enrolled: bool = Field(..., description="Whether a face is enrolled")
    locked_out: bool = Field(..., description="Whether verification is locked out")
    session_state: SessionState = Field(..., description="Current session state")
