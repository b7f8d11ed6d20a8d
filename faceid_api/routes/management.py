"""
Management API Routes

- GET /status: auth system status report
- POST /reset: clear enrollment and attempt history
- GET /camera/diagnostics: time a camera open/release cycle
"""

import logging

from fastapi import APIRouter, HTTPException

from faceid import gate as gate_module
from faceid.session import SessionActiveError
from faceid_api.schemas import (
    CameraDiagnosticsResponse,
    ResetResponse,
    StatusResponse,
)

logger = logging.getLogger(__name__)

# Create router
router = APIRouter(tags=["management"])


@router.get("/status", response_model=StatusResponse)
async def get_status():
    """
    Report enrollment, lockout and attempt state.

    Usable before any session so a UI can hide the authenticate action
    while locked out.
    """
    return StatusResponse(**gate_module.get_gate().status())


@router.post("/reset", response_model=ResetResponse)
async def reset():
    """
    Remove the enrolled face, its timestamp and the attempt history.

    This is the only way to re-enroll from scratch.
    """
    gate = gate_module.get_gate()
    gate.clear_all()
    return ResetResponse(success=True, message="Face ID data cleared")


@router.get("/camera/diagnostics", response_model=CameraDiagnosticsResponse)
async def camera_diagnostics():
    """
    Open the camera once and report how long it took.

    Raises:
        409: If a session currently owns the camera.
    """
    gate = gate_module.get_gate()

    try:
        result = await gate.diagnose_camera()
    except SessionActiveError as e:
        raise HTTPException(status_code=409, detail=str(e))

    return CameraDiagnosticsResponse(**result)
