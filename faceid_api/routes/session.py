"""
Session API Routes

Drives the Face ID state machine from a host shell:
- POST /session: start enrollment or verification in the background
- GET /session: current session snapshot
- DELETE /session: cancel the running session
- WS /ws/session: stream of session events
"""

import asyncio
import logging

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect

from faceid import gate as gate_module
from faceid.session import SessionActiveError, SessionEvent
from faceid_api.schemas import (
    SessionCancelResponse,
    SessionEventResponse,
    SessionStartRequest,
    SessionStartResponse,
)

logger = logging.getLogger(__name__)

# Create router
router = APIRouter(tags=["session"])


def to_event_response(event: SessionEvent) -> SessionEventResponse:
    return SessionEventResponse(**event.to_dict())


@router.post("/session", response_model=SessionStartResponse)
async def start_session(request: SessionStartRequest):
    """
    Start a session. The outcome is reported through GET /session or the
    WebSocket stream once the session reaches a terminal state.

    Raises:
        409: If a session is already running.
    """
    gate = gate_module.get_gate()

    try:
        gate.start(request.mode)
    except SessionActiveError as e:
        raise HTTPException(status_code=409, detail=str(e))

    logger.info(f"Session started via API: {request.mode.value}")
    return SessionStartResponse(started=True, session=to_event_response(gate.current_event))


@router.get("/session", response_model=SessionEventResponse)
async def get_session():
    """Current session state, progress and outcome reason."""
    return to_event_response(gate_module.get_gate().current_event)


@router.delete("/session", response_model=SessionCancelResponse)
async def cancel_session():
    """Cancel the running session. Safe to call when nothing is running."""
    gate = gate_module.get_gate()
    cancelled = gate.cancel()
    return SessionCancelResponse(
        cancelled=cancelled, session=to_event_response(gate.current_event)
    )


@router.websocket("/ws/session")
async def websocket_session(websocket: WebSocket):
    """
    Stream session events.

    Protocol:
        Server -> Client, first the current snapshot, then one message per
        transition or progress tick:
        {
            "state": "capturing",
            "mode": "verification",
            "reason": null,
            "progress": 42,
            "round": 1,
            "total_rounds": 1,
            "lockout_minutes": 0
        }
    """
    await websocket.accept()

    gate = gate_module.get_gate()
    queue = gate.events()

    async def forward_events():
        while True:
            event = await queue.get()
            await websocket.send_json(event.to_dict())

    try:
        await websocket.send_json(gate.current_event.to_dict())
        sender = asyncio.create_task(forward_events())
        try:
            # Client messages are ignored; receiving surfaces the disconnect
            while True:
                await websocket.receive_text()
        finally:
            sender.cancel()

    except WebSocketDisconnect:
        logger.info("Session event client disconnected")

    finally:
        gate.unsubscribe(queue)
