"""
API Routes Package

Route handlers organized by feature:
- session.py: start/cancel/inspect sessions, event WebSocket
- management.py: status, reset and camera diagnostics
"""

from faceid_api.routes.session import router as session_router
from faceid_api.routes.management import router as management_router

__all__ = [
    "session_router",
    "management_router",
]
