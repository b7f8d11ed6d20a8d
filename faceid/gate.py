"""
Face ID Gate Module

The consumer-facing entry point. Wires the camera, extractor, stores and
matcher into one AuthSession and exposes the operations a host needs:

    start(mode) / run(mode) / cancel()
    is_locked_out() / remaining_lockout_minutes() / is_enrolled()
    clear_all()
    status() / diagnose_camera()

The status queries do not touch the camera and can be called before any
session, e.g. to hide the authenticate button during lockout.

Usage:
    from faceid.gate import get_gate
    from faceid.session import SessionMode

    gate = get_gate()
    if not gate.is_locked_out():
        outcome = await gate.run(SessionMode.VERIFICATION)
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from faceid.attempt_ledger import AttemptLedger
from faceid.camera import CameraBackend, CameraResource, diagnose_camera
from faceid.enrollment_store import EnrollmentStore
from faceid.feature_extractor import FeatureExtractor, create_extractor
from faceid.matching import DescriptorMatcher, LandmarkVotingMatcher
from faceid.repository import ALL_KEYS, DESCRIPTOR_KEY, AuthRepository, create_repository
from faceid.session import (
    AuthSession,
    SessionActiveError,
    SessionEvent,
    SessionListener,
    SessionMode,
    SessionOutcome,
)

logger = logging.getLogger(__name__)


class FaceIdGate:
    """
    Facade over one AuthSession and its persisted state.

    Attributes:
        session: The state machine running enrollment and verification.
        repo: Repository holding the template and attempt ledger.
    """

    def __init__(self, session: AuthSession, repo: AuthRepository):
        self.session = session
        self.repo = repo

    @property
    def camera(self) -> CameraResource:
        return self.session.camera

    @property
    def enrollment(self) -> EnrollmentStore:
        return self.session.enrollment

    @property
    def ledger(self) -> AttemptLedger:
        return self.session.ledger

    @property
    def current_event(self) -> SessionEvent:
        return self.session.current_event

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def start(self, mode: SessionMode) -> "asyncio.Task[SessionOutcome]":
        """Start a session in the background. Raises SessionActiveError if busy."""
        task = self.session.start(SessionMode(mode))
        task.add_done_callback(self._log_task_result)
        return task

    async def run(self, mode: SessionMode) -> SessionOutcome:
        """Run a session and wait for its outcome."""
        return await self.session.run(SessionMode(mode))

    def cancel(self) -> bool:
        return self.session.cancel()

    def add_listener(self, listener: SessionListener) -> None:
        self.session.add_listener(listener)

    def remove_listener(self, listener: SessionListener) -> None:
        self.session.remove_listener(listener)

    def events(self, maxsize: int = 100) -> asyncio.Queue:
        return self.session.events(maxsize)

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self.session.unsubscribe(queue)

    @staticmethod
    def _log_task_result(task: asyncio.Task) -> None:
        if task.cancelled():
            logger.info("Background session task was cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Background session ended with an error: {exc}")
            return
        outcome = task.result()
        logger.info(f"Background session finished: {outcome.state.value}")

    # ------------------------------------------------------------------
    # Status queries
    # ------------------------------------------------------------------

    def is_locked_out(self, now: Optional[datetime] = None) -> bool:
        return self.ledger.is_locked_out(now)

    def remaining_lockout_minutes(self, now: Optional[datetime] = None) -> int:
        return self.ledger.remaining_lockout_minutes(now)

    def is_enrolled(self) -> bool:
        return self.enrollment.exists()

    def status(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Snapshot of the whole auth system, for diagnostics and UIs.

        Returns:
            Dict with enrollment, lockout, attempt and camera information
            plus the current session event.
        """
        now = now or self.session.clock()
        enrolled_at = self.enrollment.enrolled_at()

        return {
            "enrolled": self.enrollment.exists(),
            "has_descriptor": self.repo.get(DESCRIPTOR_KEY) is not None,
            "enrolled_at": enrolled_at.isoformat() if enrolled_at else None,
            "locked_out": self.ledger.is_locked_out(now),
            "lockout_minutes_remaining": self.ledger.remaining_lockout_minutes(now),
            "recent_failures": self.ledger.recent_failures(now),
            "max_failures": self.ledger.max_failures,
            "total_attempts": len(self.ledger.records()),
            "camera_present": self.camera.is_camera_present(),
            "session": self.session.current_event.to_dict(),
        }

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def clear_all(self) -> None:
        """
        Remove the template, its timestamp, the enrolled flag and the
        attempt ledger in a single repository call.
        """
        self.repo.clear(*ALL_KEYS)
        logger.info("Face ID data cleared")

    async def diagnose_camera(self) -> Dict[str, Any]:
        """Time a camera open/release cycle. Not allowed during a session."""
        if self.session.is_active:
            raise SessionActiveError("Camera is in use by the active Face ID session")
        return await diagnose_camera(self.camera)

    def close(self) -> None:
        self.session.cancel()
        self.session.extractor.close()
        self.repo.close()


def build_gate(
    config: Optional[Dict[str, Any]] = None,
    repo: Optional[AuthRepository] = None,
    camera_backend: Optional[CameraBackend] = None,
    extractor: Optional[FeatureExtractor] = None,
    matcher: Optional[DescriptorMatcher] = None,
    clock: Optional[Callable[[], datetime]] = None,
    source: Optional[str] = None,
) -> FaceIdGate:
    """
    Assemble a gate from a full configuration dict.

    Args:
        config: Parsed config.yaml contents. Defaults to get_config().
        repo: Repository override. Defaults to the "storage" section.
        camera_backend: Driver override. Defaults to OpenCV.
        extractor: Extractor override. Defaults to capture.extractor.
        matcher: Matcher override. Defaults to the "matching" section.
        clock: Time source for enrollment and attempt timestamps.
        source: Host identifier stored on each attempt record.
    """
    if config is None:
        from faceid.config import get_config

        config = get_config()

    capture_config = config.get("capture", {})

    if repo is None:
        repo = create_repository(config.get("storage", {}).get("db_path"))

    clock_kwargs = {"clock": clock} if clock is not None else {}

    camera = CameraResource.from_config(config.get("camera", {}), backend=camera_backend)
    if extractor is None:
        extractor = create_extractor(capture_config.get("extractor", "geometric"))
    if matcher is None:
        matcher = LandmarkVotingMatcher.from_config(config.get("matching", {}))

    enrollment = EnrollmentStore(repo, **clock_kwargs)
    ledger = AttemptLedger.from_config(repo, config.get("lockout", {}), **clock_kwargs)

    session = AuthSession.from_config(
        camera,
        extractor,
        enrollment,
        ledger,
        matcher,
        config=capture_config,
        source=source,
    )

    logger.info(
        f"Face ID gate ready: extractor={extractor.__class__.__name__}, "
        f"matcher={matcher.__class__.__name__}"
    )
    return FaceIdGate(session, repo)


# Store the singleton instance (module-level variable)
_gate_instance: Optional[FaceIdGate] = None


def get_gate(source: Optional[str] = None) -> FaceIdGate:
    """
    Get or create the singleton FaceIdGate built from config.yaml.

    Only one gate should exist per process: it owns the camera and is the
    single writer of the attempt ledger.
    """
    global _gate_instance

    if _gate_instance is None:
        _gate_instance = build_gate(source=source)

    return _gate_instance


def close_gate() -> None:
    """Close and forget the singleton gate."""
    global _gate_instance

    if _gate_instance is not None:
        _gate_instance.close()
        _gate_instance = None
