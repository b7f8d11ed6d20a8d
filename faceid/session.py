"""
Auth Session Module

State machine for one Face ID session, either enrollment or verification.

    Idle -> RequestingResource -> Capturing <-> Analyzing -> terminal

Terminal states are Succeeded, Failed, PermissionDenied, Locked and
ResourceUnavailable. cancel() returns any non-terminal session to Idle.

All state changes go through AuthSession._enter(), which stops the
previous state's periodic tasks, releases the camera when entering a
terminal state or Idle, and notifies observers, in that order. No other
code path releases the camera or cancels timers.

While Capturing, two independent periodic tasks run:
    - frame polling: samples the extractor until a descriptor is latched
    - progress: advances the scan-progress counter up to 100
A round completes when progress is 100 and a descriptor is latched. The
first descriptor of a round is kept; later frames are not sampled.

Usage:
    session = AuthSession(camera, extractor, enrollment, ledger, matcher)
    session.add_listener(lambda event: print(event.state, event.progress))
    outcome = await session.run(SessionMode.VERIFICATION)
    print(outcome.state, outcome.reason)
"""

import asyncio
import logging
from asyncio import QueueEmpty
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from faceid.attempt_ledger import AttemptLedger, AttemptOutcome
from faceid.camera import (
    CAMERA_GUIDANCE,
    CameraError,
    CameraErrorKind,
    CameraResource,
    VideoStreamHandle,
)
from faceid.enrollment_store import EnrollmentStore
from faceid.feature_extractor import FeatureDescriptor, FeatureExtractor
from faceid.matching.interfaces import DescriptorMatcher, MatchResult

logger = logging.getLogger(__name__)


NOT_ENROLLED_REASON = "not enrolled"
CANCELLED_REASON = "cancelled"
NO_MATCH_REASON = "Face ID authentication failed. Please try again."
ENROLLED_REASON = "Face ID enrollment successful"
VERIFIED_REASON = "Face ID authentication successful"

MAX_PROGRESS = 100


def lockout_reason(minutes: int) -> str:
    return f"Too many failed attempts. Try again in {minutes} minutes."


class SessionMode(str, Enum):
    ENROLLMENT = "enrollment"
    VERIFICATION = "verification"


class SessionState(str, Enum):
    IDLE = "idle"
    REQUESTING_RESOURCE = "requesting_resource"
    CAPTURING = "capturing"
    ANALYZING = "analyzing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PERMISSION_DENIED = "permission_denied"
    LOCKED = "locked"
    RESOURCE_UNAVAILABLE = "resource_unavailable"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset(
    {
        SessionState.SUCCEEDED,
        SessionState.FAILED,
        SessionState.PERMISSION_DENIED,
        SessionState.LOCKED,
        SessionState.RESOURCE_UNAVAILABLE,
    }
)

# Camera failures that are not plain Failed
_CAMERA_ERROR_STATES = {
    CameraErrorKind.PERMISSION_DENIED: SessionState.PERMISSION_DENIED,
    CameraErrorKind.NOT_FOUND: SessionState.RESOURCE_UNAVAILABLE,
    CameraErrorKind.API_UNAVAILABLE: SessionState.RESOURCE_UNAVAILABLE,
}


class SessionActiveError(RuntimeError):
    """Raised when a session is started while another one is running."""


@dataclass(frozen=True)
class SessionEvent:
    """
    Snapshot published to observers on every transition and progress tick.

    Attributes:
        state: Current state.
        mode: Session mode, or None before the first session.
        reason: Human-readable reason for terminal states and Idle.
        progress: Scan progress of the current round, 0 to 100.
        round: Current capture round (1-based, 0 before capturing).
        total_rounds: Rounds this session needs.
        lockout_minutes: Remaining lockout, set when state is Locked.
    """

    state: SessionState
    mode: Optional[SessionMode] = None
    reason: Optional[str] = None
    progress: int = 0
    round: int = 0
    total_rounds: int = 0
    lockout_minutes: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "mode": self.mode.value if self.mode else None,
            "reason": self.reason,
            "progress": self.progress,
            "round": self.round,
            "total_rounds": self.total_rounds,
            "lockout_minutes": self.lockout_minutes,
        }


@dataclass(frozen=True)
class SessionOutcome:
    """How a session ended."""

    state: SessionState
    mode: SessionMode
    reason: Optional[str] = None
    lockout_minutes: int = 0
    match: Optional[MatchResult] = None

    @property
    def succeeded(self) -> bool:
        return self.state is SessionState.SUCCEEDED

    @property
    def retry_allowed(self) -> bool:
        """Whether offering a retry makes sense to the user."""
        return self.state not in (
            SessionState.SUCCEEDED,
            SessionState.LOCKED,
            SessionState.RESOURCE_UNAVAILABLE,
        )


SessionListener = Callable[[SessionEvent], None]


class AuthSession:
    """
    Runs enrollment and verification sessions, one at a time.

    Attributes:
        camera: Camera resource the session acquires.
        extractor: Turns frames into descriptors.
        enrollment: Enrolled template storage.
        ledger: Verification attempt history and lockout.
        matcher: Decides whether a candidate matches the enrolled template.
    """

    def __init__(
        self,
        camera: CameraResource,
        extractor: FeatureExtractor,
        enrollment: EnrollmentStore,
        ledger: AttemptLedger,
        matcher: DescriptorMatcher,
        poll_interval_ms: int = 100,
        progress_interval_ms: int = 30,
        progress_step: int = 1,
        enrollment_rounds: int = 3,
        analysis_delay_ms: int = 0,
        source: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if progress_step < 1:
            raise ValueError(f"progress_step must be >= 1, got {progress_step}")
        if enrollment_rounds < 1:
            raise ValueError(f"enrollment_rounds must be >= 1, got {enrollment_rounds}")

        self.camera = camera
        self.extractor = extractor
        self.enrollment = enrollment
        self.ledger = ledger
        self.matcher = matcher

        self.poll_interval = poll_interval_ms / 1000.0
        self.progress_interval = progress_interval_ms / 1000.0
        self.progress_step = progress_step
        self.enrollment_rounds = enrollment_rounds
        self.analysis_delay = analysis_delay_ms / 1000.0
        self.source = source
        self.clock = clock or ledger.clock

        self._state = SessionState.IDLE
        self._mode: Optional[SessionMode] = None
        self._reason: Optional[str] = None
        self._lockout_minutes = 0
        self._progress = 0
        self._round = 0
        self._total_rounds = 0

        self._handle: Optional[VideoStreamHandle] = None
        self._latched: Optional[FeatureDescriptor] = None
        self._capture_error: Optional[Exception] = None
        self._round_done: Optional[asyncio.Event] = None
        self._timers: List[asyncio.Task] = []

        self._running = False
        self._cancel_requested = False
        self._run_task: Optional[asyncio.Task] = None

        self._listeners: List[SessionListener] = []
        self._subscribers: List[asyncio.Queue] = []

    @classmethod
    def from_config(
        cls,
        camera: CameraResource,
        extractor: FeatureExtractor,
        enrollment: EnrollmentStore,
        ledger: AttemptLedger,
        matcher: DescriptorMatcher,
        config: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ) -> "AuthSession":
        """Build with timing parameters from the "capture" config section."""
        if config is None:
            from faceid.config import get_capture_config

            config = get_capture_config()

        return cls(
            camera,
            extractor,
            enrollment,
            ledger,
            matcher,
            poll_interval_ms=config.get("poll_interval_ms", 100),
            progress_interval_ms=config.get("progress_interval_ms", 30),
            progress_step=config.get("progress_step", 1),
            enrollment_rounds=config.get("enrollment_rounds", 3),
            analysis_delay_ms=config.get("analysis_delay_ms", 0),
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._running or (
            self._run_task is not None and not self._run_task.done()
        )

    @property
    def current_event(self) -> SessionEvent:
        return SessionEvent(
            state=self._state,
            mode=self._mode,
            reason=self._reason,
            progress=self._progress,
            round=self._round,
            total_rounds=self._total_rounds,
            lockout_minutes=self._lockout_minutes,
        )

    def start(self, mode: SessionMode) -> "asyncio.Task[SessionOutcome]":
        """
        Start a session in the background on the running event loop.

        Returns:
            The task running the session; its result is the SessionOutcome.

        Raises:
            SessionActiveError: If a session is already running.
        """
        if self.is_active:
            raise SessionActiveError("A Face ID session is already in progress")

        self._run_task = asyncio.get_running_loop().create_task(self.run(mode))
        return self._run_task

    async def run(self, mode: SessionMode) -> SessionOutcome:
        """
        Run one session to completion.

        Returns:
            The outcome. A cancelled session ends in Idle.

        Raises:
            SessionActiveError: If a session is already running.
        """
        if self._running:
            raise SessionActiveError("A Face ID session is already in progress")

        mode = SessionMode(mode)
        self._running = True
        self._run_task = asyncio.current_task()
        self._mode = mode
        self._reason = None
        self._lockout_minutes = 0
        self._progress = 0
        self._round = 0
        self._total_rounds = self.enrollment_rounds if mode is SessionMode.ENROLLMENT else 1

        logger.info(f"Starting {mode.value} session")

        try:
            # Cancelled between start() and the task's first step
            if self._cancel_requested:
                self._enter(SessionState.IDLE, CANCELLED_REASON)
                raise asyncio.CancelledError()

            # Every session, including a retry, begins from Idle
            if self._state is not SessionState.IDLE:
                self._enter(SessionState.IDLE)

            return await self._run(mode)
        except asyncio.CancelledError:
            if self._cancel_requested:
                logger.info(f"{mode.value.capitalize()} session cancelled")
                return SessionOutcome(SessionState.IDLE, mode, CANCELLED_REASON)
            # Cancelled from outside; still leave nothing open
            self._enter(SessionState.IDLE, CANCELLED_REASON)
            raise
        except Exception as e:
            logger.exception(f"{mode.value.capitalize()} session crashed: {e}")
            self._enter(SessionState.FAILED, f"Unexpected error: {e}")
            raise
        finally:
            self._stop_timers()
            self._release_camera()
            self._cancel_requested = False
            self._running = False

    def cancel(self) -> bool:
        """
        Abort the running or scheduled session and return to Idle.

        Idempotent. If the camera is still being acquired, the handle is
        released as soon as the acquisition resolves. A session started but
        not yet running ends in Idle without touching the camera.

        Returns:
            True if a session was cancelled by this call.
        """
        if not self.is_active or self._cancel_requested:
            return False
        if self._running and self._state.is_terminal:
            return False

        self._cancel_requested = True

        if not self._running:
            logger.info("Session cancelled before it started")
            return True

        self._enter(SessionState.IDLE, CANCELLED_REASON)

        if self._run_task is not None and not self._run_task.done():
            self._run_task.cancel()
        return True

    def add_listener(self, listener: SessionListener) -> None:
        """Register a callback invoked synchronously with every SessionEvent."""
        self._listeners.append(listener)

    def remove_listener(self, listener: SessionListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def events(self, maxsize: int = 100) -> asyncio.Queue:
        """
        Subscribe to SessionEvents through a queue.

        When the queue is full the oldest event is dropped.
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    # ------------------------------------------------------------------
    # Session flow
    # ------------------------------------------------------------------

    async def _run(self, mode: SessionMode) -> SessionOutcome:
        if mode is SessionMode.VERIFICATION:
            now = self.clock()
            if self.ledger.is_locked_out(now):
                minutes = self.ledger.remaining_lockout_minutes(now)
                return self._finish(
                    SessionState.LOCKED, lockout_reason(minutes), lockout_minutes=minutes
                )

        self._enter(SessionState.REQUESTING_RESOURCE)

        if not self.camera.api_available():
            return self._finish(
                SessionState.RESOURCE_UNAVAILABLE,
                CAMERA_GUIDANCE[CameraErrorKind.API_UNAVAILABLE],
            )
        if not self.camera.is_camera_present():
            return self._finish(
                SessionState.RESOURCE_UNAVAILABLE,
                CAMERA_GUIDANCE[CameraErrorKind.NOT_FOUND],
            )

        try:
            self._handle = await self.camera.acquire()
        except CameraError as e:
            state = _CAMERA_ERROR_STATES.get(e.kind, SessionState.FAILED)
            return self._finish(state, e.message)

        # Checked once the camera is up, and again at Analyzing
        if mode is SessionMode.VERIFICATION and not self.enrollment.exists():
            return self._finish(SessionState.FAILED, NOT_ENROLLED_REASON)

        buffered: List[FeatureDescriptor] = []

        for round_no in range(1, self._total_rounds + 1):
            descriptor = await self._capture_round(round_no)
            if descriptor is None:
                return self._finish(
                    SessionState.FAILED, f"Face capture failed: {self._capture_error}"
                )

            self._enter(SessionState.ANALYZING)
            await asyncio.sleep(self.analysis_delay)

            if mode is SessionMode.ENROLLMENT:
                buffered.append(descriptor)
                logger.info(f"Enrollment round {round_no}/{self._total_rounds} captured")
                if round_no < self._total_rounds:
                    continue
                return self._complete_enrollment(buffered)

            return self._complete_verification(descriptor)

        raise RuntimeError("capture loop exited without an outcome")

    async def _capture_round(self, round_no: int) -> Optional[FeatureDescriptor]:
        """Run one capture round; returns the latched descriptor."""
        self._round = round_no
        self._progress = 0
        self._latched = None
        self._capture_error = None
        self._round_done = asyncio.Event()

        self._enter(SessionState.CAPTURING)
        await self._round_done.wait()
        self._stop_timers()

        return self._latched

    def _complete_enrollment(self, buffered: List[FeatureDescriptor]) -> SessionOutcome:
        self._raise_if_cancelled()
        self.enrollment.save(FeatureDescriptor.centroid(buffered))
        return self._finish(SessionState.SUCCEEDED, ENROLLED_REASON)

    def _complete_verification(self, candidate: FeatureDescriptor) -> SessionOutcome:
        self._raise_if_cancelled()

        template = self.enrollment.load()
        if template is None:
            return self._finish(SessionState.FAILED, NOT_ENROLLED_REASON)

        result = self.matcher.compare(candidate, template.descriptor)

        if result.is_match:
            self.ledger.record(AttemptOutcome.SUCCESS, source=self.source)
            return self._finish(SessionState.SUCCEEDED, VERIFIED_REASON, match=result)

        self.ledger.record(AttemptOutcome.FAILURE, source=self.source)

        now = self.clock()
        if self.ledger.is_locked_out(now):
            minutes = self.ledger.remaining_lockout_minutes(now)
            return self._finish(
                SessionState.LOCKED,
                lockout_reason(minutes),
                lockout_minutes=minutes,
                match=result,
            )

        return self._finish(SessionState.FAILED, NO_MATCH_REASON, match=result)

    def _finish(
        self,
        state: SessionState,
        reason: Optional[str],
        lockout_minutes: int = 0,
        match: Optional[MatchResult] = None,
    ) -> SessionOutcome:
        self._raise_if_cancelled()
        self._enter(state, reason, lockout_minutes)
        return SessionOutcome(
            state=state,
            mode=self._mode,
            reason=reason,
            lockout_minutes=lockout_minutes,
            match=match,
        )

    def _raise_if_cancelled(self) -> None:
        if self._cancel_requested:
            raise asyncio.CancelledError()

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _enter(
        self,
        state: SessionState,
        reason: Optional[str] = None,
        lockout_minutes: int = 0,
    ) -> None:
        previous = self._state

        self._stop_timers()
        self._state = state
        self._reason = reason
        self._lockout_minutes = lockout_minutes

        if state.is_terminal or state is SessionState.IDLE:
            self._release_camera()
        elif state is SessionState.CAPTURING:
            self._start_timers()

        if reason:
            logger.info(f"Session state: {previous.value} -> {state.value} ({reason})")
        else:
            logger.info(f"Session state: {previous.value} -> {state.value}")

        self._notify()

    def _start_timers(self) -> None:
        loop = asyncio.get_running_loop()
        self._timers = [
            loop.create_task(self._poll_frames()),
            loop.create_task(self._advance_progress()),
        ]

    def _stop_timers(self) -> None:
        current = asyncio.current_task()
        for task in self._timers:
            if task is not current and not task.done():
                task.cancel()
        self._timers = []

    def _release_camera(self) -> None:
        handle, self._handle = self._handle, None
        if handle is not None:
            self.camera.release(handle)

    def _notify(self) -> None:
        event = self.current_event

        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.warning(f"Session listener failed: {e}")

        for queue in list(self._subscribers):
            if queue.full():
                try:
                    queue.get_nowait()
                except QueueEmpty:
                    pass
            queue.put_nowait(event)

    # ------------------------------------------------------------------
    # Periodic tasks
    # ------------------------------------------------------------------

    async def _poll_frames(self) -> None:
        while self._latched is None:
            await asyncio.sleep(self.poll_interval)

            try:
                descriptor = self.extractor.sample_frame(self._handle)
            except Exception as e:
                logger.warning(f"Feature extraction failed: {e}")
                self._capture_error = e
                self._round_done.set()
                return

            if descriptor is not None:
                self._latched = descriptor
                logger.debug(f"Descriptor latched in round {self._round}")
                self._check_round_complete()

    async def _advance_progress(self) -> None:
        while self._progress < MAX_PROGRESS:
            await asyncio.sleep(self.progress_interval)
            self._progress = min(MAX_PROGRESS, self._progress + self.progress_step)
            self._notify()

        self._check_round_complete()

    def _check_round_complete(self) -> None:
        if self._progress >= MAX_PROGRESS and self._latched is not None:
            self._round_done.set()
