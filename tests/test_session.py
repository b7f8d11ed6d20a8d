"""
Tests for the Auth Session state machine.

This test suite verifies:
- Enrollment over three rounds, persisting the centroid
- Verification success, failure, and lockout after the fifth failure
- No camera access and no matcher call while locked out
- Verification without enrollment fails as "not enrolled"
- Camera failures map to the right terminal states
- Cancellation returns to Idle and releases the camera exactly once
- Latching of the first descriptor and round extension
- Observer notifications

Run with: pytest tests/test_session.py -v
"""

import asyncio
import errno
import os
import sys
import threading

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from faceid.attempt_ledger import AttemptOutcome
from faceid.camera import CAMERA_GUIDANCE, CameraErrorKind
from faceid.feature_extractor import FeatureDescriptor
from faceid.session import (
    NOT_ENROLLED_REASON,
    SessionActiveError,
    SessionMode,
    SessionState,
)
from fakes import (
    FailingExtractor,
    FakeCameraBackend,
    ScriptedExtractor,
    SpyMatcher,
    make_descriptor,
    make_session,
    steady_extractor,
    wait_for,
    wait_for_state,
)


def enroll_far_template(session):
    """Enroll a template that the steady extractor will never match."""
    candidate = steady_extractor().describe(640, 480)
    session.enrollment.save(FeatureDescriptor(points=candidate.points + 100))


class TestEnrollment:
    """Tests for enrollment sessions."""

    def test_enrollment_succeeds(self):
        backend = FakeCameraBackend()
        session = make_session(backend=backend)
        states = []
        session.add_listener(lambda event: states.append(event.state))

        outcome = asyncio.run(session.run(SessionMode.ENROLLMENT))

        assert outcome.state is SessionState.SUCCEEDED
        assert outcome.succeeded
        assert session.enrollment.exists()
        assert backend.release_count == 1
        assert session.ledger.records() == ()

        transitions = [s for i, s in enumerate(states) if i == 0 or states[i - 1] is not s]
        assert transitions == [
            SessionState.REQUESTING_RESOURCE,
            SessionState.CAPTURING,
            SessionState.ANALYZING,
            SessionState.CAPTURING,
            SessionState.ANALYZING,
            SessionState.CAPTURING,
            SessionState.ANALYZING,
            SessionState.SUCCEEDED,
        ]

    def test_enrollment_stores_centroid_of_rounds(self):
        """Test that the three round descriptors are averaged."""
        extractor = ScriptedExtractor(
            [make_descriptor(0.0), make_descriptor(3.0), make_descriptor(6.0)]
        )
        session = make_session(extractor=extractor)

        asyncio.run(session.run(SessionMode.ENROLLMENT))

        assert session.enrollment.load().descriptor == make_descriptor(3.0)
        assert extractor.calls == 3

    def test_enrollment_rounds_are_configurable(self):
        extractor = ScriptedExtractor([make_descriptor()])
        session = make_session(extractor=extractor, enrollment_rounds=1)

        outcome = asyncio.run(session.run(SessionMode.ENROLLMENT))

        assert outcome.state is SessionState.SUCCEEDED
        assert extractor.calls == 1

    def test_reenrollment_overwrites(self):
        session = make_session(extractor=ScriptedExtractor([make_descriptor(50.0)]))
        session.enrollment.save(make_descriptor())

        asyncio.run(session.run(SessionMode.ENROLLMENT))

        assert session.enrollment.load().descriptor == make_descriptor(50.0)


class TestVerification:
    """Tests for verification sessions."""

    def test_verification_succeeds_after_enrollment(self):
        backend = FakeCameraBackend()
        session = make_session(backend=backend)

        async def scenario():
            await session.run(SessionMode.ENROLLMENT)
            return await session.run(SessionMode.VERIFICATION)

        outcome = asyncio.run(scenario())

        assert outcome.state is SessionState.SUCCEEDED
        assert outcome.match is not None and outcome.match.is_match
        assert [r.outcome for r in session.ledger.records()] == [AttemptOutcome.SUCCESS]
        assert backend.release_count == 2

    def test_verification_mismatch_fails(self):
        backend = FakeCameraBackend()
        session = make_session(backend=backend)
        enroll_far_template(session)

        outcome = asyncio.run(session.run(SessionMode.VERIFICATION))

        assert outcome.state is SessionState.FAILED
        assert outcome.retry_allowed
        assert [r.outcome for r in session.ledger.records()] == [AttemptOutcome.FAILURE]
        assert backend.release_count == 1

    def test_not_enrolled_fails_without_matching(self):
        """Test that verification without a template never succeeds."""
        backend = FakeCameraBackend()
        matcher = SpyMatcher()
        session = make_session(backend=backend, matcher=matcher)

        outcome = asyncio.run(session.run(SessionMode.VERIFICATION))

        assert outcome.state is SessionState.FAILED
        assert outcome.reason == NOT_ENROLLED_REASON
        assert matcher.calls == 0
        assert backend.open_calls == 1
        assert backend.release_count == 1
        assert session.ledger.records() == ()

    def test_not_enrolled_without_camera(self):
        """Test that a missing camera is reported before the missing template."""
        backend = FakeCameraBackend(devices=[])
        matcher = SpyMatcher()
        session = make_session(backend=backend, matcher=matcher)
        states = []
        session.add_listener(lambda e: states.append(e.state))

        outcome = asyncio.run(session.run(SessionMode.VERIFICATION))

        assert outcome.state is SessionState.RESOURCE_UNAVAILABLE
        assert not outcome.retry_allowed
        assert states == [SessionState.REQUESTING_RESOURCE, SessionState.RESOURCE_UNAVAILABLE]
        assert backend.open_calls == 0
        assert matcher.calls == 0
        assert session.ledger.records() == ()

    def test_enrollment_removed_during_session(self):
        """Test that the template is checked again at analysis time."""
        matcher = SpyMatcher()
        session = make_session(matcher=matcher)
        session.enrollment.save(make_descriptor())

        def clear_on_analyzing(event):
            if event.state is SessionState.ANALYZING:
                session.enrollment.clear()

        session.add_listener(clear_on_analyzing)
        outcome = asyncio.run(session.run(SessionMode.VERIFICATION))

        assert outcome.state is SessionState.FAILED
        assert outcome.reason == NOT_ENROLLED_REASON
        assert matcher.calls == 0
        assert session.ledger.records() == ()

    def test_fifth_failure_surfaces_locked(self):
        session = make_session()
        enroll_far_template(session)
        session.ledger.seed_failures(4)

        outcome = asyncio.run(session.run(SessionMode.VERIFICATION))

        assert outcome.state is SessionState.LOCKED
        assert outcome.lockout_minutes == 27
        assert not outcome.retry_allowed
        assert len(session.ledger.records()) == 5

    def test_locked_out_never_touches_camera(self):
        """Test that a locked gate reaches Locked without acquiring."""
        backend = FakeCameraBackend()
        matcher = SpyMatcher()
        session = make_session(backend=backend, matcher=matcher)
        session.enrollment.save(make_descriptor())
        session.ledger.seed_failures(5)

        outcome = asyncio.run(session.run(SessionMode.VERIFICATION))

        assert outcome.state is SessionState.LOCKED
        assert outcome.lockout_minutes == 26
        assert "26 minutes" in outcome.reason
        assert backend.open_calls == 0
        assert backend.list_calls == 0
        assert matcher.calls == 0
        assert len(session.ledger.records()) == 5

    def test_lockout_does_not_block_enrollment(self):
        session = make_session()
        session.ledger.seed_failures(5)

        outcome = asyncio.run(session.run(SessionMode.ENROLLMENT))

        assert outcome.state is SessionState.SUCCEEDED

    def test_source_is_recorded(self):
        session = make_session(source="journal-ui")
        enroll_far_template(session)

        asyncio.run(session.run(SessionMode.VERIFICATION))

        assert session.ledger.records()[0].source == "journal-ui"


class TestCameraFailures:
    """Tests for mapping camera failures onto terminal states."""

    def test_no_camera_present(self):
        backend = FakeCameraBackend(devices=[])
        session = make_session(backend=backend)

        outcome = asyncio.run(session.run(SessionMode.ENROLLMENT))

        assert outcome.state is SessionState.RESOURCE_UNAVAILABLE
        assert not outcome.retry_allowed
        assert backend.open_calls == 0

    def test_capture_api_missing(self):
        backend = FakeCameraBackend(api=False)
        session = make_session(backend=backend)

        outcome = asyncio.run(session.run(SessionMode.ENROLLMENT))

        assert outcome.state is SessionState.RESOURCE_UNAVAILABLE
        assert backend.open_calls == 0

    def test_permission_denied(self):
        session = make_session(backend=FakeCameraBackend(open_error=PermissionError("no")))

        outcome = asyncio.run(session.run(SessionMode.ENROLLMENT))

        assert outcome.state is SessionState.PERMISSION_DENIED
        assert outcome.retry_allowed

    def test_device_vanished_during_acquire(self):
        session = make_session(backend=FakeCameraBackend(open_error=FileNotFoundError("gone")))

        outcome = asyncio.run(session.run(SessionMode.ENROLLMENT))

        assert outcome.state is SessionState.RESOURCE_UNAVAILABLE

    def test_camera_busy(self):
        session = make_session(
            backend=FakeCameraBackend(open_error=OSError(errno.EBUSY, "busy"))
        )

        outcome = asyncio.run(session.run(SessionMode.ENROLLMENT))

        assert outcome.state is SessionState.FAILED
        assert outcome.reason == CAMERA_GUIDANCE[CameraErrorKind.ALREADY_IN_USE]

    def test_unknown_error_message_is_surfaced(self):
        session = make_session(backend=FakeCameraBackend(open_error=RuntimeError("v4l2 ioctl")))

        outcome = asyncio.run(session.run(SessionMode.ENROLLMENT))

        assert outcome.state is SessionState.FAILED
        assert "v4l2 ioctl" in outcome.reason

    def test_timeout_fails_and_releases_late_handle(self):
        gate = threading.Event()
        backend = FakeCameraBackend(open_gate=gate)
        session = make_session(backend=backend, timeout_ms=20)

        async def scenario():
            outcome = await session.run(SessionMode.ENROLLMENT)
            gate.set()
            await wait_for(lambda: backend.release_count == 1)
            return outcome

        outcome = asyncio.run(scenario())

        assert outcome.state is SessionState.FAILED
        assert outcome.reason == CAMERA_GUIDANCE[CameraErrorKind.TIMEOUT]

    def test_extractor_error_fails_session(self):
        backend = FakeCameraBackend()
        session = make_session(backend=backend, extractor=FailingExtractor())

        outcome = asyncio.run(session.run(SessionMode.ENROLLMENT))

        assert outcome.state is SessionState.FAILED
        assert "model crashed" in outcome.reason
        assert backend.release_count == 1


class TestCancellation:
    """Tests for cancel()."""

    def test_cancel_during_capturing(self):
        """Test that cancel returns to Idle and releases exactly once."""
        backend = FakeCameraBackend()
        session = make_session(backend=backend, extractor=ScriptedExtractor([None]))

        async def scenario():
            task = session.start(SessionMode.ENROLLMENT)
            await wait_for_state(session, SessionState.CAPTURING)
            await asyncio.sleep(0.01)

            assert session.cancel() is True
            assert session.cancel() is False
            outcome = await task

            progress = session.current_event.progress
            await asyncio.sleep(0.02)
            assert session.current_event.progress == progress
            return outcome

        outcome = asyncio.run(scenario())

        assert outcome.state is SessionState.IDLE
        assert session.state is SessionState.IDLE
        assert backend.release_count == 1
        assert not session.enrollment.exists()
        assert session.ledger.records() == ()

    def test_cancel_during_acquisition(self):
        """Test that a handle arriving after cancel is still released."""
        gate = threading.Event()
        backend = FakeCameraBackend(open_gate=gate)
        session = make_session(backend=backend, timeout_ms=5000)

        async def scenario():
            task = session.start(SessionMode.ENROLLMENT)
            await wait_for(lambda: backend.open_calls == 1)
            assert session.state is SessionState.REQUESTING_RESOURCE

            session.cancel()
            outcome = await task
            assert backend.release_count == 0

            gate.set()
            await wait_for(lambda: backend.release_count == 1)
            return outcome

        outcome = asyncio.run(scenario())

        assert outcome.state is SessionState.IDLE
        assert backend.release_count == 1

    def test_cancel_before_task_runs(self):
        """Test that a session cancelled right after start() never completes."""
        backend = FakeCameraBackend()
        session = make_session(backend=backend, enrollment_rounds=1)
        states = []
        session.add_listener(lambda e: states.append(e.state))

        async def scenario():
            task = session.start(SessionMode.ENROLLMENT)
            assert session.cancel() is True
            assert session.cancel() is False
            outcome = await task
            assert not session.is_active
            assert states == [SessionState.IDLE]
            assert backend.open_calls == 0
            assert not session.enrollment.exists()

            retry = await session.run(SessionMode.ENROLLMENT)
            return outcome, retry

        outcome, retry = asyncio.run(scenario())

        assert outcome.state is SessionState.IDLE
        assert outcome.reason == "cancelled"
        assert retry.state is SessionState.SUCCEEDED
        assert backend.open_calls == 1

    def test_cancel_when_idle(self):
        session = make_session()
        assert session.cancel() is False

    def test_cancel_after_completion(self):
        session = make_session()
        asyncio.run(session.run(SessionMode.ENROLLMENT))
        assert session.cancel() is False
        assert session.state is SessionState.SUCCEEDED

    def test_restart_after_cancel(self):
        session = make_session(enrollment_rounds=1)

        async def scenario():
            session.extractor = ScriptedExtractor([None])
            task = session.start(SessionMode.ENROLLMENT)
            await wait_for_state(session, SessionState.CAPTURING)
            session.cancel()
            await task

            session.extractor = steady_extractor()
            return await session.run(SessionMode.ENROLLMENT)

        outcome = asyncio.run(scenario())
        assert outcome.state is SessionState.SUCCEEDED


class TestCapturing:
    """Tests for the capture round mechanics."""

    def test_round_extends_until_descriptor(self):
        """Test that 100% progress without a descriptor keeps capturing."""
        extractor = ScriptedExtractor([None] * 15 + [make_descriptor()])
        session = make_session(
            extractor=extractor, enrollment_rounds=1, poll_interval_ms=5, progress_step=50
        )
        events = []
        session.add_listener(events.append)

        outcome = asyncio.run(session.run(SessionMode.ENROLLMENT))

        assert outcome.state is SessionState.SUCCEEDED
        full = [
            i for i, e in enumerate(events)
            if e.state is SessionState.CAPTURING and e.progress == 100
        ]
        analyzing = [i for i, e in enumerate(events) if e.state is SessionState.ANALYZING]
        assert full and analyzing
        assert full[0] < analyzing[0]
        assert extractor.calls == 16

    def test_first_descriptor_is_latched(self):
        """Test that later frames never replace the latched descriptor."""
        extractor = ScriptedExtractor([make_descriptor(0.0), make_descriptor(9.0)])
        session = make_session(
            extractor=extractor, enrollment_rounds=1, progress_step=1
        )

        asyncio.run(session.run(SessionMode.ENROLLMENT))

        assert session.enrollment.load().descriptor == make_descriptor(0.0)
        assert extractor.calls == 1

    def test_progress_is_capped(self):
        session = make_session(enrollment_rounds=1, progress_step=30)
        progress = []
        session.add_listener(lambda e: progress.append(e.progress))

        asyncio.run(session.run(SessionMode.ENROLLMENT))

        assert max(progress) == 100

    def test_analysis_delay(self):
        session = make_session(enrollment_rounds=1, analysis_delay_ms=50)
        timestamps = {}

        def on_event(event):
            timestamps.setdefault(event.state, asyncio.get_running_loop().time())

        session.add_listener(on_event)
        asyncio.run(session.run(SessionMode.ENROLLMENT))

        elapsed = timestamps[SessionState.SUCCEEDED] - timestamps[SessionState.ANALYZING]
        assert elapsed >= 0.045


class TestObservers:
    """Tests for listeners and event queues."""

    def test_single_session_at_a_time(self):
        session = make_session(extractor=ScriptedExtractor([None]))

        async def scenario():
            task = session.start(SessionMode.ENROLLMENT)
            await wait_for_state(session, SessionState.CAPTURING)
            with pytest.raises(SessionActiveError):
                session.start(SessionMode.VERIFICATION)
            with pytest.raises(SessionActiveError):
                await session.run(SessionMode.VERIFICATION)
            session.cancel()
            return await task

        outcome = asyncio.run(scenario())
        assert outcome.state is SessionState.IDLE

    def test_event_queue(self):
        session = make_session(enrollment_rounds=1)

        async def scenario():
            queue = session.events()
            await session.run(SessionMode.ENROLLMENT)
            events = []
            while not queue.empty():
                events.append(queue.get_nowait())
            return events

        events = asyncio.run(scenario())

        assert events[0].state is SessionState.REQUESTING_RESOURCE
        assert events[-1].state is SessionState.SUCCEEDED
        assert events[-1].mode is SessionMode.ENROLLMENT

    def test_new_session_reenters_idle(self):
        """Test that a session after a terminal one starts with an Idle event."""
        session = make_session(enrollment_rounds=1)
        states = []
        session.add_listener(lambda e: states.append(e.state))

        async def scenario():
            first = await session.run(SessionMode.ENROLLMENT)
            boundary = len(states)
            second = await session.run(SessionMode.ENROLLMENT)
            return first, second, boundary

        first, second, boundary = asyncio.run(scenario())

        assert first.state is SessionState.SUCCEEDED
        assert second.state is SessionState.SUCCEEDED
        assert states[0] is SessionState.REQUESTING_RESOURCE
        assert states[boundary - 1] is SessionState.SUCCEEDED
        assert states[boundary:boundary + 2] == [
            SessionState.IDLE,
            SessionState.REQUESTING_RESOURCE,
        ]

    def test_full_queue_drops_oldest(self):
        session = make_session(enrollment_rounds=1)

        async def scenario():
            queue = session.events(maxsize=2)
            await session.run(SessionMode.ENROLLMENT)
            return [queue.get_nowait(), queue.get_nowait()]

        events = asyncio.run(scenario())
        assert events[-1].state is SessionState.SUCCEEDED

    def test_failing_listener_does_not_break_session(self):
        session = make_session(enrollment_rounds=1)

        def broken(event):
            raise RuntimeError("ui gone")

        session.add_listener(broken)
        outcome = asyncio.run(session.run(SessionMode.ENROLLMENT))
        assert outcome.state is SessionState.SUCCEEDED

    def test_remove_listener(self):
        session = make_session(enrollment_rounds=1)
        events = []
        session.add_listener(events.append)
        session.remove_listener(events.append)

        asyncio.run(session.run(SessionMode.ENROLLMENT))
        assert events == []

    def test_event_to_dict(self):
        session = make_session()
        data = session.current_event.to_dict()
        assert data["state"] == "idle"
        assert data["mode"] is None
