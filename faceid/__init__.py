"""
Core Module for the Face ID Gate

Client-side biometric gate for a personal journal: enrolls one face, then
verifies later access attempts against it, with brute-force lockout.

Main components:
    - config: Configuration loading and management
    - camera: Bounded camera acquisition with classified failures
    - feature_extractor: Frame -> FeatureDescriptor (geometric or MediaPipe)
    - repository: Key-value persistence (in-memory or SQLite)
    - enrollment_store: The single enrolled template
    - attempt_ledger: Attempt history and derived lockout
    - matching: Descriptor matchers
    - session: Enrollment/verification state machine
    - gate: Consumer facade

The MediaPipe detector (face_detector) is imported lazily by the landmark
extractor and is not re-exported here.

Usage:
    from faceid import get_gate, SessionMode
    gate = get_gate()
    outcome = await gate.run(SessionMode.ENROLLMENT)
"""

from faceid.config import (
    get_config,
    get_section,
    get_camera_config,
    get_capture_config,
    get_face_detection_config,
    get_matching_config,
    get_lockout_config,
    get_storage_config,
    get_api_config,
    get_server_config,
)

from faceid.camera import (
    CameraResource,
    CameraBackend,
    OpenCVCameraBackend,
    CameraError,
    CameraErrorKind,
    VideoStreamHandle,
    classify_camera_error,
    diagnose_camera,
)

from faceid.feature_extractor import (
    FeatureDescriptor,
    FeatureExtractor,
    GeometricFeatureExtractor,
    LandmarkFeatureExtractor,
    create_extractor,
)

from faceid.repository import (
    AuthRepository,
    InMemoryAuthRepository,
    SQLiteAuthRepository,
    create_repository,
)

from faceid.enrollment_store import EnrollmentStore, EnrolledTemplate

from faceid.attempt_ledger import AttemptLedger, AttemptOutcome, AttemptRecord

from faceid.matching import DescriptorMatcher, LandmarkVotingMatcher, MatchResult

from faceid.session import (
    AuthSession,
    SessionActiveError,
    SessionEvent,
    SessionMode,
    SessionOutcome,
    SessionState,
)

from faceid.gate import FaceIdGate, build_gate, get_gate, close_gate

__all__ = [
    # Configuration
    "get_config",
    "get_section",
    "get_camera_config",
    "get_capture_config",
    "get_face_detection_config",
    "get_matching_config",
    "get_lockout_config",
    "get_storage_config",
    "get_api_config",
    "get_server_config",
    # Camera
    "CameraResource",
    "CameraBackend",
    "OpenCVCameraBackend",
    "CameraError",
    "CameraErrorKind",
    "VideoStreamHandle",
    "classify_camera_error",
    "diagnose_camera",
    # Feature Extraction
    "FeatureDescriptor",
    "FeatureExtractor",
    "GeometricFeatureExtractor",
    "LandmarkFeatureExtractor",
    "create_extractor",
    # Persistence
    "AuthRepository",
    "InMemoryAuthRepository",
    "SQLiteAuthRepository",
    "create_repository",
    "EnrollmentStore",
    "EnrolledTemplate",
    "AttemptLedger",
    "AttemptOutcome",
    "AttemptRecord",
    # Matching
    "DescriptorMatcher",
    "LandmarkVotingMatcher",
    "MatchResult",
    # Session
    "AuthSession",
    "SessionActiveError",
    "SessionEvent",
    "SessionMode",
    "SessionOutcome",
    "SessionState",
    # Gate
    "FaceIdGate",
    "build_gate",
    "get_gate",
    "close_gate",
]
