"""
Feature Extraction Module

Turns a live video stream into FeatureDescriptors, the unit the matcher
compares. A descriptor is five landmark points in frame pixel coordinates:

    0. eye (image left)
    1. eye (image right)
    2. nose
    3. mouth corner (image left)
    4. mouth corner (image right)

Two extractors are provided:
    - GeometricFeatureExtractor: placeholder geometry. Assumes a centred face
      and places the landmarks at fixed fractions of that box, with a small
      jitter. It needs no model and is the default.
    - LandmarkFeatureExtractor: MediaPipe face landmarks (see face_detector).

Both are polled repeatedly by the session and return None until a usable
frame (and, for landmarks, a face) is available.

Usage:
    from faceid.feature_extractor import create_extractor

    extractor = create_extractor("geometric")
    descriptor = extractor.sample_frame(handle)
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from faceid.camera import VideoStreamHandle

logger = logging.getLogger(__name__)


N_LANDMARKS = 5

LANDMARK_NAMES = (
    "eye_image_left",
    "eye_image_right",
    "nose",
    "mouth_image_left",
    "mouth_image_right",
)

# Landmark positions as (x, y) fractions of the face box
FACE_POINT_FRACTIONS = np.array(
    [
        [0.3, 0.3],
        [0.7, 0.3],
        [0.5, 0.5],
        [0.3, 0.7],
        [0.7, 0.7],
    ],
    dtype=np.float64,
)


@dataclass(frozen=True, eq=False)
class FeatureDescriptor:
    """
    Immutable fixed-shape face descriptor.

    Attributes:
        points: (5, 2) float32 landmark coordinates, read-only.
    """

    points: np.ndarray

    def __post_init__(self):
        points = np.array(self.points, dtype=np.float32)

        if points.shape != (N_LANDMARKS, 2):
            raise ValueError(
                f"points must be ({N_LANDMARKS}, 2), got {points.shape}"
            )
        if not np.all(np.isfinite(points)):
            raise ValueError("points must be finite")

        points.setflags(write=False)
        object.__setattr__(self, "points", points)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FeatureDescriptor):
            return NotImplemented
        return bool(np.array_equal(self.points, other.points))

    def __hash__(self) -> int:
        # Adding 0.0 folds -0.0 into 0.0 so equal descriptors hash alike
        return hash((self.points + 0.0).tobytes())

    def to_list(self) -> List[List[float]]:
        """JSON-friendly form, rounded to hundredths of a pixel."""
        return [[round(float(x), 2), round(float(y), 2)] for x, y in self.points]

    @classmethod
    def from_list(cls, data: Sequence[Sequence[float]]) -> "FeatureDescriptor":
        return cls(points=np.asarray(data, dtype=np.float32))

    @classmethod
    def centroid(cls, descriptors: Sequence["FeatureDescriptor"]) -> "FeatureDescriptor":
        """Point-wise mean of several descriptors."""
        if not descriptors:
            raise ValueError("centroid of an empty descriptor list")
        stacked = np.stack([d.points for d in descriptors]).astype(np.float64)
        return cls(points=stacked.mean(axis=0))


class FeatureExtractor(ABC):
    """Reduces the current frame of a stream to a FeatureDescriptor."""

    @abstractmethod
    def sample_frame(self, handle: VideoStreamHandle) -> Optional[FeatureDescriptor]:
        """
        Sample the stream once.

        Returns:
            A descriptor, or None while no usable frame exists yet.
        """

    def close(self) -> None:
        """Release any model resources."""


class GeometricFeatureExtractor(FeatureExtractor):
    """
    Placeholder extractor.

    The face box is 40% x 60% of the frame, centred, with its position
    jittered by up to position_jitter pixels and its size by up to
    size_jitter pixels. Samples of the same stream therefore land close to
    each other, which is what the matcher's pixel threshold assumes.
    """

    def __init__(
        self,
        position_jitter: float = 10.0,
        size_jitter: float = 5.0,
        rng: Optional[np.random.Generator] = None,
    ):
        self.position_jitter = position_jitter
        self.size_jitter = size_jitter
        self.rng = rng if rng is not None else np.random.default_rng()

    def sample_frame(self, handle: VideoStreamHandle) -> Optional[FeatureDescriptor]:
        frame = handle.read()
        if frame is None:
            return None

        height, width = frame.shape[:2]
        if width == 0 or height == 0:
            return None

        return self.describe(width, height)

    def describe(self, width: int, height: int) -> FeatureDescriptor:
        """Build the placeholder descriptor for a frame of the given size."""
        face_w = width * 0.4
        face_h = height * 0.6

        x = width / 2 - face_w / 2 + self._jitter(self.position_jitter)
        y = height / 2 - face_h / 2 + self._jitter(self.position_jitter)
        w = face_w + self._jitter(self.size_jitter)
        h = face_h + self._jitter(self.size_jitter)

        points = np.column_stack(
            [
                x + w * FACE_POINT_FRACTIONS[:, 0],
                y + h * FACE_POINT_FRACTIONS[:, 1],
            ]
        )
        return FeatureDescriptor(points=points)

    def _jitter(self, amount: float) -> float:
        if amount <= 0:
            return 0.0
        return float(self.rng.uniform(-amount, amount))


class LandmarkFeatureExtractor(FeatureExtractor):
    """
    MediaPipe-backed extractor.

    Returns None for frames without a detectable face, so the session keeps
    polling until one is found.
    """

    def __init__(self, detector: Any = None, config: Optional[Dict[str, Any]] = None):
        if detector is None:
            from faceid.face_detector import FaceDetector

            if config is None:
                from faceid.config import get_face_detection_config

                config = get_face_detection_config()
            detector = FaceDetector(config)

        self.detector = detector

    def sample_frame(self, handle: VideoStreamHandle) -> Optional[FeatureDescriptor]:
        frame = handle.read()
        if frame is None:
            return None

        detection = self.detector.detect(frame)
        if detection is None:
            return None

        return FeatureDescriptor(points=detection.key_points)

    def close(self) -> None:
        self.detector.close()


def create_extractor(name: str = "geometric", **kwargs: Any) -> FeatureExtractor:
    """
    Build an extractor by its config name.

    Args:
        name: "geometric" or "landmark".

    Raises:
        ValueError: For unknown names.
    """
    if name == "geometric":
        return GeometricFeatureExtractor(**kwargs)
    if name == "landmark":
        return LandmarkFeatureExtractor(**kwargs)
    raise ValueError(f"Unknown feature extractor '{name}'. Use 'geometric' or 'landmark'.")
