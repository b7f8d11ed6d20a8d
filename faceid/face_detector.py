"""
Face Detection Module

Finds the face in a camera frame with the MediaPipe Face Landmarker and
returns the five key landmarks the Face ID descriptor is built from.

Note: MediaPipe 0.10.x uses the Tasks API (mp.tasks.vision.FaceLandmarker)
instead of the legacy Solutions API (mp.solutions.face_mesh).

Usage:
    from faceid.face_detector import FaceDetector

    detector = FaceDetector(config)
    detection = detector.detect(frame)
    if detection:
        print(detection.key_points)
    detector.close()
"""

import logging
import urllib.request
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import cv2
import mediapipe as mp
import numpy as np
from mediapipe.tasks import python as mp_tasks
from mediapipe.tasks.python import vision

logger = logging.getLogger(__name__)


@dataclass
class FaceDetection:
    """
    Face detection result.

    Attributes:
        bbox: Bounding box (x1, y1, x2, y2) in pixels.
        key_points: (5, 2) pixel coordinates, in KEY_LANDMARKS order.
        confidence: Rough detection confidence (0.0 to 1.0).
    """

    bbox: Tuple[int, int, int, int]
    key_points: np.ndarray
    confidence: float


# MediaPipe Face Landmarker indices (478-point mesh), ordered by image side
KEY_LANDMARKS = {
    "eye_image_left": 33,
    "eye_image_right": 263,
    "nose_tip": 1,
    "mouth_image_left": 61,
    "mouth_image_right": 291,
}

MODEL_URL = "https://storage.googleapis.com/mediapipe-models/face_landmarker/face_landmarker/float16/1/face_landmarker.task"
MODEL_FILENAME = "face_landmarker.task"


def get_model_path() -> str:
    """
    Get the path to the MediaPipe face landmarker model file.
    Downloads the model if it doesn't exist locally.
    """
    from faceid.config import get_project_root

    model_dir = get_project_root() / "storage" / "models"
    model_dir.mkdir(parents=True, exist_ok=True)

    model_path = model_dir / MODEL_FILENAME

    if not model_path.exists():
        logger.info(f"Downloading MediaPipe face landmarker model to {model_path}")
        urllib.request.urlretrieve(MODEL_URL, str(model_path))

    return str(model_path)


class FaceDetector:
    """
    Single-face landmark detection using MediaPipe Face Landmarker.

    Attributes:
        config: Detection parameters (min_detection_confidence,
                min_tracking_confidence).
        landmarker: MediaPipe FaceLandmarker object.
    """

    def __init__(self, config: Dict[str, Any]):
        self.config = config

        min_detection_conf = config.get("min_detection_confidence", 0.5)
        min_tracking_conf = config.get("min_tracking_confidence", 0.5)

        base_options = mp_tasks.BaseOptions(model_asset_path=get_model_path())

        options = vision.FaceLandmarkerOptions(
            base_options=base_options,
            running_mode=vision.RunningMode.IMAGE,
            num_faces=1,
            min_face_detection_confidence=min_detection_conf,
            min_face_presence_confidence=min_detection_conf,
            min_tracking_confidence=min_tracking_conf,
            output_face_blendshapes=False,
            output_facial_transformation_matrixes=False,
        )

        self.landmarker = vision.FaceLandmarker.create_from_options(options)

    def detect(self, frame: np.ndarray) -> Optional[FaceDetection]:
        """
        Detect the face in a BGR frame.

        Args:
            frame: BGR image (H, W, 3) as returned by OpenCV.

        Returns:
            FaceDetection, or None if no face is found.
        """
        h, w = frame.shape[:2]

        # MediaPipe expects RGB, OpenCV delivers BGR
        rgb_frame = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
        mp_image = mp.Image(image_format=mp.ImageFormat.SRGB, data=rgb_frame)

        results = self.landmarker.detect(mp_image)

        if not results.face_landmarks:
            return None

        face_landmarks = results.face_landmarks[0]

        all_points = np.array(
            [[lm.x * w, lm.y * h] for lm in face_landmarks], dtype=np.float32
        )
        key_points = all_points[list(KEY_LANDMARKS.values())]

        return FaceDetection(
            bbox=self._calculate_bbox(all_points, w, h),
            key_points=key_points,
            confidence=self._estimate_confidence(all_points, w, h),
        )

    @staticmethod
    def _calculate_bbox(
        points: np.ndarray, width: int, height: int
    ) -> Tuple[int, int, int, int]:
        """Bounding box of all landmarks, clamped to the image."""
        x1 = max(0, int(np.min(points[:, 0])))
        y1 = max(0, int(np.min(points[:, 1])))
        x2 = min(width, int(np.max(points[:, 0])))
        y2 = min(height, int(np.max(points[:, 1])))
        return (x1, y1, x2, y2)

    @staticmethod
    def _estimate_confidence(points: np.ndarray, width: int, height: int) -> float:
        """
        Rough confidence from framing: faces cut by the image border or
        covering a tiny part of the frame score lower.
        """
        margin = 5
        in_bounds = bool(
            np.all(points[:, 0] >= margin)
            and np.all(points[:, 0] <= width - margin)
            and np.all(points[:, 1] >= margin)
            and np.all(points[:, 1] <= height - margin)
        )

        face_w = np.max(points[:, 0]) - np.min(points[:, 0])
        face_h = np.max(points[:, 1]) - np.min(points[:, 1])
        size_ratio = (face_w * face_h) / (width * height)

        confidence = 0.95 if in_bounds else 0.7
        if size_ratio < 0.01:
            confidence *= 0.5
        elif size_ratio < 0.05:
            confidence *= 0.8

        return float(min(1.0, max(0.0, confidence)))

    def close(self) -> None:
        """Release MediaPipe resources."""
        if self.landmarker is not None:
            self.landmarker.close()
            self.landmarker = None
