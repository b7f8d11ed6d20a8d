"""
Camera Resource Module

Acquires and releases the video capture device used for Face ID.

Acquisition is a blocking driver call, so it runs in the default executor
and is raced against a timer. Whichever settles first wins. If the timer
wins (or the waiting session is cancelled) the driver call is left to
finish on its own and the handle it eventually returns is released by a
completion callback, so no device stays open.

Driver failures are mapped once, here, onto the closed CameraErrorKind set.
Everything downstream matches on the kind instead of on message text.

Usage:
    from faceid.camera import CameraResource, CameraError

    camera = CameraResource.from_config()
    if camera.is_camera_present():
        try:
            handle = await camera.acquire()
        except CameraError as e:
            print(e.kind, e.message)
        else:
            frame = handle.read()
            camera.release(handle)
"""

import asyncio
import errno
import glob
import logging
import re
import sys
import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, List, Optional

import numpy as np

logger = logging.getLogger(__name__)


DEFAULT_ACQUIRE_TIMEOUT_MS = 8000


class CameraErrorKind(str, Enum):
    """Closed set of camera acquisition failures."""

    PERMISSION_DENIED = "permission_denied"
    NOT_FOUND = "not_found"
    ALREADY_IN_USE = "already_in_use"
    CONSTRAINT_UNSATISFIABLE = "constraint_unsatisfiable"
    TIMEOUT = "timeout"
    API_UNAVAILABLE = "api_unavailable"
    UNKNOWN = "unknown"


# User-facing guidance per failure kind
CAMERA_GUIDANCE = {
    CameraErrorKind.PERMISSION_DENIED: (
        "Camera access denied. Please allow camera access in your system settings."
    ),
    CameraErrorKind.NOT_FOUND: "No camera found on this device",
    CameraErrorKind.ALREADY_IN_USE: (
        "Camera is already in use by another application. "
        "Please close other applications using the camera."
    ),
    CameraErrorKind.CONSTRAINT_UNSATISFIABLE: (
        "Camera doesn't meet the required constraints"
    ),
    CameraErrorKind.TIMEOUT: (
        "Camera failed to start within the expected time. "
        "Try reconnecting the camera, closing other camera applications, "
        "or restarting the application."
    ),
    CameraErrorKind.API_UNAVAILABLE: "Camera not available on this device",
    CameraErrorKind.UNKNOWN: "Failed to access camera",
}


class CameraError(Exception):
    """
    Classified camera failure.

    Attributes:
        kind: One of CameraErrorKind.
        message: Human-readable reason. For UNKNOWN this carries the
                 underlying driver message.
    """

    def __init__(self, kind: CameraErrorKind, message: Optional[str] = None):
        self.kind = kind
        self.message = message or CAMERA_GUIDANCE[kind]
        super().__init__(self.message)

    @property
    def guidance(self) -> str:
        """Suggested user action for this kind of failure."""
        return CAMERA_GUIDANCE[self.kind]


def classify_camera_error(exc: BaseException) -> CameraError:
    """
    Map a host/driver exception onto a CameraError.

    Classification uses exception types and errno values only. Message text
    is kept solely as the payload of UNKNOWN.

    Args:
        exc: Exception raised while opening the device.

    Returns:
        The equivalent CameraError (exc itself if already classified).
    """
    if isinstance(exc, CameraError):
        return exc
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return CameraError(CameraErrorKind.TIMEOUT)
    if isinstance(exc, PermissionError):
        return CameraError(CameraErrorKind.PERMISSION_DENIED)
    if isinstance(exc, FileNotFoundError):
        return CameraError(CameraErrorKind.NOT_FOUND)
    if isinstance(exc, (ImportError, NotImplementedError)):
        return CameraError(CameraErrorKind.API_UNAVAILABLE)
    if isinstance(exc, OSError):
        if exc.errno == errno.EBUSY:
            return CameraError(CameraErrorKind.ALREADY_IN_USE)
        if exc.errno in (errno.EACCES, errno.EPERM):
            return CameraError(CameraErrorKind.PERMISSION_DENIED)
        if exc.errno in (errno.ENOENT, errno.ENODEV, errno.ENXIO):
            return CameraError(CameraErrorKind.NOT_FOUND)
        if exc.errno in (errno.EINVAL, errno.ERANGE):
            return CameraError(CameraErrorKind.CONSTRAINT_UNSATISFIABLE)

    detail = str(exc) or exc.__class__.__name__
    return CameraError(CameraErrorKind.UNKNOWN, f"Camera access failed: {detail}")


class VideoStreamHandle:
    """
    An open video stream owned by one session.

    Wraps a driver capture object exposing ``read() -> (ok, frame)`` and
    ``release()``. Closing is idempotent.
    """

    def __init__(self, capture: Any, device_id: int, width: int, height: int):
        self._capture = capture
        self.device_id = device_id
        self.width = width
        self.height = height
        self.opened_at = time.time()
        self._released = False

    @property
    def is_released(self) -> bool:
        return self._released

    def read(self) -> Optional[np.ndarray]:
        """Read the current frame, or None if no displayable frame exists yet."""
        if self._released:
            return None
        ok, frame = self._capture.read()
        if not ok or frame is None or frame.size == 0:
            return None
        return frame

    def close(self) -> None:
        if self._released:
            return
        self._released = True
        try:
            self._capture.release()
        except Exception as e:
            logger.warning(f"Error while releasing camera {self.device_id}: {e}")

    def describe(self) -> Dict[str, Any]:
        return {
            "device_id": self.device_id,
            "width": self.width,
            "height": self.height,
            "released": self._released,
        }


class CameraBackend(ABC):
    """
    Driver interface for capture devices.

    Implementations must not raise from api_available(). open() is allowed
    to block; CameraResource runs it off the event loop.
    """

    @abstractmethod
    def api_available(self) -> bool:
        """Whether the capture API exists on this host at all."""

    @abstractmethod
    def list_devices(self) -> List[int]:
        """Enumerate capture device ids without opening a stream."""

    @abstractmethod
    def open(
        self,
        device_id: int,
        width: int,
        height: int,
        min_width: int,
        min_height: int,
    ) -> VideoStreamHandle:
        """Open a device. Raises CameraError or a host exception on failure."""


class OpenCVCameraBackend(CameraBackend):
    """
    Capture driver backed by OpenCV's VideoCapture.

    On Linux, devices are enumerated from /dev/video* so no stream is opened
    just to check presence. Elsewhere the first few indices are tried.
    """

    def __init__(self, max_index: int = 5):
        self.max_index = max_index

    def api_available(self) -> bool:
        try:
            import cv2
        except ImportError:
            return False
        return hasattr(cv2, "VideoCapture")

    def list_devices(self) -> List[int]:
        if sys.platform.startswith("linux"):
            devices = []
            for path in glob.glob("/dev/video*"):
                match = re.search(r"(\d+)$", path)
                if match:
                    devices.append(int(match.group(1)))
            return sorted(devices)

        import cv2

        available = []
        for i in range(self.max_index):
            cap = cv2.VideoCapture(i)
            if cap.isOpened():
                available.append(i)
            cap.release()
        return available

    def open(
        self,
        device_id: int,
        width: int,
        height: int,
        min_width: int,
        min_height: int,
    ) -> VideoStreamHandle:
        import cv2

        if sys.platform.startswith("linux"):
            # Surface permission/absence precisely; VideoCapture only says "not opened"
            path = f"/dev/video{device_id}"
            with open(path, "rb"):
                pass

        cap = cv2.VideoCapture(device_id)
        if not cap.isOpened():
            cap.release()
            raise CameraError(
                CameraErrorKind.ALREADY_IN_USE,
                f"Camera {device_id} could not be opened; "
                "it may be in use by another application",
            )

        cap.set(cv2.CAP_PROP_FRAME_WIDTH, width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, height)

        actual_width = int(cap.get(cv2.CAP_PROP_FRAME_WIDTH))
        actual_height = int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT))

        if actual_width < min_width or actual_height < min_height:
            cap.release()
            raise CameraError(
                CameraErrorKind.CONSTRAINT_UNSATISFIABLE,
                f"Camera resolution {actual_width}x{actual_height} is below "
                f"the required {min_width}x{min_height}",
            )

        logger.info(f"Opened camera {device_id} at {actual_width}x{actual_height}")
        return VideoStreamHandle(cap, device_id, actual_width, actual_height)


class CameraResource:
    """
    Bounded, leak-free access to one capture device.

    Attributes:
        backend: Driver used to enumerate and open devices.
        device_id: Device index to open.
        timeout_ms: Default acquisition cutoff in milliseconds.
    """

    def __init__(
        self,
        backend: Optional[CameraBackend] = None,
        device_id: int = 0,
        width: int = 640,
        height: int = 480,
        min_width: int = 1,
        min_height: int = 1,
        timeout_ms: int = DEFAULT_ACQUIRE_TIMEOUT_MS,
    ):
        self.backend = backend or OpenCVCameraBackend()
        self.device_id = device_id
        self.width = width
        self.height = height
        self.min_width = min_width
        self.min_height = min_height
        self.timeout_ms = timeout_ms

    @classmethod
    def from_config(
        cls,
        config: Optional[Dict[str, Any]] = None,
        backend: Optional[CameraBackend] = None,
    ) -> "CameraResource":
        """Build from the "camera" config section."""
        if config is None:
            from faceid.config import get_camera_config

            config = get_camera_config()

        return cls(
            backend=backend,
            device_id=config.get("device_id", 0),
            width=config.get("width", 640),
            height=config.get("height", 480),
            min_width=config.get("min_width", 1),
            min_height=config.get("min_height", 1),
            timeout_ms=config.get("acquire_timeout_ms", DEFAULT_ACQUIRE_TIMEOUT_MS),
        )

    def api_available(self) -> bool:
        try:
            return bool(self.backend.api_available())
        except Exception as e:
            logger.warning(f"Capture API check failed: {e}")
            return False

    def is_camera_present(self) -> bool:
        """
        Check for at least one capture device without opening a stream.

        Never raises; any enumeration failure yields False.
        """
        try:
            if not self.backend.api_available():
                return False
            return len(self.backend.list_devices()) > 0
        except Exception as e:
            logger.warning(f"Error checking camera availability: {e}")
            return False

    async def acquire(self, timeout_ms: Optional[int] = None) -> VideoStreamHandle:
        """
        Open the camera, giving up after timeout_ms.

        Args:
            timeout_ms: Cutoff in milliseconds; defaults to self.timeout_ms.

        Returns:
            An open VideoStreamHandle.

        Raises:
            CameraError: Classified failure, including TIMEOUT.
            asyncio.CancelledError: If the awaiting task is cancelled. The
                in-flight acquisition is drained in that case too.
        """
        if not self.api_available():
            raise CameraError(CameraErrorKind.API_UNAVAILABLE)

        if timeout_ms is None:
            timeout_ms = self.timeout_ms

        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(None, self._open_usable)

        try:
            done, _ = await asyncio.wait({future}, timeout=timeout_ms / 1000.0)
        except asyncio.CancelledError:
            self._drain(future)
            raise

        if not done:
            logger.warning(f"Camera {self.device_id} did not open within {timeout_ms}ms")
            self._drain(future)
            raise CameraError(CameraErrorKind.TIMEOUT)

        try:
            return future.result()
        except Exception as exc:
            error = classify_camera_error(exc)
            logger.warning(f"Camera acquisition failed ({error.kind.value}): {error.message}")
            raise error from exc

    def release(self, handle: Optional[VideoStreamHandle]) -> None:
        """Release a handle. Safe on None and on already-released handles."""
        if handle is None:
            return
        handle.close()

    def _open_usable(self) -> VideoStreamHandle:
        handle = self.backend.open(
            self.device_id, self.width, self.height, self.min_width, self.min_height
        )
        if handle.width <= 0 or handle.height <= 0:
            handle.close()
            raise CameraError(
                CameraErrorKind.UNKNOWN, "Camera stream is not in a usable state"
            )
        return handle

    def _drain(self, future: "asyncio.Future") -> None:
        """Release whatever the abandoned acquisition eventually produces."""

        def _release_late(f: "asyncio.Future") -> None:
            if f.cancelled():
                return
            exc = f.exception()
            if exc is not None:
                logger.debug(f"Abandoned camera acquisition failed: {exc}")
                return
            logger.info("Releasing camera handle from an abandoned acquisition")
            self.release(f.result())

        future.add_done_callback(_release_late)


async def diagnose_camera(camera: CameraResource) -> Dict[str, Any]:
    """
    Open the camera once, time it, and release it.

    Returns:
        Dict with success, time_to_init_ms, and either stream properties
        or the error kind and message.
    """
    logger.info("Starting camera diagnostic test...")
    start = time.perf_counter()
    handle = None

    try:
        handle = await camera.acquire()
        elapsed_ms = (time.perf_counter() - start) * 1000
        logger.info(f"Camera initialized successfully in {elapsed_ms:.0f}ms")
        return {
            "success": True,
            "time_to_init_ms": round(elapsed_ms),
            "stream": handle.describe(),
        }
    except CameraError as e:
        elapsed_ms = (time.perf_counter() - start) * 1000
        logger.warning(f"Camera diagnostic failed: {e.message}")
        return {
            "success": False,
            "time_to_init_ms": round(elapsed_ms),
            "error": e.message,
            "kind": e.kind.value,
        }
    finally:
        camera.release(handle)
