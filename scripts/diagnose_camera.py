"""
Camera Diagnostic Script

Checks that the configured camera can be opened within the acquisition
timeout and reports how long it took. Useful when Face ID sessions end in
"Camera failed to start within the expected time".

Usage:
    python scripts/diagnose_camera.py
    python scripts/diagnose_camera.py --device 1 --timeout-ms 15000
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from faceid.camera import CAMERA_GUIDANCE, CameraErrorKind, CameraResource, diagnose_camera
from faceid.config import get_camera_config, setup_logging


def main():
    parser = argparse.ArgumentParser(description="Camera diagnostic for Face ID")
    parser.add_argument(
        "--device", type=int, default=None,
        help="Camera index (default: camera.device_id from config)",
    )
    parser.add_argument(
        "--timeout-ms", type=int, default=None,
        help="Acquisition timeout (default: camera.acquire_timeout_ms from config)",
    )
    args = parser.parse_args()

    setup_logging()

    camera_config = dict(get_camera_config())
    if args.device is not None:
        camera_config["device_id"] = args.device
    if args.timeout_ms is not None:
        camera_config["acquire_timeout_ms"] = args.timeout_ms

    camera = CameraResource.from_config(camera_config)

    print("=" * 60)
    print("Face ID - Camera Diagnostic")
    print("=" * 60)
    print(f"  Capture API available: {camera.api_available()}")
    print(f"  Devices found:         {camera.is_camera_present()}")
    print(f"  Device id:             {camera.device_id}")
    print(f"  Timeout:               {camera.timeout_ms} ms")
    print()

    result = asyncio.run(diagnose_camera(camera))

    if result["success"]:
        stream = result["stream"]
        print(f"OK: camera initialized in {result['time_to_init_ms']} ms")
        print(f"    Stream: {stream['width']}x{stream['height']} (device {stream['device_id']})")
        return 0

    print(f"FAILED after {result['time_to_init_ms']} ms: {result['error']}")
    guidance = CAMERA_GUIDANCE[CameraErrorKind(result["kind"])]
    if guidance != result["error"]:
        print(f"    Hint: {guidance}")
    return 1


if __name__ == "__main__":
    sys.exit(main())
