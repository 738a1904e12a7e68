"""OpenCV-based camera backend."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Optional

import cv2

from contracts import Frame
from exceptions import CameraConnectionError

from .camera_device import CameraDevice, CameraStats
from .timeout_utils import run_with_timeout

logger = logging.getLogger(__name__)


@dataclass
class _Stats:
    last_frame_ns: int = 0
    frames: int = 0
    dropped: int = 0
    fps_avg: float = 0.0
    fps_instant: float = 0.0


class OpenCVCamera(CameraDevice):
    """Index-based capture through cv2.VideoCapture.

    Works with virtual cameras (e.g. OBS) as well as physical devices since
    the backend is chosen automatically.
    """

    def __init__(self, open_timeout_s: float = 5.0) -> None:
        self._device_id: Optional[str] = None
        self._capture: Optional[cv2.VideoCapture] = None
        self._stats = _Stats()
        self._open_timeout_s = open_timeout_s

    @property
    def is_open(self) -> bool:
        return self._capture is not None

    def open(self, device_id: str, width: int, height: int) -> None:
        """Open camera by index.

        Args:
            device_id: Camera index as string (e.g., "0", "1")
            width: Requested frame width, ignored when <= 0
            height: Requested frame height, ignored when <= 0

        Raises:
            ValueError: If device_id is not a valid index
            CameraConnectionError: If camera fails to open within timeout
        """
        device_str = str(device_id)
        self._device_id = device_str
        if not device_str.isdigit():
            raise ValueError(f"OpenCVCamera only supports index-based devices, got {device_str!r}")

        index = int(device_str)
        logger.info(f"Opening OpenCV camera index {index}")

        def _open_camera():
            capture = cv2.VideoCapture(index, cv2.CAP_ANY)
            if width > 0:
                capture.set(cv2.CAP_PROP_FRAME_WIDTH, width)
            if height > 0:
                capture.set(cv2.CAP_PROP_FRAME_HEIGHT, height)
            if not capture.isOpened():
                capture.release()
                raise CameraConnectionError(
                    f"Failed to open camera index {index} - camera may be in use or not found",
                    device_id=device_str,
                )
            return capture

        self._capture = run_with_timeout(
            _open_camera,
            timeout_seconds=self._open_timeout_s,
            error_message=f"OpenCV camera {index} open timed out",
        )

        actual_width = int(self._capture.get(cv2.CAP_PROP_FRAME_WIDTH))
        actual_height = int(self._capture.get(cv2.CAP_PROP_FRAME_HEIGHT))
        if width > 0 and height > 0 and (actual_width != width or actual_height != height):
            logger.warning(
                f"Camera {device_str}: Requested {width}x{height} but got {actual_width}x{actual_height}"
            )
        logger.info(f"Camera {device_str}: opened at {actual_width}x{actual_height}")

    def read_frame(self) -> Frame:
        if self._capture is None:
            raise RuntimeError("Camera not opened.")
        ok, image = self._capture.read()
        if not ok or image is None or image.size == 0:
            self._stats.dropped += 1
            raise TimeoutError("Failed to read frame.")

        now_ns = time.monotonic_ns()
        if self._stats.last_frame_ns:
            delta_s = (now_ns - self._stats.last_frame_ns) / 1e9
            if delta_s > 0:
                self._stats.fps_instant = 1.0 / delta_s
                self._stats.fps_avg = (
                    (self._stats.fps_avg * self._stats.frames) + self._stats.fps_instant
                ) / (self._stats.frames + 1)
        self._stats.frames += 1
        self._stats.last_frame_ns = now_ns
        return Frame(
            device_id=self._device_id or "0",
            frame_index=self._stats.frames,
            t_capture_monotonic_ns=now_ns,
            image=image,
            width=image.shape[1],
            height=image.shape[0],
        )

    def get_stats(self) -> CameraStats:
        return CameraStats(
            fps_avg=self._stats.fps_avg,
            fps_instant=self._stats.fps_instant,
            dropped_frames=self._stats.dropped,
        )

    def close(self) -> None:
        """Release the capture handle. Idempotent."""
        if self._capture is None:
            return
        logger.info(f"Camera {self._device_id}: Closing")
        try:
            self._capture.release()
        except cv2.error as e:
            logger.error(f"Camera {self._device_id}: Error during close: {e}")
        finally:
            self._capture = None
