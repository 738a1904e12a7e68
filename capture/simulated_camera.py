"""Simulated camera backend for pipeline testing."""

from __future__ import annotations

import threading
import time
from typing import Optional

import numpy as np

from contracts import Frame
from exceptions import CameraConnectionError

from .camera_device import CameraDevice, CameraStats


class SimulatedCamera(CameraDevice):
    """Produces synthetic BGR frames.

    The displayed image can be swapped at any time with ``set_image`` so
    tests and demos can script what the matcher sees.
    """

    def __init__(
        self,
        fps: float = 30.0,
        fail_open: bool = False,
        fail_reads: int = 0,
    ) -> None:
        self._device_id: Optional[str] = None
        self._width = 0
        self._height = 0
        self._fps = fps
        self._fail_open = fail_open
        self._fail_reads = fail_reads
        self._frame_index = 0
        self._dropped = 0
        self._last_frame_time = time.monotonic()
        self._image: Optional[np.ndarray] = None
        self._image_lock = threading.Lock()
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def open(self, device_id: str, width: int, height: int) -> None:
        if self._fail_open:
            raise CameraConnectionError(f"Simulated device {device_id} unavailable", device_id=device_id)
        self._device_id = device_id
        self._width = width if width > 0 else 640
        self._height = height if height > 0 else 480
        self._open = True

    def set_image(self, image: np.ndarray) -> None:
        with self._image_lock:
            self._image = image.copy()

    def read_frame(self) -> Frame:
        if not self._open:
            raise RuntimeError("Camera not opened.")
        if self._fps > 0:
            target_delay = 1.0 / self._fps
            elapsed = time.monotonic() - self._last_frame_time
            if elapsed < target_delay:
                time.sleep(target_delay - elapsed)
        self._last_frame_time = time.monotonic()

        if self._fail_reads > 0:
            self._fail_reads -= 1
            self._dropped += 1
            raise TimeoutError("Simulated read failure.")

        with self._image_lock:
            image = self._image.copy() if self._image is not None else None
        if image is None:
            # Dark blue-gray background
            image = np.zeros((self._height, self._width, 3), dtype=np.uint8)
            image[:, :, 0] = 40
            image[:, :, 1] = 30
            image[:, :, 2] = 20

        self._frame_index += 1
        return Frame(
            device_id=self._device_id or "sim",
            frame_index=self._frame_index,
            t_capture_monotonic_ns=time.monotonic_ns(),
            image=image,
            width=image.shape[1],
            height=image.shape[0],
        )

    def get_stats(self) -> CameraStats:
        return CameraStats(
            fps_avg=float(self._fps),
            fps_instant=float(self._fps),
            dropped_frames=self._dropped,
        )

    def close(self) -> None:
        self._open = False
