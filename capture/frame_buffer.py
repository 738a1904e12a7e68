"""Single-slot latest-frame buffer."""

from __future__ import annotations

import threading
from typing import Optional

from contracts import Frame


class LatestFrameSlot:
    """Holds the most recent frame, replacing the previous one on every put.

    Readers always get their own copy, so the producer can keep writing while
    a consumer works on pixel data. The lock is held only for the swap or the
    copy, never across I/O.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._frame: Optional[Frame] = None

    def put(self, frame: Frame) -> None:
        with self._lock:
            self._frame = frame

    def get_copy(self) -> Optional[Frame]:
        with self._lock:
            frame = self._frame
            if frame is None:
                return None
            return frame.copy()

    def clear(self) -> None:
        with self._lock:
            self._frame = None

    @property
    def has_frame(self) -> bool:
        with self._lock:
            return self._frame is not None
