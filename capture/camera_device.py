"""Camera abstraction for capture backends."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from contracts import Frame


@dataclass(frozen=True)
class CameraStats:
    fps_avg: float
    fps_instant: float
    dropped_frames: int


class CameraDevice(ABC):
    @abstractmethod
    def open(self, device_id: str, width: int, height: int) -> None:
        """Open a device and request a capture resolution."""

    @abstractmethod
    def read_frame(self) -> Frame:
        """Read a frame or raise a timeout error."""

    @abstractmethod
    def get_stats(self) -> CameraStats:
        """Return capture diagnostics."""

    @abstractmethod
    def close(self) -> None:
        """Close the device. Safe to call more than once."""

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """Whether the device is currently open."""
