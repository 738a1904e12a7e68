"""Capture module."""

from .camera_device import CameraDevice, CameraStats
from .device_discovery import CameraDeviceInfo, enumerate_devices
from .frame_buffer import LatestFrameSlot
from .frame_source import FrameSource
from .opencv_backend import OpenCVCamera
from .simulated_camera import SimulatedCamera

__all__ = [
    "CameraDevice",
    "CameraDeviceInfo",
    "CameraStats",
    "FrameSource",
    "LatestFrameSlot",
    "OpenCVCamera",
    "SimulatedCamera",
    "enumerate_devices",
]
