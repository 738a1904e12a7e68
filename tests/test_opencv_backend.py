"""Tests for the OpenCV capture backend with cv2.VideoCapture patched out."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import cv2
import numpy as np
import pytest

from capture import OpenCVCamera
from exceptions import CameraConnectionError


def _capture_mock(opened=True, width=640, height=480, frames=None):
    cap = MagicMock()
    cap.isOpened.return_value = opened
    cap.get.side_effect = lambda prop: {
        cv2.CAP_PROP_FRAME_WIDTH: width,
        cv2.CAP_PROP_FRAME_HEIGHT: height,
    }.get(prop, 0)
    if frames is not None:
        cap.read.side_effect = frames
    return cap


@pytest.fixture
def image():
    return np.zeros((480, 640, 3), dtype=np.uint8)


class TestOpen:
    def test_open_requests_resolution(self):
        cap = _capture_mock()
        with patch("capture.opencv_backend.cv2.VideoCapture", return_value=cap) as factory:
            camera = OpenCVCamera(open_timeout_s=1.0)
            camera.open("2", 640, 480)

        assert camera.is_open
        assert factory.call_args[0][0] == 2
        cap.set.assert_any_call(cv2.CAP_PROP_FRAME_WIDTH, 640)
        cap.set.assert_any_call(cv2.CAP_PROP_FRAME_HEIGHT, 480)

    def test_non_index_device_rejected(self):
        with pytest.raises(ValueError):
            OpenCVCamera().open("usb-cam", 640, 480)

    def test_device_that_fails_to_open(self):
        cap = _capture_mock(opened=False)
        with patch("capture.opencv_backend.cv2.VideoCapture", return_value=cap):
            camera = OpenCVCamera(open_timeout_s=1.0)
            with pytest.raises(CameraConnectionError) as info:
                camera.open("1", 640, 480)

        assert info.value.device_id == "1"
        assert not camera.is_open
        cap.release.assert_called_once()


class TestReadFrame:
    def test_frames_are_numbered(self, image):
        cap = _capture_mock(frames=[(True, image), (True, image)])
        with patch("capture.opencv_backend.cv2.VideoCapture", return_value=cap):
            camera = OpenCVCamera(open_timeout_s=1.0)
            camera.open("0", 640, 480)

        first = camera.read_frame()
        second = camera.read_frame()

        assert (first.frame_index, second.frame_index) == (1, 2)
        assert first.device_id == "0"
        assert (first.width, first.height) == (640, 480)
        assert second.t_capture_monotonic_ns >= first.t_capture_monotonic_ns

    def test_failed_read_counts_as_dropped(self):
        cap = _capture_mock(frames=[(False, None)])
        with patch("capture.opencv_backend.cv2.VideoCapture", return_value=cap):
            camera = OpenCVCamera(open_timeout_s=1.0)
            camera.open("0", 640, 480)

        with pytest.raises(TimeoutError):
            camera.read_frame()
        assert camera.get_stats().dropped_frames == 1

    def test_read_before_open(self):
        with pytest.raises(RuntimeError):
            OpenCVCamera().read_frame()


def test_close_is_idempotent():
    cap = _capture_mock()
    with patch("capture.opencv_backend.cv2.VideoCapture", return_value=cap):
        camera = OpenCVCamera(open_timeout_s=1.0)
        camera.open("0", 640, 480)

    camera.close()
    camera.close()

    assert not camera.is_open
    cap.release.assert_called_once()
