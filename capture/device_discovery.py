"""Capture device enumeration."""

from __future__ import annotations

import concurrent.futures
import logging
import threading
from dataclasses import dataclass
from typing import List, Optional

import cv2

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CameraDeviceInfo:
    index: int
    name: str
    width: int
    height: int

    @property
    def device_id(self) -> str:
        return str(self.index)


def _probe_single_index(index: int, timeout_seconds: float = 2.0) -> Optional[CameraDeviceInfo]:
    """Probe a single camera index with timeout protection.

    Returns:
        Device info if the index opens, None on failure or timeout

    Note:
        The probe runs on a daemon thread; on timeout the capture is
        released if it was created.
    """
    result: list[Optional[CameraDeviceInfo]] = [None]
    cap_ref: list[Optional[cv2.VideoCapture]] = [None]

    def _probe():
        try:
            cap = cv2.VideoCapture(index, cv2.CAP_ANY)
            cap_ref[0] = cap
            if cap.isOpened():
                width = int(cap.get(cv2.CAP_PROP_FRAME_WIDTH))
                height = int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
                result[0] = CameraDeviceInfo(
                    index=index,
                    name=f"Camera {index}",
                    width=width,
                    height=height,
                )
            cap.release()
        except Exception as e:
            logger.debug(f"Failed to probe camera index {index}: {e}")

    thread = threading.Thread(target=_probe, daemon=True)
    thread.start()
    thread.join(timeout=timeout_seconds)

    if thread.is_alive():
        logger.debug(f"Camera index {index} probe timed out after {timeout_seconds}s")
        if cap_ref[0] is not None:
            try:
                cap_ref[0].release()
            except cv2.error as e:
                logger.debug(f"Release after probe timeout failed for index {index}: {e}")
        return None

    return result[0]


def enumerate_devices(max_index: int = 10, probe_timeout: float = 2.0) -> List[CameraDeviceInfo]:
    """Probe camera indices 0..max_index-1 in parallel.

    Indices that fail to open or time out are left out. The result is sorted
    by index.
    """
    if max_index <= 0:
        return []

    logger.info(f"Probing camera indices 0-{max_index - 1}")
    devices: List[CameraDeviceInfo] = []
    with concurrent.futures.ThreadPoolExecutor(max_workers=max_index) as executor:
        futures = {
            executor.submit(_probe_single_index, i, probe_timeout): i
            for i in range(max_index)
        }
        for future in concurrent.futures.as_completed(futures):
            try:
                info = future.result()
            except Exception as e:
                logger.debug(f"Camera probe {futures[future]} failed: {e}")
                continue
            if info is not None:
                devices.append(info)

    devices.sort(key=lambda d: d.index)
    logger.info(f"Found {len(devices)} cameras: {[d.index for d in devices]}")
    return devices


__all__ = ["CameraDeviceInfo", "enumerate_devices"]
