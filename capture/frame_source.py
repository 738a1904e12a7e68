"""Frame source: owns one capture session and publishes the latest frame."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, Optional

from app.events.error_bus import ErrorCategory, ErrorEventBus, ErrorSeverity
from app.events.event_bus import EventBus, EventDispatcher
from app.events.event_types import FrameCapturedEvent
from contracts import Frame

from .camera_device import CameraDevice
from .frame_buffer import LatestFrameSlot
from .opencv_backend import OpenCVCamera
from .timeout_utils import exponential_backoff

logger = logging.getLogger(__name__)

FrameCallback = Callable[[Frame], None]


class FrameSource:
    """Runs a capture loop on its own thread.

    Lifecycle:
        start() spawns the loop and returns without waiting for the device to
        open. If the device cannot be opened the loop ends quietly and
        ``is_running`` stays False. stop() signals the loop, waits a bounded
        time for it to exit and drops the latest frame. start() and stop()
        serialize under one lifecycle lock.

    Frames:
        Each frame read replaces the single latest-frame slot. Subscribers get
        frames through a dispatcher thread, each subscriber its own copy, so a
        slow or failing subscriber never stalls capture.
    """

    def __init__(
        self,
        camera_factory: Callable[[], CameraDevice] = OpenCVCamera,
        target_fps: float = 30.0,
        max_consecutive_failures: int = 3,
        error_bus: Optional[ErrorEventBus] = None,
        bus: Optional[EventBus] = None,
    ):
        self._camera_factory = camera_factory
        self._frame_period_s = 1.0 / target_fps if target_fps > 0 else 0.0
        self._max_consecutive_failures = max(1, max_consecutive_failures)
        self._error_bus = error_bus

        self._lifecycle_lock = threading.Lock()
        self._slot = LatestFrameSlot()
        self._dispatcher = EventDispatcher(bus, coalesce=(FrameCapturedEvent,), name="frame-dispatcher")
        self._subscriptions: Dict[FrameCallback, Callable[[FrameCapturedEvent], None]] = {}
        self._subscriptions_lock = threading.Lock()

        # Guards the stop signal against frame hand-off so a loop that outlived
        # stop() never writes into a later session.
        self._handoff_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._stop_event: Optional[threading.Event] = None
        self._running: Optional[threading.Event] = None
        self._device_id: Optional[str] = None

    @property
    def is_running(self) -> bool:
        running = self._running
        return running is not None and running.is_set()

    @property
    def device_id(self) -> Optional[str]:
        return self._device_id

    def start(self, device_id: str, width: int = 640, height: int = 480) -> None:
        """Start capturing from a device, restarting if already running."""
        with self._lifecycle_lock:
            if self._thread is not None:
                self._stop_locked(timeout=3.0)

            self._device_id = str(device_id)
            stop_event = threading.Event()
            running = threading.Event()
            self._stop_event = stop_event
            self._running = running
            self._dispatcher.start()
            self._thread = threading.Thread(
                target=self._capture_loop,
                args=(self._device_id, width, height, stop_event, running),
                name=f"capture-{self._device_id}",
                daemon=True,
            )
            self._thread.start()
            logger.info(f"Capture started for device {self._device_id} ({width}x{height})")

    def stop(self, timeout: float = 3.0) -> None:
        """Stop capturing and release the latest frame. Idempotent."""
        with self._lifecycle_lock:
            self._stop_locked(timeout)

    def _stop_locked(self, timeout: float) -> None:
        thread = self._thread
        if thread is None:
            return

        with self._handoff_lock:
            if self._stop_event is not None:
                self._stop_event.set()
        thread.join(timeout=timeout)
        if thread.is_alive():
            logger.warning(
                f"Capture loop for device {self._device_id} did not exit within {timeout}s; "
                "device will be released when the pending read returns"
            )

        self._thread = None
        self._stop_event = None
        self._running = None
        self._dispatcher.stop()
        self._slot.clear()
        logger.info(f"Capture stopped for device {self._device_id}")

    def get_latest_frame(self) -> Optional[Frame]:
        """Return a private copy of the latest frame, or None."""
        return self._slot.get_copy()

    def subscribe(self, callback: FrameCallback) -> None:
        """Receive a copy of every delivered frame on the dispatcher thread."""

        def _deliver(event: FrameCapturedEvent) -> None:
            callback(event.frame.copy())

        with self._subscriptions_lock:
            if callback in self._subscriptions:
                return
            self._subscriptions[callback] = _deliver
        self._dispatcher.subscribe(FrameCapturedEvent, _deliver)

    def unsubscribe(self, callback: FrameCallback) -> None:
        with self._subscriptions_lock:
            handler = self._subscriptions.pop(callback, None)
        if handler is not None:
            self._dispatcher.unsubscribe(FrameCapturedEvent, handler)

    def wait_for_subscribers(self, timeout: float = 1.0) -> bool:
        """Block until frames already handed to subscribers were delivered."""
        return self._dispatcher.wait_until_idle(timeout)

    def _capture_loop(
        self, device_id: str, width: int, height: int, stop_event: threading.Event, running: threading.Event
    ) -> None:
        camera = self._camera_factory()
        try:
            try:
                camera.open(device_id, width, height)
            except Exception as e:
                logger.warning(f"Could not open capture device {device_id}: {e}")
                self._report(f"Capture device {device_id} could not be opened", e, device_id)
                return

            with self._handoff_lock:
                if stop_event.is_set():
                    return
                running.set()

            failures = 0
            while not stop_event.is_set():
                loop_start = time.monotonic()
                try:
                    frame = camera.read_frame()
                except Exception as e:
                    failures += 1
                    if failures >= self._max_consecutive_failures:
                        logger.error(f"Device {device_id}: {failures} consecutive read failures, stopping capture")
                        self._report(f"Capture device {device_id} stopped delivering frames", e, device_id)
                        break
                    stop_event.wait(exponential_backoff(failures - 1))
                    continue

                failures = 0
                with self._handoff_lock:
                    if stop_event.is_set():
                        break
                    self._slot.put(frame)
                    if self._dispatcher.bus.get_subscriber_count(FrameCapturedEvent) > 0:
                        self._dispatcher.publish(FrameCapturedEvent(frame=frame.copy()))

                remaining = self._frame_period_s - (time.monotonic() - loop_start)
                if remaining > 0:
                    stop_event.wait(remaining)
        finally:
            running.clear()
            camera.close()

    def _report(self, message: str, exception: Exception, device_id: str) -> None:
        if self._error_bus is None:
            return
        self._error_bus.report(
            ErrorCategory.CAPTURE,
            ErrorSeverity.WARNING,
            message,
            source="FrameSource",
            exception=exception,
            device_id=device_id,
        )
