from __future__ import annotations

"""Camera stream access and the single-slot frame guard."""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Optional, Protocol

import cv2
import numpy as np

logger = logging.getLogger(__name__)


class CameraUnavailableError(RuntimeError):
    """Camera is missing, disabled, or stopped delivering frames."""


class FrameReadError(RuntimeError):
    """A single frame read failed; the device may still recover."""


@dataclass
class CameraFrame:
    """Single decoded BGR frame plus capture timestamp."""

    frame: np.ndarray
    captured_at: float


class CameraStream(Protocol):
    """Interface the guard reads from, regardless of backend."""

    def read_frame(self) -> CameraFrame:
        ...

    def release(self) -> None:
        ...


def _to_bgr(frame: np.ndarray) -> np.ndarray:
    """Normalize grayscale/BGRA captures to 3-channel BGR."""
    if frame.ndim == 2:
        return cv2.cvtColor(frame, cv2.COLOR_GRAY2BGR)
    if frame.shape[2] == 4:
        return cv2.cvtColor(frame, cv2.COLOR_BGRA2BGR)
    return frame


class OpenCvCameraStream:
    """OpenCV `VideoCapture` reader producing fixed-format BGR frames."""

    def __init__(
        self,
        capture: cv2.VideoCapture,
        source: object,
        width: int = 0,
        height: int = 0,
        max_read_failures: int = 5,
    ) -> None:
        self.source = source
        self.width = width
        self.height = height
        self.max_read_failures = max(1, max_read_failures)
        self._capture: Optional[cv2.VideoCapture] = capture
        self._consecutive_failures = 0

    def read_frame(self) -> CameraFrame:
        """Grab one frame; repeated failures mean the device is gone."""
        if self._capture is None or not self._capture.isOpened():
            raise CameraUnavailableError(f"Camera {self.source!r} is not open")

        ok, frame = self._capture.read()
        if not ok or frame is None:
            self._consecutive_failures += 1
            if self._consecutive_failures >= self.max_read_failures:
                raise CameraUnavailableError(
                    f"Camera {self.source!r} failed {self._consecutive_failures} consecutive reads"
                )
            raise FrameReadError(f"Frame read failed on camera {self.source!r}")

        self._consecutive_failures = 0
        frame = _to_bgr(frame)
        if self.width > 0 and self.height > 0:
            frame_h, frame_w = frame.shape[:2]
            if (frame_w, frame_h) != (self.width, self.height):
                frame = cv2.resize(frame, (self.width, self.height), interpolation=cv2.INTER_LINEAR)
        return CameraFrame(frame=frame, captured_at=time.time())

    def release(self) -> None:
        """Release underlying OpenCV resources."""
        if self._capture is not None:
            self._capture.release()
            self._capture = None


def _device_source(device_selector: str) -> object:
    """Numeric selectors are device indexes, anything else a path or URL."""
    text = (device_selector or "").strip()
    if not text:
        return 0
    if text.isdigit():
        return int(text)
    return text


def open_camera_stream(
    device_selector: str,
    width: int = 0,
    height: int = 0,
    max_read_failures: int = 5,
) -> OpenCvCameraStream:
    """Open the desired camera, falling back to the first device.

    Raises `CameraUnavailableError` when no device can be opened.
    """
    source = _device_source(device_selector)
    candidates = [source] if source == 0 else [source, 0]

    for candidate in candidates:
        capture = cv2.VideoCapture(candidate)
        if capture.isOpened():
            capture.set(cv2.CAP_PROP_BUFFERSIZE, 1)
            if width > 0 and height > 0:
                capture.set(cv2.CAP_PROP_FRAME_WIDTH, width)
                capture.set(cv2.CAP_PROP_FRAME_HEIGHT, height)
            if candidate != source:
                logger.warning("Camera %r not available, using first device instead", source)
            logger.info("Camera stream started on %r", candidate)
            return OpenCvCameraStream(
                capture,
                source=candidate,
                width=width,
                height=height,
                max_read_failures=max_read_failures,
            )
        capture.release()

    raise CameraUnavailableError(f"No camera could be opened (requested {device_selector!r})")


class FrameSourceGuard:
    """Non-blocking single-slot guard around camera frame reads.

    A caller that finds the guard taken gets `None` and skips its work for
    this cycle instead of waiting on the hardware.
    """

    def __init__(self, detach_timeout_seconds: float = 5.0) -> None:
        self._lock = threading.Lock()
        self._stream: Optional[CameraStream] = None
        self.detach_timeout_seconds = detach_timeout_seconds

    @property
    def attached(self) -> bool:
        return self._stream is not None

    def attach(self, stream: CameraStream) -> None:
        """Install a freshly opened stream, releasing any previous one."""
        with self._lock:
            previous, self._stream = self._stream, stream
            if previous is not None and previous is not stream:
                previous.release()

    def detach(self) -> None:
        """Release the stream once no read is in flight."""
        acquired = self._lock.acquire(timeout=self.detach_timeout_seconds)
        if not acquired:
            logger.warning("Frame read still in flight after %.1fs; releasing camera anyway", self.detach_timeout_seconds)
        try:
            stream, self._stream = self._stream, None
            if stream is not None:
                stream.release()
                logger.info("Camera stream released")
        finally:
            if acquired:
                self._lock.release()

    def try_acquire_frame(self) -> Optional[CameraFrame]:
        """Read exactly one frame, or return `None` when a read is in flight."""
        if not self._lock.acquire(blocking=False):
            return None
        try:
            stream = self._stream
            if stream is None:
                raise CameraUnavailableError("No camera stream attached")
            return stream.read_frame()
        finally:
            self._lock.release()
