from __future__ import annotations

"""One-shot frame probes: face presence, QR onboarding, request payloads."""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import cv2
import numpy as np

from exhibit.camera import CameraFrame

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FaceRegion:
    """Axis-aligned face box in frame pixel coordinates."""

    x: int
    y: int
    width: int
    height: int


@dataclass
class ApiRequestParameters:
    """Encoded image plus the on-device face geometry it was built from."""

    image: bytes
    faces: List[FaceRegion] = field(default_factory=list)


class FacePresenceProbe:
    """Haar-cascade face tracker used as the cheap local presence signal."""

    def __init__(self, min_size_px: int = 40, detector: Optional[cv2.CascadeClassifier] = None) -> None:
        """Load cascade detector once for reuse across probes."""
        self.min_size_px = min_size_px
        self.detector = detector or cv2.CascadeClassifier(
            cv2.data.haarcascades + "haarcascade_frontalface_default.xml"
        )

    def detect(self, frame: CameraFrame) -> List[FaceRegion]:
        """Return every face region found in the frame (possibly empty)."""
        gray = cv2.cvtColor(frame.frame, cv2.COLOR_BGR2GRAY)
        boxes = self.detector.detectMultiScale(
            gray,
            scaleFactor=1.1,
            minNeighbors=5,
            minSize=(self.min_size_px, self.min_size_px),
        )
        return [FaceRegion(int(x), int(y), int(w), int(h)) for (x, y, w, h) in boxes]

    def is_present(self, frame: CameraFrame) -> bool:
        return bool(self.detect(frame))


class QrOnboardingProbe:
    """Decode a device-identity QR code from a single frame."""

    def __init__(self, detector: Optional[cv2.QRCodeDetector] = None) -> None:
        self.detector = detector or cv2.QRCodeDetector()

    def decode(self, frame: CameraFrame) -> Optional[str]:
        try:
            text, points, _ = self.detector.detectAndDecode(frame.frame)
        except cv2.error as exc:
            logger.debug("QR decode failed: %s", exc)
            return None
        if points is None or not text:
            return None
        return text.strip() or None


def _union_box(faces: Sequence[FaceRegion], frame_w: int, frame_h: int, margin_ratio: float) -> tuple[int, int, int, int]:
    """Bounding box around all faces, grown by a margin and clamped to the frame."""
    x1 = min(face.x for face in faces)
    y1 = min(face.y for face in faces)
    x2 = max(face.x + face.width for face in faces)
    y2 = max(face.y + face.height for face in faces)
    pad_x = int((x2 - x1) * margin_ratio)
    pad_y = int((y2 - y1) * margin_ratio)
    return (
        max(0, x1 - pad_x),
        max(0, y1 - pad_y),
        min(frame_w, x2 + pad_x),
        min(frame_h, y2 + pad_y),
    )


class RequestBuilder:
    """Encode a face-bearing frame into the recognition request payload."""

    def __init__(self, jpeg_quality: int = 90, crop_to_faces: bool = False, crop_margin_ratio: float = 0.25) -> None:
        self.jpeg_quality = int(min(100, max(1, jpeg_quality)))
        self.crop_to_faces = crop_to_faces
        self.crop_margin_ratio = max(0.0, crop_margin_ratio)

    def build(self, frame: CameraFrame, faces: Sequence[FaceRegion]) -> Optional[ApiRequestParameters]:
        """Return the payload, or `None` when there is nothing to recognise."""
        if not faces:
            return None

        image: np.ndarray = frame.frame
        if self.crop_to_faces:
            height, width = image.shape[:2]
            x1, y1, x2, y2 = _union_box(faces, width, height, self.crop_margin_ratio)
            if x2 > x1 and y2 > y1:
                image = image[y1:y2, x1:x2]

        ok, encoded = cv2.imencode(".jpg", image, [int(cv2.IMWRITE_JPEG_QUALITY), self.jpeg_quality])
        if not ok:
            raise ValueError("JPEG encoding of the current frame failed")

        logger.info("Found face(s) on camera: %d", len(faces))
        return ApiRequestParameters(image=encoded.tobytes(), faces=list(faces))
