"""
Shared pytest fixtures and hardware-free fakes for exhibit tests.
"""
from pathlib import Path
from typing import List, Optional

import numpy as np
import pytest

from exhibit.api_client import ApiResult, FaceRecord
from exhibit.camera import CameraFrame, FrameSourceGuard
from exhibit.config import Settings
from exhibit.identity import DeviceIdentityStore
from exhibit.probes import FaceRegion, RequestBuilder
from exhibit.state_machine import DetectionStateMachine


def make_settings(**overrides) -> Settings:
    """Settings with fast, deterministic defaults for tests."""
    values = dict(
        api_interval_ms=5000.0,
        faces_disappear_grace_ms=3000.0,
        min_replay_delay_ms=10000.0,
        tick_interval_ms=300.0,
        camera_device_name="",
        face_api_url="http://faces.test/api/face",
        bot_api_url="http://bot.test/api/bot",
        camera_frame_width=0,
        camera_frame_height=0,
        camera_max_read_failures=5,
        face_min_size_px=40,
        jpeg_quality=90,
        crop_to_faces=False,
        crop_margin_ratio=0.25,
        probe_failure_counts_as_absent=True,
        http_timeout_seconds=10.0,
        identity_db_path=Path("data/device.db"),
        announce_ip_address=False,
        speech_enabled=False,
        microphone_device_index=None,
        tts_rate=175,
        tts_voice="",
        telegram_bot_token="",
        telegram_chat_id="",
        snapshot_dir=Path("data/snapshots"),
    )
    values.update(overrides)
    return Settings(**values)


class FakeClock:
    """Monotonic clock under test control, in seconds."""

    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance_ms(self, ms: float) -> None:
        self.now += ms / 1000.0


class FakeStream:
    """Camera stream returning a blank frame; can be made to fail."""

    def __init__(self, error: Optional[Exception] = None) -> None:
        self.error = error
        self.reads = 0
        self.released = False

    def read_frame(self) -> CameraFrame:
        self.reads += 1
        if self.error is not None:
            raise self.error
        return CameraFrame(frame=np.zeros((120, 160, 3), dtype=np.uint8), captured_at=0.0)

    def release(self) -> None:
        self.released = True


class FakeFaceProbe:
    """Face probe with scripted results.

    `faces` is returned by `detect`; `presence` is consumed by `is_present`
    (the last value repeats once the script runs out).
    """

    def __init__(self) -> None:
        self.faces: List[FaceRegion] = []
        self.presence: List[object] = [False]
        self.detect_calls = 0
        self.presence_calls = 0

    def detect(self, frame: CameraFrame) -> List[FaceRegion]:
        self.detect_calls += 1
        return list(self.faces)

    def is_present(self, frame: CameraFrame) -> bool:
        self.presence_calls += 1
        value = self.presence.pop(0) if len(self.presence) > 1 else self.presence[0]
        if isinstance(value, Exception):
            raise value
        return bool(value)


class FakeQrProbe:
    def __init__(self, text: Optional[str] = None) -> None:
        self.text = text
        self.calls = 0

    def decode(self, frame: CameraFrame) -> Optional[str]:
        self.calls += 1
        return self.text


class FakeRecognitionClient:
    def __init__(self, result: Optional[ApiResult] = None) -> None:
        self.result = result or ApiResult.success([FaceRecord(face_id="f1", age=30.0, gender="female")])
        self.posted: List[bytes] = []

    def post_image(self, image: bytes) -> ApiResult:
        self.posted.append(image)
        return self.result


class FakeVoice:
    """Records what the machine asked the voice player to do."""

    def __init__(self) -> None:
        self.said: List[str] = []
        self.introductions: List[int] = []
        self.responses: List[list] = []
        self.stops = 0
        self.is_currently_playing = False

    def say(self, text: str) -> None:
        self.said.append(text)

    def play_introduction(self, face_count: int) -> None:
        self.introductions.append(face_count)

    def play_response(self, faces) -> None:
        self.responses.append(list(faces))

    def stop(self) -> None:
        self.stops += 1


class Harness:
    """A state machine wired to fakes, plus handles on every fake."""

    def __init__(self, tmp_path: Path, **setting_overrides) -> None:
        self.settings = make_settings(identity_db_path=tmp_path / "device.db", **setting_overrides)
        self.clock = FakeClock()
        self.stream = FakeStream()
        self.opened = 0
        self.open_error: Optional[Exception] = None
        self.guard = FrameSourceGuard(detach_timeout_seconds=0.1)
        self.face_probe = FakeFaceProbe()
        self.qr_probe = FakeQrProbe()
        self.client = FakeRecognitionClient()
        self.voice = FakeVoice()
        self.identity = DeviceIdentityStore(self.settings.identity_db_path)
        self.alerts: List[str] = []
        self.machine = DetectionStateMachine(
            settings=self.settings,
            camera_opener=self._open_camera,
            guard=self.guard,
            face_probe=self.face_probe,
            qr_probe=self.qr_probe,
            request_builder=RequestBuilder(),
            recognition_client=self.client,
            voice=self.voice,
            identity_store=self.identity,
            hardware_alert=self.alerts.append,
            clock=self.clock,
        )

    def _open_camera(self) -> FakeStream:
        self.opened += 1
        if self.open_error is not None:
            raise self.open_error
        return self.stream

    def start(self, device_id: Optional[str] = "device-guid") -> None:
        """Run startup so the machine sits in WAITING_FOR_FACES (or ONBOARDING)."""
        if device_id:
            self.identity.set_device_id(device_id)
        self.machine.request_startup()
        self.machine.tick()

    def close(self) -> None:
        self.identity.close()


@pytest.fixture
def harness(tmp_path):
    h = Harness(tmp_path)
    yield h
    h.close()


@pytest.fixture
def face():
    return FaceRegion(x=40, y=30, width=50, height=50)
