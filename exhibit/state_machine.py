from __future__ import annotations

"""Detection state machine driving the exhibit.

Every tick inspects the current state and performs exactly one step:
probe the camera, build a recognition request, call the remote API, start
playback, or debounce the visitors leaving. All mutation of `DetectionState`
happens inside `tick()` (or `suspend()` once the scheduler has stopped);
other threads only queue requests that the next tick applies.
"""

import logging
import queue
import socket
import threading
from dataclasses import dataclass
from enum import Enum
from time import monotonic
from typing import Callable, Dict, List, Optional

from exhibit.api_client import ApiFailure, FaceRecord, RecognitionClient
from exhibit.camera import CameraStream, CameraUnavailableError, FrameReadError, FrameSourceGuard
from exhibit.config import Settings
from exhibit.identity import DeviceIdentityStore
from exhibit.probes import ApiRequestParameters, FacePresenceProbe, QrOnboardingProbe, RequestBuilder
from exhibit.stats import RuntimeStats
from exhibit.voice import VoicePlayer

logger = logging.getLogger(__name__)

NEVER = float("-inf")

NO_WEBCAM_PROMPT = "There is no webcam present, please add a USB webcam and restart the exhibit"
ONBOARDING_PROMPT = (
    "I have no device ID. I'm now onboarding which means I am looking for a QR code "
    "containing a device ID GUID, you can get this from the device API."
)
QR_FOUND_PROMPT = "I found a QR code, thanks."


class DetectionStates(Enum):
    IDLE = "idle"
    STARTUP = "startup"
    ONBOARDING = "onboarding"
    WAITING_FOR_FACES = "waiting_for_faces"
    FACE_DETECTED_ON_DEVICE = "face_detected_on_device"
    API_RESPONSE_RECEIVED = "api_response_received"
    INTERPRETING_API_RESULTS = "interpreting_api_results"
    WAITING_FOR_FACES_TO_DISAPPEAR = "waiting_for_faces_to_disappear"


class DetectionEvent(Enum):
    START_REQUESTED = "start_requested"
    SUSPEND_REQUESTED = "suspend_requested"
    CAMERA_FAILED = "camera_failed"
    STATE_UNRECOGNIZED = "state_unrecognized"
    IDENTITY_MISSING = "identity_missing"
    IDENTITY_KNOWN = "identity_known"
    QR_DECODED = "qr_decoded"
    FACE_REQUEST_BUILT = "face_request_built"
    API_CALLED = "api_called"
    API_FACES_FOUND = "api_faces_found"
    API_NO_FACES = "api_no_faces"
    PLAYBACK_DISPATCHED = "playback_dispatched"
    ABSENCE_CONFIRMED = "absence_confirmed"


class InvalidTransitionError(RuntimeError):
    """An event arrived in a state that has no transition for it."""


_ANY_STATE_TRANSITIONS: Dict[DetectionEvent, DetectionStates] = {
    DetectionEvent.START_REQUESTED: DetectionStates.STARTUP,
    DetectionEvent.SUSPEND_REQUESTED: DetectionStates.IDLE,
    DetectionEvent.CAMERA_FAILED: DetectionStates.IDLE,
    DetectionEvent.STATE_UNRECOGNIZED: DetectionStates.IDLE,
}

_TRANSITIONS: Dict[tuple, DetectionStates] = {
    (DetectionStates.STARTUP, DetectionEvent.IDENTITY_MISSING): DetectionStates.ONBOARDING,
    (DetectionStates.STARTUP, DetectionEvent.IDENTITY_KNOWN): DetectionStates.WAITING_FOR_FACES,
    (DetectionStates.ONBOARDING, DetectionEvent.QR_DECODED): DetectionStates.WAITING_FOR_FACES,
    (DetectionStates.WAITING_FOR_FACES, DetectionEvent.FACE_REQUEST_BUILT): DetectionStates.FACE_DETECTED_ON_DEVICE,
    (DetectionStates.FACE_DETECTED_ON_DEVICE, DetectionEvent.API_CALLED): DetectionStates.API_RESPONSE_RECEIVED,
    (DetectionStates.API_RESPONSE_RECEIVED, DetectionEvent.API_FACES_FOUND): DetectionStates.INTERPRETING_API_RESULTS,
    (DetectionStates.API_RESPONSE_RECEIVED, DetectionEvent.API_NO_FACES): DetectionStates.WAITING_FOR_FACES_TO_DISAPPEAR,
    (DetectionStates.INTERPRETING_API_RESULTS, DetectionEvent.PLAYBACK_DISPATCHED): DetectionStates.WAITING_FOR_FACES_TO_DISAPPEAR,
    (DetectionStates.WAITING_FOR_FACES_TO_DISAPPEAR, DetectionEvent.ABSENCE_CONFIRMED): DetectionStates.WAITING_FOR_FACES,
}


def transition(state: DetectionStates, event: DetectionEvent) -> DetectionStates:
    """Pure transition function of the detection state machine."""
    if event in _ANY_STATE_TRANSITIONS:
        return _ANY_STATE_TRANSITIONS[event]
    try:
        return _TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidTransitionError(f"No transition from {state} on {event}") from None


def throttle_gate_open(
    now: float,
    last_image_api_push: float,
    time_video_was_stopped: float,
    api_interval_seconds: float,
    min_replay_delay_seconds: float,
) -> bool:
    """Whether a new remote recognition call may be issued at `now`.

    Requires both the API cadence and the replay cool-down to have elapsed.
    """
    return (
        now - last_image_api_push >= api_interval_seconds
        and now - time_video_was_stopped >= min_replay_delay_seconds
    )


@dataclass
class DetectionState:
    """Mutable state of the current detection cycle."""

    state: DetectionStates = DetectionStates.IDLE
    api_request_parameters: Optional[ApiRequestParameters] = None
    faces_found_by_api: Optional[List[FaceRecord]] = None
    last_api_failure: Optional[ApiFailure] = None
    faces_still_present: bool = False
    last_image_api_push: float = NEVER
    time_video_was_stopped: float = NEVER
    absence_recheck_at: Optional[float] = None


def local_ip_address() -> Optional[str]:
    """Best-effort address of the interface used for outbound traffic."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.connect(("192.0.2.1", 80))
            return sock.getsockname()[0]
    except OSError:
        return None


class DetectionStateMachine:
    """Owns `DetectionState` and performs one decision step per tick."""

    def __init__(
        self,
        settings: Settings,
        camera_opener: Callable[[], CameraStream],
        guard: FrameSourceGuard,
        face_probe: FacePresenceProbe,
        qr_probe: QrOnboardingProbe,
        request_builder: RequestBuilder,
        recognition_client: RecognitionClient,
        voice: VoicePlayer,
        identity_store: DeviceIdentityStore,
        stats: Optional[RuntimeStats] = None,
        hardware_alert: Optional[Callable[[str], None]] = None,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        self.settings = settings
        self.camera_opener = camera_opener
        self.guard = guard
        self.face_probe = face_probe
        self.qr_probe = qr_probe
        self.request_builder = request_builder
        self.recognition_client = recognition_client
        self.voice = voice
        self.identity_store = identity_store
        self.stats = stats or RuntimeStats()
        self.hardware_alert = hardware_alert
        self.clock = clock

        self.api_interval_seconds = settings.api_interval_ms / 1000.0
        self.min_replay_delay_seconds = settings.min_replay_delay_ms / 1000.0
        self.faces_disappear_grace_seconds = settings.faces_disappear_grace_ms / 1000.0

        self.current = DetectionState()
        self._requests: "queue.SimpleQueue[DetectionEvent]" = queue.SimpleQueue()
        self._camera_failed = threading.Event()

        self._handlers: Dict[DetectionStates, Callable[[], None]] = {
            DetectionStates.IDLE: self._handle_idle,
            DetectionStates.STARTUP: self._handle_startup,
            DetectionStates.ONBOARDING: self._handle_onboarding,
            DetectionStates.WAITING_FOR_FACES: self._handle_waiting_for_faces,
            DetectionStates.FACE_DETECTED_ON_DEVICE: self._handle_face_detected_on_device,
            DetectionStates.API_RESPONSE_RECEIVED: self._handle_api_response_received,
            DetectionStates.INTERPRETING_API_RESULTS: self._handle_interpreting_api_results,
            DetectionStates.WAITING_FOR_FACES_TO_DISAPPEAR: self._handle_waiting_for_faces_to_disappear,
        }

    @property
    def state(self) -> DetectionStates:
        return self.current.state

    # Thread-safe entry points; applied by the next tick.

    def request_startup(self) -> None:
        self._requests.put(DetectionEvent.START_REQUESTED)

    def request_suspend(self) -> None:
        self._requests.put(DetectionEvent.SUSPEND_REQUESTED)

    def report_camera_failure(self) -> None:
        """Called by camera drivers from any thread when the stream fails."""
        self._camera_failed.set()

    def suspend(self) -> None:
        """Drive to IDLE synchronously; only call once no tick can run."""
        if self.current.state != DetectionStates.IDLE or self.guard.attached:
            self._apply(DetectionEvent.SUSPEND_REQUESTED)

    def tick(self) -> None:
        """Run one decision step; failures are logged and never escape."""
        self.stats.inc_ticks()
        state = self.current.state
        try:
            self._drain_requests()
            state = self.current.state
            handler = self._handlers.get(state)
            if handler is None:
                logger.warning("Unrecognized detection state %r, resetting to idle", state)
                self._apply(DetectionEvent.STATE_UNRECOGNIZED)
                return
            handler()
        except CameraUnavailableError as exc:
            self._handle_hardware_unavailable(exc)
        except FrameReadError as exc:
            logger.warning("Skipping tick in %s: %s", state, exc)
        except Exception:
            logger.exception("Unable to process current frame in state %s", state)
            self.stats.inc_errors()

    # Transitions

    def _apply(self, event: DetectionEvent) -> DetectionStates:
        new_state = transition(self.current.state, event)
        self._change_state(new_state)
        return new_state

    def _change_state(self, new_state: DetectionStates) -> None:
        previous = self.current.state
        if new_state not in (DetectionStates.FACE_DETECTED_ON_DEVICE, DetectionStates.API_RESPONSE_RECEIVED):
            self.current.api_request_parameters = None
        if new_state != DetectionStates.WAITING_FOR_FACES_TO_DISAPPEAR:
            self.current.absence_recheck_at = None
        if new_state == DetectionStates.IDLE:
            self.guard.detach()
        self.current.state = new_state
        if previous != new_state:
            logger.info("Detection state %s -> %s", getattr(previous, "name", previous), new_state.name)

    def _drain_requests(self) -> None:
        if self._camera_failed.is_set():
            self._camera_failed.clear()
            if self.current.state not in (DetectionStates.IDLE, DetectionStates.STARTUP):
                self._handle_hardware_unavailable(CameraUnavailableError("Camera stream failed"))
        while True:
            try:
                event = self._requests.get_nowait()
            except queue.Empty:
                break
            self._apply(event)

    def _handle_hardware_unavailable(self, exc: Exception) -> None:
        logger.error("Camera unavailable: %s", exc)
        self.stats.inc_errors()
        self._apply(DetectionEvent.CAMERA_FAILED)
        self.voice.say(NO_WEBCAM_PROMPT)
        # hardware_alert must not block; ExhibitApp passes a fire-and-forget sender.
        if self.hardware_alert is not None:
            try:
                self.hardware_alert(f"Exhibit camera unavailable: {exc}")
            except Exception:
                logger.exception("Failed sending hardware alert")

    def _acquire_frame(self):
        frame = self.guard.try_acquire_frame()
        if frame is None:
            self.stats.inc_frames_skipped_busy()
        else:
            self.stats.inc_frames_acquired()
        return frame

    # State handlers

    def _handle_idle(self) -> None:
        return

    def _handle_startup(self) -> None:
        if self.settings.announce_ip_address:
            self.voice.say(f"The IP Address is: {local_ip_address() or 'unknown'}")

        # A single USB webcam cannot be opened twice; drop the old handle first.
        self.guard.detach()
        stream = self.camera_opener()
        self.guard.attach(stream)

        device_id = self.identity_store.get_device_id()
        if device_id is None:
            self.voice.say(ONBOARDING_PROMPT)
            self._apply(DetectionEvent.IDENTITY_MISSING)
        else:
            logger.info("Starting detection with device id %s", device_id)
            self._apply(DetectionEvent.IDENTITY_KNOWN)

    def _handle_onboarding(self) -> None:
        frame = self._acquire_frame()
        if frame is None:
            return
        device_id = self.qr_probe.decode(frame)
        if not device_id:
            return
        self.identity_store.set_device_id(device_id)
        logger.info("Found a QR code with device id %s which has been stored", device_id)
        self.voice.say(QR_FOUND_PROMPT)
        self._apply(DetectionEvent.QR_DECODED)

    def _handle_waiting_for_faces(self) -> None:
        frame = self._acquire_frame()
        if frame is None:
            return
        faces = self.face_probe.detect(frame)
        parameters = self.request_builder.build(frame, faces)
        if parameters is None:
            return
        self.stats.inc_local_face_detections()
        self.current.api_request_parameters = parameters
        self._apply(DetectionEvent.FACE_REQUEST_BUILT)

    def _handle_face_detected_on_device(self) -> None:
        parameters = self.current.api_request_parameters
        if parameters is None:
            logger.warning("No request payload in %s, waiting for faces again", self.current.state.name)
            self._change_state(DetectionStates.WAITING_FOR_FACES)
            return

        now = self.clock()
        if not throttle_gate_open(
            now,
            self.current.last_image_api_push,
            self.current.time_video_was_stopped,
            self.api_interval_seconds,
            self.min_replay_delay_seconds,
        ):
            return

        logger.info("Starting introduction")
        self.voice.play_introduction(len(parameters.faces))

        self.current.last_image_api_push = max(self.current.last_image_api_push, now)
        logger.info("Sending faces to api")
        result = self.recognition_client.post_image(parameters.image)
        self.stats.record_api_call(result.ok)
        if result.ok:
            self.current.faces_found_by_api = list(result.value or [])
            self.current.last_api_failure = None
        else:
            self.current.faces_found_by_api = None
            self.current.last_api_failure = result.failure
        self._apply(DetectionEvent.API_CALLED)

    def _handle_api_response_received(self) -> None:
        if self.current.faces_found_by_api:
            logger.info("Face(s) recognised by api: %d", len(self.current.faces_found_by_api))
            self.current.faces_still_present = True
            self._apply(DetectionEvent.API_FACES_FOUND)
            return
        if self.current.last_api_failure is not None:
            logger.info("Api call failed (%s); treating as no faces", self.current.last_api_failure.value)
        self._apply(DetectionEvent.API_NO_FACES)

    def _handle_interpreting_api_results(self) -> None:
        self.current.faces_still_present = True
        if not self.voice.is_currently_playing:
            logger.info("Starting playlist")
            self.voice.play_response(self.current.faces_found_by_api or [])
            self.stats.inc_playbacks()
        self._apply(DetectionEvent.PLAYBACK_DISPATCHED)

    def _handle_waiting_for_faces_to_disappear(self) -> None:
        now = self.clock()
        recheck_at = self.current.absence_recheck_at
        if recheck_at is not None and now < recheck_at:
            return

        present = self._faces_still_present()
        if present is None:
            return
        self.current.faces_still_present = present
        logger.info("Faces present: %s", present)

        if present:
            self.current.absence_recheck_at = None
            return
        if recheck_at is None:
            self.current.absence_recheck_at = now + self.faces_disappear_grace_seconds
            return

        logger.info("Faces have gone for a few or more secs, stop the audio playback")
        self.voice.stop()
        self.current.time_video_was_stopped = max(self.current.time_video_was_stopped, now)
        self._apply(DetectionEvent.ABSENCE_CONFIRMED)

    def _faces_still_present(self) -> Optional[bool]:
        """Presence probe for the debounce; `None` means no observation.

        A probe failure counts as "absent" unless
        `probe_failure_counts_as_absent` is switched off.
        """
        try:
            frame = self._acquire_frame()
            if frame is None:
                return None
            return self.face_probe.is_present(frame)
        except CameraUnavailableError:
            raise
        except Exception as exc:
            logger.warning("Unable to process current frame: %s", exc)
            if self.settings.probe_failure_counts_as_absent:
                return False
            return None
