"""
Unit tests for the detection state machine, driven tick by tick with fakes.
"""
import logging

import pytest

from exhibit.api_client import ApiFailure, ApiResult
from exhibit.camera import CameraUnavailableError, FrameReadError
from exhibit.state_machine import (
    NEVER,
    NO_WEBCAM_PROMPT,
    ONBOARDING_PROMPT,
    QR_FOUND_PROMPT,
    DetectionEvent,
    DetectionStates,
    InvalidTransitionError,
    throttle_gate_open,
    transition,
)

from conftest import FakeStream, Harness


def run_to_disappear_wait(h, face):
    """From WAITING_FOR_FACES, run a full recognition cycle."""
    h.face_probe.faces = [face]
    h.machine.tick()  # local faces -> request built
    h.machine.tick()  # remote call
    h.machine.tick()  # interpret response
    if h.machine.state == DetectionStates.INTERPRETING_API_RESULTS:
        h.machine.tick()  # playback dispatched
    h.face_probe.faces = []


def confirm_absence(h):
    """Two negative probes separated by the grace delay."""
    h.face_probe.presence = [False]
    h.machine.tick()
    h.clock.advance_ms(h.settings.faces_disappear_grace_ms)
    h.machine.tick()


class TestTransitionTable:
    """Tests for the pure transition function"""

    @pytest.mark.parametrize(
        "state,event,expected",
        [
            (DetectionStates.STARTUP, DetectionEvent.IDENTITY_MISSING, DetectionStates.ONBOARDING),
            (DetectionStates.STARTUP, DetectionEvent.IDENTITY_KNOWN, DetectionStates.WAITING_FOR_FACES),
            (DetectionStates.ONBOARDING, DetectionEvent.QR_DECODED, DetectionStates.WAITING_FOR_FACES),
            (
                DetectionStates.WAITING_FOR_FACES,
                DetectionEvent.FACE_REQUEST_BUILT,
                DetectionStates.FACE_DETECTED_ON_DEVICE,
            ),
            (
                DetectionStates.FACE_DETECTED_ON_DEVICE,
                DetectionEvent.API_CALLED,
                DetectionStates.API_RESPONSE_RECEIVED,
            ),
            (
                DetectionStates.API_RESPONSE_RECEIVED,
                DetectionEvent.API_FACES_FOUND,
                DetectionStates.INTERPRETING_API_RESULTS,
            ),
            (
                DetectionStates.API_RESPONSE_RECEIVED,
                DetectionEvent.API_NO_FACES,
                DetectionStates.WAITING_FOR_FACES_TO_DISAPPEAR,
            ),
            (
                DetectionStates.INTERPRETING_API_RESULTS,
                DetectionEvent.PLAYBACK_DISPATCHED,
                DetectionStates.WAITING_FOR_FACES_TO_DISAPPEAR,
            ),
            (
                DetectionStates.WAITING_FOR_FACES_TO_DISAPPEAR,
                DetectionEvent.ABSENCE_CONFIRMED,
                DetectionStates.WAITING_FOR_FACES,
            ),
        ],
    )
    def test_happy_path_edges(self, state, event, expected):
        assert transition(state, event) == expected

    @pytest.mark.parametrize("state", list(DetectionStates))
    def test_any_state_events(self, state):
        assert transition(state, DetectionEvent.START_REQUESTED) == DetectionStates.STARTUP
        assert transition(state, DetectionEvent.SUSPEND_REQUESTED) == DetectionStates.IDLE
        assert transition(state, DetectionEvent.CAMERA_FAILED) == DetectionStates.IDLE
        assert transition(state, DetectionEvent.STATE_UNRECOGNIZED) == DetectionStates.IDLE

    def test_api_response_never_skips_to_waiting_for_faces(self):
        with pytest.raises(InvalidTransitionError):
            transition(DetectionStates.API_RESPONSE_RECEIVED, DetectionEvent.ABSENCE_CONFIRMED)

    def test_idle_ignores_detection_events(self):
        with pytest.raises(InvalidTransitionError):
            transition(DetectionStates.IDLE, DetectionEvent.FACE_REQUEST_BUILT)


class TestThrottleGate:
    """Tests for throttle_gate_open"""

    def test_open_when_never_called(self):
        assert throttle_gate_open(0.0, NEVER, NEVER, 5.0, 10.0) is True

    def test_closed_within_api_interval(self):
        assert throttle_gate_open(4.999, 0.0, NEVER, 5.0, 10.0) is False

    def test_open_exactly_at_api_interval(self):
        assert throttle_gate_open(5.0, 0.0, NEVER, 5.0, 10.0) is True

    def test_closed_within_replay_delay(self):
        assert throttle_gate_open(20.0, 0.0, 15.0, 5.0, 10.0) is False
        assert throttle_gate_open(25.0, 0.0, 15.0, 5.0, 10.0) is True


class TestStartup:
    """Tests for Idle -> Startup -> first working state"""

    def test_idle_does_nothing_until_started(self, harness):
        harness.machine.tick()
        harness.machine.tick()
        assert harness.machine.state == DetectionStates.IDLE
        assert harness.opened == 0

    def test_known_identity_goes_to_waiting_for_faces(self, harness):
        harness.start()
        assert harness.machine.state == DetectionStates.WAITING_FOR_FACES
        assert harness.opened == 1
        assert harness.guard.attached

    def test_missing_identity_goes_to_onboarding(self, harness):
        harness.start(device_id=None)
        assert harness.machine.state == DetectionStates.ONBOARDING
        assert ONBOARDING_PROMPT in harness.voice.said

    def test_announces_ip_address_when_enabled(self, tmp_path, monkeypatch):
        monkeypatch.setattr("exhibit.state_machine.local_ip_address", lambda: "10.0.0.7")
        h = Harness(tmp_path, announce_ip_address=True)
        try:
            h.start()
            assert "The IP Address is: 10.0.0.7" in h.voice.said
        finally:
            h.close()

    def test_qr_round_trip_skips_onboarding_on_restart(self, harness):
        harness.start(device_id=None)
        harness.qr_probe.text = "  4f1c2a6e-guid  "
        harness.machine.tick()

        assert harness.identity.get_device_id() == "4f1c2a6e-guid"
        assert QR_FOUND_PROMPT in harness.voice.said
        assert harness.machine.state == DetectionStates.WAITING_FOR_FACES

        harness.machine.request_startup()
        harness.machine.tick()
        assert harness.machine.state == DetectionStates.WAITING_FOR_FACES
        assert harness.qr_probe.calls == 1

    def test_onboarding_without_qr_stays(self, harness):
        harness.start(device_id=None)
        harness.machine.tick()
        harness.machine.tick()
        assert harness.machine.state == DetectionStates.ONBOARDING
        assert harness.identity.get_device_id() is None


class TestCameraUnavailable:
    """Tests for hardware loss handling"""

    def test_open_failure_drives_idle(self, harness):
        harness.open_error = CameraUnavailableError("no device")
        harness.start()
        assert harness.machine.state == DetectionStates.IDLE
        assert NO_WEBCAM_PROMPT in harness.voice.said
        assert len(harness.alerts) == 1

    def test_read_failure_in_working_state_drives_idle_and_stops_probing(self, harness, face):
        harness.start()
        harness.stream.error = CameraUnavailableError("unplugged")
        harness.face_probe.faces = [face]
        harness.machine.tick()

        assert harness.machine.state == DetectionStates.IDLE
        assert harness.stream.released
        assert not harness.guard.attached

        reads = harness.stream.reads
        for _ in range(3):
            harness.machine.tick()
        assert harness.stream.reads == reads
        assert harness.face_probe.detect_calls == 0

    def test_reported_failure_applies_on_next_tick(self, harness, face):
        harness.start()
        run_to_disappear_wait(harness, face)
        assert harness.machine.state == DetectionStates.WAITING_FOR_FACES_TO_DISAPPEAR

        harness.machine.report_camera_failure()
        presence_calls = harness.face_probe.presence_calls
        harness.machine.tick()

        assert harness.machine.state == DetectionStates.IDLE
        assert harness.face_probe.presence_calls == presence_calls

    def test_reported_failure_ignored_while_idle(self, harness):
        harness.machine.report_camera_failure()
        harness.machine.tick()
        assert harness.machine.state == DetectionStates.IDLE
        assert harness.alerts == []

    def test_restart_after_failure_reopens_camera(self, harness):
        harness.start()
        harness.stream.error = CameraUnavailableError("unplugged")
        harness.machine.tick()
        harness.stream.error = None

        harness.machine.request_startup()
        harness.machine.tick()
        assert harness.machine.state == DetectionStates.WAITING_FOR_FACES
        assert harness.opened == 2

    def test_alert_sent_after_camera_released(self, harness):
        seen = []
        harness.machine.hardware_alert = lambda message: seen.append(
            (harness.machine.state, harness.guard.attached, harness.stream.released)
        )
        harness.start()
        harness.stream.error = CameraUnavailableError("unplugged")
        harness.machine.tick()
        assert seen == [(DetectionStates.IDLE, False, True)]

    def test_failing_alert_does_not_block_idle(self, harness):
        def broken_alert(message):
            raise RuntimeError("telegram down")

        harness.machine.hardware_alert = broken_alert
        harness.open_error = CameraUnavailableError("no device")
        harness.start()
        assert harness.machine.state == DetectionStates.IDLE

    def test_restart_while_running_reopens_single_camera(self, harness):
        streams = []

        def single_device_opener():
            if streams and not streams[-1].released:
                raise CameraUnavailableError("device busy")
            streams.append(FakeStream())
            return streams[-1]

        harness.machine.camera_opener = single_device_opener
        harness.start()
        assert harness.machine.state == DetectionStates.WAITING_FOR_FACES

        harness.machine.request_startup()
        harness.machine.tick()

        assert harness.machine.state == DetectionStates.WAITING_FOR_FACES
        assert NO_WEBCAM_PROMPT not in harness.voice.said
        assert len(streams) == 2
        assert streams[0].released
        assert not streams[1].released
        assert harness.guard.attached

    def test_transient_read_error_keeps_state(self, harness):
        harness.start()
        harness.stream.error = FrameReadError("dropped frame")
        harness.machine.tick()
        assert harness.machine.state == DetectionStates.WAITING_FOR_FACES


class TestWaitingForFaces:
    """Tests for the local face probe step"""

    def test_no_faces_stays(self, harness):
        harness.start()
        harness.machine.tick()
        assert harness.machine.state == DetectionStates.WAITING_FOR_FACES
        assert harness.machine.current.api_request_parameters is None

    def test_faces_build_jpeg_request(self, harness, face):
        harness.start()
        harness.face_probe.faces = [face]
        harness.machine.tick()
        assert harness.machine.state == DetectionStates.FACE_DETECTED_ON_DEVICE
        params = harness.machine.current.api_request_parameters
        assert params.image[:2] == b"\xff\xd8"
        assert params.faces == [face]

    def test_busy_guard_skips_tick(self, harness, face):
        harness.start()
        harness.face_probe.faces = [face]
        assert harness.guard._lock.acquire(blocking=False)
        try:
            harness.machine.tick()
        finally:
            harness.guard._lock.release()
        assert harness.machine.state == DetectionStates.WAITING_FOR_FACES
        assert harness.face_probe.detect_calls == 0
        assert harness.machine.stats.frames_skipped_busy == 1


class TestRemoteCall:
    """Tests for the throttled remote recognition call"""

    def test_full_cycle_plays_response(self, harness, face):
        harness.start()
        run_to_disappear_wait(harness, face)
        assert harness.machine.state == DetectionStates.WAITING_FOR_FACES_TO_DISAPPEAR
        assert harness.voice.introductions == [1]
        assert len(harness.client.posted) == 1
        assert len(harness.voice.responses) == 1
        assert harness.machine.current.faces_still_present is True
        assert harness.machine.current.last_image_api_push == 0.0

    def test_second_detection_within_interval_waits(self, tmp_path, face):
        h = Harness(tmp_path, api_interval_ms=5000.0, min_replay_delay_ms=0.0, faces_disappear_grace_ms=0.0)
        try:
            h.client.result = ApiResult.success([])
            h.start()
            run_to_disappear_wait(h, face)
            confirm_absence(h)
            assert h.machine.state == DetectionStates.WAITING_FOR_FACES
            assert len(h.client.posted) == 1

            h.clock.now = 1.0
            h.face_probe.faces = [face]
            h.machine.tick()
            h.machine.tick()
            assert h.machine.state == DetectionStates.FACE_DETECTED_ON_DEVICE
            assert len(h.client.posted) == 1
            assert h.voice.introductions == [1]

            h.clock.now = 5.0
            h.machine.tick()
            assert len(h.client.posted) == 2
            assert h.machine.state == DetectionStates.API_RESPONSE_RECEIVED
        finally:
            h.close()

    def test_replay_delay_after_stop(self, harness, face):
        harness.start()
        run_to_disappear_wait(harness, face)
        confirm_absence(harness)
        stopped_at = harness.machine.current.time_video_was_stopped
        assert stopped_at == 3.0
        assert harness.machine.state == DetectionStates.WAITING_FOR_FACES

        harness.face_probe.faces = [face]
        harness.machine.tick()
        for now in (5.0, 8.0, 12.999):
            harness.clock.now = now
            harness.machine.tick()
            assert harness.machine.state == DetectionStates.FACE_DETECTED_ON_DEVICE
        assert len(harness.client.posted) == 1

        harness.clock.now = stopped_at + 10.0
        harness.machine.tick()
        assert len(harness.client.posted) == 2

    def test_empty_list_skips_interpretation(self, harness, face):
        harness.client.result = ApiResult.success([])
        harness.start()
        harness.face_probe.faces = [face]
        harness.machine.tick()
        harness.machine.tick()
        assert harness.machine.state == DetectionStates.API_RESPONSE_RECEIVED
        harness.machine.tick()
        assert harness.machine.state == DetectionStates.WAITING_FOR_FACES_TO_DISAPPEAR
        assert harness.voice.responses == []

    def test_http_error_treated_like_empty_with_classification(self, harness, face, caplog):
        harness.client.result = ApiResult.failed(ApiFailure.HTTP_ERROR, status_code=500)
        harness.start()
        harness.face_probe.faces = [face]
        harness.machine.tick()
        harness.machine.tick()
        assert harness.machine.current.last_api_failure == ApiFailure.HTTP_ERROR
        assert harness.machine.current.faces_found_by_api is None

        with caplog.at_level(logging.INFO, logger="exhibit.state_machine"):
            harness.machine.tick()
        assert harness.machine.state == DetectionStates.WAITING_FOR_FACES_TO_DISAPPEAR
        assert harness.voice.responses == []
        assert "http_error" in caplog.text
        assert harness.machine.stats.api_failures == 1

    def test_missing_payload_returns_to_waiting(self, harness):
        harness.start()
        harness.machine.current.state = DetectionStates.FACE_DETECTED_ON_DEVICE
        harness.machine.tick()
        assert harness.machine.state == DetectionStates.WAITING_FOR_FACES
        assert harness.client.posted == []

    def test_no_new_playback_while_playing(self, harness, face):
        harness.voice.is_currently_playing = True
        harness.start()
        run_to_disappear_wait(harness, face)
        assert harness.machine.state == DetectionStates.WAITING_FOR_FACES_TO_DISAPPEAR
        assert harness.voice.responses == []


class TestDisappearance:
    """Tests for the two-probe disappearance debounce"""

    def test_two_negative_probes_stop_playback(self, harness, face):
        harness.start()
        run_to_disappear_wait(harness, face)
        harness.face_probe.presence = [False]

        harness.machine.tick()
        assert harness.machine.current.absence_recheck_at == 3.0
        assert harness.voice.stops == 0

        harness.clock.advance_ms(1000)
        harness.machine.tick()
        assert harness.face_probe.presence_calls == 1
        assert harness.machine.state == DetectionStates.WAITING_FOR_FACES_TO_DISAPPEAR

        harness.clock.now = 3.0
        harness.machine.tick()
        assert harness.voice.stops == 1
        assert harness.machine.state == DetectionStates.WAITING_FOR_FACES
        assert harness.machine.current.time_video_was_stopped == 3.0
        assert harness.machine.current.faces_still_present is False

    def test_negative_then_positive_keeps_playing(self, harness, face):
        harness.start()
        run_to_disappear_wait(harness, face)
        harness.face_probe.presence = [False, True]

        harness.machine.tick()
        harness.clock.advance_ms(3000)
        harness.machine.tick()

        assert harness.voice.stops == 0
        assert harness.machine.current.faces_still_present is True
        assert harness.machine.current.absence_recheck_at is None
        assert harness.machine.state == DetectionStates.WAITING_FOR_FACES_TO_DISAPPEAR

    def test_probe_failure_counts_as_absent_by_default(self, harness, face):
        harness.start()
        run_to_disappear_wait(harness, face)
        harness.face_probe.presence = [RuntimeError("tracker crashed")]

        harness.machine.tick()
        harness.clock.advance_ms(3000)
        harness.machine.tick()
        assert harness.machine.state == DetectionStates.WAITING_FOR_FACES

    def test_probe_failure_ignored_when_strict(self, tmp_path, face):
        h = Harness(tmp_path, probe_failure_counts_as_absent=False)
        try:
            h.start()
            run_to_disappear_wait(h, face)
            h.face_probe.presence = [RuntimeError("tracker crashed")]
            h.machine.tick()
            assert h.machine.current.absence_recheck_at is None
            assert h.machine.state == DetectionStates.WAITING_FOR_FACES_TO_DISAPPEAR
        finally:
            h.close()


class TestSuspendAndRecovery:
    """Tests for suspend requests and unknown states"""

    def test_suspend_request_releases_camera(self, harness):
        harness.start()
        harness.machine.request_suspend()
        harness.machine.tick()
        assert harness.machine.state == DetectionStates.IDLE
        assert harness.stream.released

    def test_synchronous_suspend(self, harness):
        harness.start()
        harness.machine.suspend()
        assert harness.machine.state == DetectionStates.IDLE
        assert not harness.guard.attached

    def test_unrecognized_state_resets_to_idle(self, harness):
        harness.start()
        harness.machine.current.state = "corrupted"
        harness.machine.tick()
        assert harness.machine.state == DetectionStates.IDLE
        assert harness.stream.released

    def test_unexpected_error_is_contained(self, harness, monkeypatch):
        harness.start()

        def boom(frame):
            raise ValueError("bad frame")

        monkeypatch.setattr(harness.face_probe, "detect", boom)
        harness.machine.tick()
        assert harness.machine.state == DetectionStates.WAITING_FOR_FACES
        assert harness.machine.stats.errors == 1
