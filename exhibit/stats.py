from __future__ import annotations

"""Thread-safe runtime counters for logs and the operator `/status` command."""

import threading
import time


class RuntimeStats:
    """Counters shared by the tick loop, speech thread and operator commands."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.started_at = time.time()

        self.ticks = 0
        self.frames_acquired = 0
        self.frames_skipped_busy = 0
        self.local_face_detections = 0
        self.api_calls = 0
        self.api_failures = 0
        self.playbacks = 0
        self.errors = 0
        self.last_event_at = self.started_at

    def _touch(self) -> None:
        self.last_event_at = time.time()

    def inc_ticks(self) -> None:
        with self._lock:
            self.ticks += 1

    def inc_frames_acquired(self) -> None:
        with self._lock:
            self.frames_acquired += 1

    def inc_frames_skipped_busy(self) -> None:
        with self._lock:
            self.frames_skipped_busy += 1

    def inc_local_face_detections(self) -> None:
        with self._lock:
            self.local_face_detections += 1
            self._touch()

    def record_api_call(self, ok: bool) -> None:
        with self._lock:
            self.api_calls += 1
            if not ok:
                self.api_failures += 1
            self._touch()

    def inc_playbacks(self) -> None:
        with self._lock:
            self.playbacks += 1
            self._touch()

    def inc_errors(self) -> None:
        with self._lock:
            self.errors += 1
            self._touch()

    def status_report(self, state: str) -> str:
        """Build the human-readable status string."""
        with self._lock:
            now = time.time()
            uptime = int(now - self.started_at)
            last_event = int(now - self.last_event_at)
            return (
                "Exhibit status: running\n"
                f"State: {state} | Uptime: {uptime}s | Last activity: {last_event}s ago\n"
                f"Ticks={self.ticks}, frames={self.frames_acquired}, busy_skips={self.frames_skipped_busy}, "
                f"local_faces={self.local_face_detections}\n"
                f"API calls={self.api_calls} (failed={self.api_failures}), playbacks={self.playbacks}, "
                f"errors={self.errors}"
            )
