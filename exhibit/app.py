from __future__ import annotations

"""Exhibit orchestration.

This module wires together:
- camera guard, probes and the detection state machine
- the tick scheduler driving the machine
- recognition/conversation HTTP clients and voice output
- the optional speech listener and Telegram operator channel
"""

import functools
import logging
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Optional

import cv2

from exhibit.api_client import ConversationClient, RecognitionClient
from exhibit.camera import CameraUnavailableError, FrameReadError, FrameSourceGuard, open_camera_stream
from exhibit.config import Settings
from exhibit.identity import DeviceIdentityStore
from exhibit.notifier import TelegramEvent, TelegramNotifier
from exhibit.probes import FacePresenceProbe, QrOnboardingProbe, RequestBuilder
from exhibit.scheduler import TickScheduler
from exhibit.speech import SpeechListener, SpeechResultHandler
from exhibit.state_machine import DetectionStateMachine
from exhibit.stats import RuntimeStats
from exhibit.voice import VoicePlayer

logger = logging.getLogger(__name__)


class ExhibitApp:
    """Top-level service object controlling the exhibit lifecycle."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.stats = RuntimeStats()
        self.stop_event = threading.Event()
        self.settings.snapshot_dir.mkdir(parents=True, exist_ok=True)

        self.identity_store = DeviceIdentityStore(settings.identity_db_path)
        self.voice = VoicePlayer(rate=settings.tts_rate, voice_name=settings.tts_voice)
        self.notifier = TelegramNotifier(settings.telegram_bot_token, settings.telegram_chat_id)

        self.recognition_client = RecognitionClient(
            settings.face_api_url,
            device_id_provider=self.identity_store.get_device_id,
            timeout_seconds=settings.http_timeout_seconds,
        )
        self.conversation_client: Optional[ConversationClient] = None
        if settings.bot_api_url:
            self.conversation_client = ConversationClient(
                settings.bot_api_url,
                device_id_provider=self.identity_store.get_device_id,
                timeout_seconds=settings.http_timeout_seconds,
            )

        self.guard = FrameSourceGuard()
        self.machine = DetectionStateMachine(
            settings=settings,
            camera_opener=functools.partial(
                open_camera_stream,
                settings.camera_device_name,
                width=settings.camera_frame_width,
                height=settings.camera_frame_height,
                max_read_failures=settings.camera_max_read_failures,
            ),
            guard=self.guard,
            face_probe=FacePresenceProbe(min_size_px=settings.face_min_size_px),
            qr_probe=QrOnboardingProbe(),
            request_builder=RequestBuilder(
                jpeg_quality=settings.jpeg_quality,
                crop_to_faces=settings.crop_to_faces,
                crop_margin_ratio=settings.crop_margin_ratio,
            ),
            recognition_client=self.recognition_client,
            voice=self.voice,
            identity_store=self.identity_store,
            stats=self.stats,
            hardware_alert=self.notifier.post_text if self.notifier.enabled else None,
        )
        self.scheduler = TickScheduler(self.machine.tick, settings.tick_interval_ms / 1000.0)

        self.speech_listener: Optional[SpeechListener] = None
        if settings.speech_enabled and self.conversation_client is not None:
            self.speech_listener = SpeechListener(
                SpeechResultHandler(self.conversation_client, self.voice),
                self.voice,
                device_index=settings.microphone_device_index,
            )
        elif settings.speech_enabled:
            logger.warning("Speech enabled but BOT_API_URL is not set; spoken questions are disabled")

    def start(self) -> None:
        """Kick the machine out of Idle and start all background workers."""
        logger.info(
            "Starting exhibit (tick=%.0fms, api interval=%.0fms, grace=%.0fms, replay delay=%.0fms)",
            self.settings.tick_interval_ms,
            self.settings.api_interval_ms,
            self.settings.faces_disappear_grace_ms,
            self.settings.min_replay_delay_ms,
        )
        self.notifier.start_command_listener(self._handle_telegram_event)
        if self.speech_listener is not None:
            self.speech_listener.start()
        self.machine.request_startup()
        self.scheduler.start()

    def stop(self) -> None:
        """Stop ticking, drive the machine to Idle and release resources."""
        self.stop_event.set()
        self.scheduler.stop()
        self.machine.suspend()
        if self.speech_listener is not None:
            self.speech_listener.stop()
        self.voice.close()
        self.recognition_client.close()
        if self.conversation_client is not None:
            self.conversation_client.close()
        self.notifier.close()
        self.identity_store.close()
        logger.info("Exhibit stopped, all resources released")

    def run(self) -> None:
        """Run the exhibit until interrupted from the main thread."""
        self.start()
        try:
            while not self.stop_event.is_set():
                time.sleep(0.2)
        except KeyboardInterrupt:
            logger.info("Interrupted by user, stopping exhibit...")
            self.stop_event.set()
        finally:
            self.stop()

    def _save_snapshot(self) -> Optional[Path]:
        frame = self.guard.try_acquire_frame()
        if frame is None:
            return None
        output_path = self.settings.snapshot_dir / f"exhibit_{datetime.now().strftime('%Y%m%d_%H%M%S')}.jpg"
        if not cv2.imwrite(str(output_path), frame.frame):
            raise OSError(f"Failed writing snapshot to {output_path}")
        return output_path

    def _handle_telegram_event(self, event: TelegramEvent) -> Optional[str]:
        """Handle operator commands sent through Telegram."""
        text = (event.text or "").strip()
        if not text:
            return None

        command = text.split()[0].lower()

        if command in {"ping", "/ping"}:
            return "pong"
        if command in {"status", "/status"}:
            return self.stats.status_report(state=self.machine.state.name)
        if command in {"help", "/help", "?"}:
            return (
                "Commands:\n"
                "/ping\n"
                "/status\n"
                "/restart  (re-run startup)\n"
                "/suspend  (go idle, release camera)\n"
                "/snapshot\n"
                "/deviceid"
            )
        if command == "/restart":
            self.machine.request_startup()
            logger.info("Telegram command requested exhibit restart")
            return "Restart requested."
        if command == "/suspend":
            self.machine.request_suspend()
            logger.info("Telegram command requested exhibit suspend")
            return "Suspend requested. Use /restart to resume."
        if command == "/deviceid":
            device_id = self.identity_store.get_device_id()
            if device_id is None:
                return "No device id stored yet; show a device id QR code to the camera."
            return f"Device id: {device_id}"
        if command == "/snapshot":
            try:
                path = self._save_snapshot()
            except CameraUnavailableError:
                return "Camera is not running. Use /restart first."
            except FrameReadError as exc:
                return f"Camera read failed: {exc}"
            if path is None:
                return "Camera busy, try again."
            if self.notifier.send_snapshot(path, caption=f"Exhibit snapshot ({self.machine.state.name})"):
                return None
            return f"Snapshot saved to {path.name} but could not be sent."
        return None
