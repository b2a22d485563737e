from __future__ import annotations

"""Text-to-speech output for announcements and exhibit playback.

Speech runs on one background worker so `say` and `play_*` never block the
tick loop. Announcements (`say`, introductions) and playback (`play_response`)
share that queue; only playback counts towards `is_currently_playing` and is
cut short by `stop()`.
"""

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

import pyttsx3

from exhibit.api_client import FaceRecord

logger = logging.getLogger(__name__)


@dataclass
class _Utterance:
    text: str
    playback: bool


def introduction_phrase(face_count: int) -> str:
    if face_count <= 1:
        return "Hello there, welcome to the exhibit. Let me take a look at you."
    return f"Hello, welcome all {face_count} of you. Let me take a look at you."


def describe_faces(faces: Sequence[FaceRecord]) -> List[str]:
    """Build the playback script for the faces the remote API returned."""
    if not faces:
        return []
    if len(faces) == 1:
        lines = ["I can see one visitor."]
    else:
        lines = [f"I can see {len(faces)} visitors."]
    for face in faces:
        if face.age is None:
            continue
        who = "someone"
        if face.gender:
            who = {"male": "a man", "female": "a woman"}.get(face.gender.lower(), "someone")
        lines.append(f"I think I see {who} of about {int(round(face.age))}.")
    lines.append("Enjoy the exhibit, and feel free to ask me a question.")
    return lines


class VoicePlayer:
    """Fire-and-forget speech output backed by pyttsx3."""

    def __init__(
        self,
        rate: int = 175,
        voice_name: str = "",
        engine_factory: Optional[Callable[[], object]] = None,
    ) -> None:
        self.rate = rate
        self.voice_name = voice_name
        self._engine_factory = engine_factory or pyttsx3.init
        self._engine = None
        self._queue: "queue.Queue[Optional[_Utterance]]" = queue.Queue()
        self._lock = threading.Lock()
        self._queue_lock = threading.Lock()
        self._pending_playback = 0
        self._thread: Optional[threading.Thread] = None

    @property
    def is_currently_playing(self) -> bool:
        with self._lock:
            return self._pending_playback > 0

    def say(self, text: str) -> None:
        """Queue a one-off announcement."""
        if text:
            self._enqueue(_Utterance(text=text, playback=False))

    def play_introduction(self, face_count: int) -> None:
        self.say(introduction_phrase(face_count))

    def play_response(self, faces: Sequence[FaceRecord]) -> None:
        """Queue the playback script for the recognised faces."""
        lines = describe_faces(faces)
        if not lines:
            return
        with self._lock:
            self._pending_playback += len(lines)
        for line in lines:
            self._enqueue(_Utterance(text=line, playback=True))

    def stop(self) -> None:
        """Drop queued playback and interrupt the current utterance."""
        dropped = 0
        kept: List[Optional[_Utterance]] = []
        # Held across drain and re-queue so concurrent say() calls stay in order.
        with self._queue_lock:
            while True:
                try:
                    item = self._queue.get_nowait()
                except queue.Empty:
                    break
                if item is not None and item.playback:
                    dropped += 1
                else:
                    kept.append(item)
            for item in kept:
                self._queue.put(item)
        if dropped:
            self._finish_playback(dropped)

        engine = self._engine
        if engine is not None:
            try:
                engine.stop()
            except Exception:
                logger.exception("Failed to stop speech engine")
        logger.info("Playback stopped (%d queued line(s) dropped)", dropped)

    def close(self) -> None:
        """Stop the worker thread after the queue drains."""
        thread = self._thread
        if thread is None:
            return
        with self._queue_lock:
            self._queue.put(None)
        thread.join(timeout=5)
        self._thread = None

    def _enqueue(self, item: _Utterance) -> None:
        self._ensure_worker()
        with self._queue_lock:
            self._queue.put(item)

    def _ensure_worker(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._thread = threading.Thread(target=self._run, name="voice-player", daemon=True)
            self._thread.start()

    def _finish_playback(self, count: int = 1) -> None:
        with self._lock:
            self._pending_playback = max(0, self._pending_playback - count)

    def _init_engine(self):
        """Create the engine on the worker thread; `None` when unavailable."""
        try:
            engine = self._engine_factory()
            engine.setProperty("rate", self.rate)
            if self.voice_name:
                for voice in engine.getProperty("voices") or []:
                    if self.voice_name.lower() in str(voice.name).lower():
                        engine.setProperty("voice", voice.id)
                        break
            return engine
        except Exception:
            logger.exception("Speech engine unavailable; announcements will only be logged")
            return None

    def _run(self) -> None:
        self._engine = self._init_engine()
        while True:
            item = self._queue.get()
            if item is None:
                break
            try:
                logger.info("Saying: %s", item.text)
                if self._engine is not None:
                    self._engine.say(item.text)
                    self._engine.runAndWait()
            except Exception:
                logger.exception("Speech output failed")
            finally:
                if item.playback:
                    self._finish_playback()
