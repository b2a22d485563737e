from __future__ import annotations

"""Spoken-question handling: speech recognition in, bot reply spoken out.

This path runs on the recogniser's background thread and never touches the
detection state; it only shares the voice player.
"""

import logging
from enum import IntEnum
from typing import Any, Callable, Optional, Tuple

import speech_recognition as sr

from exhibit.api_client import ConversationClient
from exhibit.voice import VoicePlayer

logger = logging.getLogger(__name__)

NOT_UNDERSTOOD_PROMPT = "I didn't understand you, please rephrase your question"
MICROPHONE_UNAVAILABLE_PROMPT = (
    "Microphone access was declined or no microphone is available, so I cannot listen to questions."
)


class SpeechConfidence(IntEnum):
    REJECTED = 0
    LOW = 1
    MEDIUM = 2
    HIGH = 3


def confidence_from_score(score: Optional[float]) -> SpeechConfidence:
    """Map a recogniser score in [0, 1] to a confidence band.

    Engines that omit the score for their top hypothesis are treated as
    `MEDIUM`.
    """
    if score is None:
        return SpeechConfidence.MEDIUM
    if score >= 0.8:
        return SpeechConfidence.HIGH
    if score >= 0.5:
        return SpeechConfidence.MEDIUM
    if score > 0.0:
        return SpeechConfidence.LOW
    return SpeechConfidence.REJECTED


def best_alternative(result: Any) -> Tuple[str, SpeechConfidence]:
    """Pick the top transcript from a `recognize_google(show_all=True)` result."""
    if not isinstance(result, dict):
        return "", SpeechConfidence.REJECTED
    alternatives = result.get("alternative") or []
    if not alternatives:
        return "", SpeechConfidence.REJECTED
    top = alternatives[0]
    text = str(top.get("transcript", "")).strip()
    if not text:
        return "", SpeechConfidence.REJECTED
    return text, confidence_from_score(top.get("confidence"))


class SpeechResultHandler:
    """Send confident questions to the bot and speak its answer."""

    def __init__(self, conversation_client: ConversationClient, voice: VoicePlayer) -> None:
        self.conversation_client = conversation_client
        self.voice = voice

    def handle(self, text: str, confidence: SpeechConfidence) -> Optional[str]:
        """Process one recognised phrase; returns the spoken reply, if any."""
        if confidence < SpeechConfidence.MEDIUM:
            logger.info("Speech not understood (%s): %r", confidence.name, text)
            self.voice.say(NOT_UNDERSTOOD_PROMPT)
            return None

        logger.info("Speech recognised: %s", text)
        try:
            posted = self.conversation_client.post_message(text)
            if not posted.ok or not posted.value:
                logger.info("No conversation id returned from bot (%s)", posted.failure)
                return None

            reply = self.conversation_client.get_reply(posted.value)
            if not reply.ok or not reply.value:
                logger.info("Bot returned no reply for conversation %s (%s)", posted.value, reply.failure)
                return None

            logger.info("Bot response: %s", reply.value)
            self.voice.say(reply.value)
            return reply.value
        except Exception:
            logger.exception("Failed handling recognised speech")
            return None


class SpeechListener:
    """Continuous microphone listener built on SpeechRecognition."""

    def __init__(
        self,
        handler: SpeechResultHandler,
        voice: VoicePlayer,
        device_index: Optional[int] = None,
        phrase_time_limit: float = 10.0,
        recognizer: Optional[sr.Recognizer] = None,
        microphone_factory: Optional[Callable[[], Any]] = None,
    ) -> None:
        self.handler = handler
        self.voice = voice
        self.device_index = device_index
        self.phrase_time_limit = phrase_time_limit
        self._recognizer = recognizer or sr.Recognizer()
        self._microphone_factory = microphone_factory or (lambda: sr.Microphone(device_index=self.device_index))
        self._stop_listening: Optional[Callable[..., None]] = None

    @property
    def listening(self) -> bool:
        return self._stop_listening is not None

    def start(self) -> bool:
        """Start background listening; a failure disables speech input only."""
        if self._stop_listening is not None:
            return True
        try:
            microphone = self._microphone_factory()
            with microphone as source:
                self._recognizer.adjust_for_ambient_noise(source, duration=1.0)
            self._stop_listening = self._recognizer.listen_in_background(
                microphone,
                self._on_audio,
                phrase_time_limit=self.phrase_time_limit,
            )
        except Exception as exc:
            logger.error("Error starting speech recognition: %s", exc)
            self.voice.say(MICROPHONE_UNAVAILABLE_PROMPT)
            return False
        logger.info("Speech recognition started")
        return True

    def stop(self) -> None:
        stop_listening, self._stop_listening = self._stop_listening, None
        if stop_listening is not None:
            stop_listening(wait_for_stop=False)
            logger.info("Speech recognition stopped")

    def _on_audio(self, recognizer: sr.Recognizer, audio: sr.AudioData) -> None:
        try:
            result = recognizer.recognize_google(audio, show_all=True)
        except sr.RequestError as exc:
            logger.warning("Speech recognition service unavailable: %s", exc)
            return
        except Exception:
            logger.exception("Speech recognition failed")
            return

        text, confidence = best_alternative(result)
        if not text:
            return
        self.handler.handle(text, confidence)
