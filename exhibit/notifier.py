from __future__ import annotations

"""Telegram operator channel: hardware alerts and remote commands."""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from telegram import Bot
from telegram.error import NetworkError, RetryAfter, TimedOut
from telegram.request import HTTPXRequest

logger = logging.getLogger(__name__)


@dataclass
class TelegramEvent:
    """Normalized inbound operator command."""

    text: str
    chat_id: str
    message_id: Optional[int] = None


class TelegramNotifier:
    """Thread-safe Telegram integration for operator alerts and commands."""

    def __init__(self, bot_token: str, chat_id: str) -> None:
        """Initialize bot client and background asyncio loop when configured."""
        self.enabled = bool(bot_token and chat_id)
        self.chat_id = chat_id
        self.bot = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._loop_thread: threading.Thread | None = None
        self._listener_thread: threading.Thread | None = None
        self._listener_stop = threading.Event()
        self._update_offset = 0
        self._send_lock = threading.Lock()

        if self.enabled:
            request = HTTPXRequest(
                connection_pool_size=8,
                pool_timeout=30.0,
                connect_timeout=10.0,
                read_timeout=30.0,
                write_timeout=30.0,
            )
            self.bot = Bot(token=bot_token, request=request)
            self._loop = asyncio.new_event_loop()
            self._loop_thread = threading.Thread(target=self._run_loop, name="telegram-loop", daemon=True)
            self._loop_thread.start()

    def _run_loop(self) -> None:
        """Run dedicated asyncio event loop for Telegram API calls."""
        if self._loop is None:
            return
        asyncio.set_event_loop(self._loop)
        self._loop.run_forever()

    async def _send_photo_async(self, image_path: Path, caption: str) -> None:
        if self.bot is None:
            return
        with image_path.open("rb") as photo:
            await self.bot.send_photo(
                chat_id=self.chat_id,
                photo=photo,
                caption=caption,
                read_timeout=30.0,
                write_timeout=30.0,
            )

    async def _send_text_async(self, text: str) -> None:
        if self.bot is None:
            return
        await self.bot.send_message(chat_id=self.chat_id, text=text, read_timeout=30.0, write_timeout=30.0)

    async def _get_updates_async(self, offset: int):
        """Poll Telegram updates for command processing."""
        if self.bot is None:
            return []
        return await self.bot.get_updates(offset=offset, timeout=25, allowed_updates=["message"])

    def _send_with_retry(self, make_coro: Callable[[], object], what: str, timeout: float) -> bool:
        """Run one send coroutine on the loop with retry/backoff semantics."""
        if not self.enabled or self._loop is None:
            logger.info("Telegram not configured; skipping %s.", what)
            return False

        with self._send_lock:
            attempts = 3
            for attempt in range(1, attempts + 1):
                try:
                    future = asyncio.run_coroutine_threadsafe(make_coro(), self._loop)
                    future.result(timeout=timeout)
                    return True
                except RetryAfter as exc:
                    retry_after = getattr(exc, "retry_after", 2)
                    # Newer python-telegram-bot releases report a timedelta.
                    delay = retry_after.total_seconds() if hasattr(retry_after, "total_seconds") else float(retry_after)
                    logger.warning("Telegram rate-limited; retrying in %.1fs (attempt %d/%d)", delay, attempt, attempts)
                    time.sleep(delay)
                except (TimedOut, NetworkError) as exc:
                    delay = 1.5 * attempt
                    logger.warning(
                        "Telegram %s failed (%s); retrying in %.1fs (attempt %d/%d)",
                        what,
                        exc,
                        delay,
                        attempt,
                        attempts,
                    )
                    time.sleep(delay)
                except Exception as exc:
                    logger.exception("Unexpected Telegram error: %s", exc)
                    return False

        logger.error("Telegram %s failed after %d attempts", what, attempts)
        return False

    def send_text(self, text: str) -> bool:
        """Synchronously send a text message."""
        return self._send_with_retry(lambda: self._send_text_async(text=text), "message", timeout=60)

    def post_text(self, text: str) -> None:
        """Send a text message on a short-lived thread without waiting for it."""
        if not self.enabled:
            logger.info("Telegram not configured; skipping message.")
            return
        threading.Thread(target=self.send_text, args=(text,), name="telegram-alert", daemon=True).start()

    def send_snapshot(self, image_path: Path, caption: str) -> bool:
        """Synchronously send a camera snapshot."""
        return self._send_with_retry(
            lambda: self._send_photo_async(image_path=image_path, caption=caption),
            "snapshot",
            timeout=90,
        )

    def start_command_listener(self, command_handler: Callable[[TelegramEvent], Optional[str]]) -> None:
        """Start polling commands and replying via provided handler callback."""
        if not self.enabled or self._loop is None:
            return
        if self._listener_thread is not None:
            return

        def _loop() -> None:
            # Only the configured operator chat may drive the exhibit.
            allowed_chat = str(self.chat_id).strip()
            while not self._listener_stop.is_set():
                try:
                    future = asyncio.run_coroutine_threadsafe(
                        self._get_updates_async(offset=self._update_offset),
                        self._loop,
                    )
                    updates = future.result(timeout=40)
                except Exception:
                    logger.exception("Telegram command poll failed")
                    self._listener_stop.wait(timeout=2.0)
                    continue

                for update in updates:
                    self._update_offset = int(update.update_id) + 1
                    message = getattr(update, "message", None)
                    if message is None:
                        continue
                    text = (getattr(message, "text", None) or "").strip()
                    incoming_chat = str(getattr(message, "chat_id", "")).strip()
                    if not text or (allowed_chat and incoming_chat != allowed_chat):
                        continue
                    event = TelegramEvent(
                        text=text,
                        chat_id=incoming_chat,
                        message_id=int(getattr(message, "message_id", 0) or 0) or None,
                    )
                    try:
                        reply = command_handler(event)
                    except Exception:
                        logger.exception("Operator command failed: %s", text)
                        reply = "Command failed, see exhibit log."
                    if reply:
                        self.send_text(reply)

        self._listener_thread = threading.Thread(target=_loop, name="telegram-command-listener", daemon=True)
        self._listener_thread.start()

    def close(self) -> None:
        """Stop listener/event loop threads and release resources."""
        self._listener_stop.set()
        if self._listener_thread is not None:
            self._listener_thread.join(timeout=2)
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self._loop.stop)
        if self._loop_thread is not None:
            self._loop_thread.join(timeout=2)
