from __future__ import annotations

"""Self-rearming tick timer for the detection state machine."""

import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class TickScheduler:
    """Invoke `tick` once per interval, never overlapping with itself.

    The next tick is armed only after the previous one has returned or
    raised, so the state machine is never re-entered.
    """

    def __init__(self, tick: Callable[[], None], interval_seconds: float, name: str = "tick-scheduler") -> None:
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be > 0, got {interval_seconds}")
        self.tick = tick
        self.interval_seconds = interval_seconds
        self.name = name
        self.stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self.stop_event.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        logger.info("Tick scheduler started (interval %.3fs)", self.interval_seconds)

    def stop(self, timeout: Optional[float] = 10.0) -> None:
        """Stop rearming and wait for the in-flight tick to finish."""
        self.stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning("Tick still running after %.1fs stop timeout", timeout or 0.0)
        self._thread = None
        logger.info("Tick scheduler stopped")

    def run_pending(self) -> None:
        """Run one tick on the calling thread, containing any failure."""
        try:
            self.tick()
        except Exception:
            logger.exception("Tick failed")

    def _run(self) -> None:
        # Wait happens after the tick so slow ticks delay, never stack.
        while not self.stop_event.is_set():
            self.run_pending()
            if self.stop_event.wait(timeout=self.interval_seconds):
                break
