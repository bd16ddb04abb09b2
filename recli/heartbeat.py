"""
Heartbeat Service - Periodic liveness stamps for a recording session
"""

import logging
import threading
from typing import Callable, Optional


logger = logging.getLogger(__name__)


class HeartbeatService:
    """
    Calls `on_heartbeat` every `interval_seconds` on a background thread.

    The recorder uses it to stamp `last_seen_at` in the session metadata,
    which shows how recently a session was alive in `recli status` and
    bounds the end time of a session that died without cleaning up.
    """

    def __init__(
        self,
        interval_seconds: float = 30,
        on_heartbeat: Optional[Callable[[], None]] = None,
    ):
        self.interval = interval_seconds
        self.on_heartbeat = on_heartbeat

        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._heartbeat_count = 0

    def start(self):
        """Start the heartbeat timer in a background thread."""
        if self.is_running:
            return

        self._stop.clear()
        self._thread = threading.Thread(target=self._run_loop, name="recli-heartbeat", daemon=True)
        self._thread.start()

    def stop(self):
        """Stop the heartbeat service."""
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=2)
            self._thread = None

    def _run_loop(self):
        while not self._stop.wait(self.interval):
            self.emit_now()

    def emit_now(self):
        """Emit a heartbeat immediately."""
        self._heartbeat_count += 1
        if self.on_heartbeat is None:
            return
        try:
            self.on_heartbeat()
        except Exception:
            logger.warning("Heartbeat %d failed", self._heartbeat_count, exc_info=True)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def count(self) -> int:
        return self._heartbeat_count
