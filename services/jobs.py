"""
IcsMap background jobs.
Periodic automated alert checks and resolved-alert cleanup on a daemon thread.
"""

import logging
import threading
from typing import Optional

from toolkit.utils import utc_now_iso

logger = logging.getLogger(__name__)


class AutomatedCheckDaemon:
    """Runs AlertEngine.run_automated_checks every ``interval_seconds``."""

    def __init__(self, alerts, *, interval_seconds: int = 300, cleanup_every: int = 12):
        self.alerts = alerts
        self.interval_seconds = max(5, int(interval_seconds))
        self.cleanup_every = max(1, int(cleanup_every))
        self.running = False
        self.thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._wake = threading.Event()
        self._ticks = 0
        self._last_run_at = ""
        self._last_result: dict = {}
        self._last_error = ""

    def configure(self, *, interval_seconds: Optional[int] = None) -> None:
        with self._lock:
            if interval_seconds is not None:
                self.interval_seconds = max(5, int(interval_seconds))

    def start(self) -> None:
        with self._lock:
            if self.running:
                return
            self.running = True
            self._wake.clear()
            self.thread = threading.Thread(target=self._loop, name="icsmap-checks", daemon=True)
            self.thread.start()
        logger.info("automated checks started (every %ss)", self.interval_seconds)

    def stop(self) -> None:
        with self._lock:
            self.running = False
            thread = self.thread
        self._wake.set()
        if thread is not None:
            thread.join(timeout=2)
        logger.info("automated checks stopped")

    def status(self) -> dict:
        with self._lock:
            return {
                "running": bool(self.running),
                "interval_seconds": int(self.interval_seconds),
                "ticks": self._ticks,
                "last_run_at": self._last_run_at,
                "last_result": dict(self._last_result),
                "last_error": self._last_error,
            }

    def run_once(self) -> dict:
        """One pass; every ``cleanup_every`` passes also prunes old resolved alerts."""
        result = self.alerts.run_automated_checks()
        with self._lock:
            self._ticks += 1
            cleanup = self._ticks % self.cleanup_every == 0
        if cleanup:
            result["cleaned_up"] = self.alerts.cleanup_old_alerts()
        with self._lock:
            self._last_run_at = utc_now_iso()
            self._last_result = dict(result)
            self._last_error = ""
        return result

    def _loop(self) -> None:
        while True:
            with self._lock:
                if not self.running:
                    return
                interval = int(self.interval_seconds)
            try:
                self.run_once()
            except Exception as exc:
                logger.exception("automated check pass failed")
                with self._lock:
                    self._last_error = str(exc)
            self._wake.wait(max(0.5, interval))
