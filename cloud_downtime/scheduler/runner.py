"""Fixed-interval driver for the downtime reconciler."""

import logging
import threading
import time
from typing import Optional

from .reconciler import DowntimeReconciler
from ..core.exceptions import ConfigurationError


logger = logging.getLogger(__name__)


class DowntimeScheduler:
    """Runs ``reconciler.tick()`` on a fixed interval, never two ticks at once."""

    def __init__(self, reconciler: DowntimeReconciler, interval_seconds: float = 60):
        """Initialize the scheduler.

        Raises:
            ConfigurationError: If the interval is not positive
        """
        if interval_seconds <= 0:
            raise ConfigurationError(f"Tick interval must be positive, got {interval_seconds}")

        self.reconciler = reconciler
        self.interval_seconds = interval_seconds

        self._tick_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self) -> bool:
        """Run a tick unless one is already running.

        Returns:
            True if a tick ran, False if this firing was skipped
        """
        if not self._tick_lock.acquire(blocking=False):
            logger.warning("Previous downtime tick still running; skipping this one")
            return False

        try:
            self.reconciler.tick()
        except Exception as e:
            logger.exception(f"Error in background scheduler: {e}")
        finally:
            self._tick_lock.release()
        return True

    def run_forever(self) -> None:
        """Tick until stop() is called."""
        logger.info(f"Background scheduler started. Checking downtimes every {self.interval_seconds}s...")

        while not self._stop_event.is_set():
            started = time.monotonic()
            self.run_once()
            elapsed = time.monotonic() - started
            self._stop_event.wait(max(0.0, self.interval_seconds - elapsed))

        logger.info("Background scheduler stopped")

    def start(self) -> threading.Thread:
        """Run the loop on a daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            return self._thread

        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run_forever, name='downtime-scheduler', daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
