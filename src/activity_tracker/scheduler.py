"""Background timers driving the deriver."""

from __future__ import annotations

import logging
import threading
from datetime import timedelta
from typing import Callable, Optional

from .deriver import ActiveTimeDeriver

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Run a callable immediately and then on a fixed period in a daemon thread.

    A failing run is logged and does not stop later runs. Runs never overlap
    since they share one thread.
    """

    def __init__(self, name: str, interval: timedelta, func: Callable[[], object]) -> None:
        self.name = name
        self.interval = interval
        self._func = func
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._stop_event: Optional[threading.Event] = None

    def start(self) -> None:
        with self._lock:
            if self._thread and self._thread.is_alive():
                return
            stop_event = threading.Event()
            thread = threading.Thread(
                target=self.run_until_stopped,
                args=(stop_event,),
                name=self.name,
                daemon=True,
            )
            self._thread = thread
            self._stop_event = stop_event
            thread.start()
            logger.debug("Task %s started.", self.name)

    def stop(self, timeout: float = 10.0) -> None:
        thread: Optional[threading.Thread] = None
        with self._lock:
            if not self._thread or not self._stop_event:
                return
            self._stop_event.set()
            thread = self._thread
            self._thread = None
            self._stop_event = None
        if thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=timeout)
        logger.debug("Task %s stopped.", self.name)

    def is_running(self) -> bool:
        with self._lock:
            return bool(self._thread and self._thread.is_alive())

    def run_until_stopped(self, stop_event: threading.Event) -> None:
        interval = self.interval.total_seconds()
        while not stop_event.is_set():
            try:
                self._func()
            except Exception:
                logger.exception("Task %s failed; continuing.", self.name)
            # Sleep in an interruptible manner.
            stop_event.wait(interval)


class TrackerRunner:
    """Owns the edge-detection and live-refresh timers of one deriver."""

    def __init__(self, deriver: ActiveTimeDeriver) -> None:
        self.deriver = deriver
        settings = deriver.settings
        self._tasks = [
            PeriodicTask("status-check", settings.poll_interval, deriver.check_status_changes),
            PeriodicTask(
                "live-refresh", settings.refresh_interval, deriver.refresh_live_durations
            ),
        ]

    def start(self) -> None:
        for task in self._tasks:
            task.start()
        logger.info(
            "Active time tracking started (poll every %.1fs).",
            self.deriver.settings.poll_interval.total_seconds(),
        )

    def stop(self) -> None:
        for task in self._tasks:
            task.stop()
        logger.info("Active time tracking stopped.")

    def is_running(self) -> bool:
        return all(task.is_running() for task in self._tasks)

    def run_forever(self) -> None:
        try:
            self.run_until_stopped(threading.Event())
        except KeyboardInterrupt:
            logger.info("Tracker interrupted; stopping timers.")

    def run_until_stopped(self, stop_event: threading.Event) -> None:
        """Block until the provided event is set, then stop both timers."""
        self.start()
        try:
            while not stop_event.wait(1.0):
                pass
        finally:
            self.stop()
