#!/usr/bin/env python3
"""
Background watchdog that keeps the source application from blocking an
export on a modal dialog.

Use as a context manager around the traversal; the polling thread is
stopped and joined on every exit path.
"""

import threading
from typing import Callable, Optional

from run_log import logger


class DialogWatchdog:
    """Calls ``poll`` every ``interval`` seconds on a daemon thread."""

    def __init__(self, poll: Callable[[], int], interval: float = 0.5,
                 name: str = 'dialog-watchdog'):
        self.poll = poll
        self.interval = interval
        self.name = name
        self.dismissed = 0
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        logger.debug(f"{self.name} started (interval {self.interval}s)")

    def stop(self, timeout: float = 5.0):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.debug(f"{self.name} stopped ({self.dismissed} dialog(s) dismissed)")

    def _run(self):
        while not self._stop.wait(self.interval):
            try:
                closed = self.poll() or 0
            except Exception as e:  # the watchdog must never take the export down
                logger.debug(f"{self.name} poll failed: {e}")
                continue
            if closed:
                self.dismissed += closed
                logger.debug(f"{self.name} dismissed {closed} dialog(s)")

    def __enter__(self) -> 'DialogWatchdog':
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()
        return False
