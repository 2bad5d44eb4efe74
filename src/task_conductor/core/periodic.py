"""Cancellable periodic background worker."""

import logging
import threading

logger = logging.getLogger(__name__)


class PeriodicWorker:
    """Background thread that calls ``run_once`` every ``interval`` seconds.

    Subclasses implement ``run_once``. An exception in one pass is logged and
    the loop carries on with the next.
    """

    name = "periodic-worker"

    def __init__(self, interval: float):
        self.interval = interval
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def run_once(self):
        raise NotImplementedError

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def start(self):
        """Start the worker thread."""
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        logger.info("%s started (every %ss)", self.name, self.interval)

    def stop(self):
        """Signal the worker thread to stop and wait for it."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=10)
            self._thread = None
        logger.info("%s stopped", self.name)

    def _run(self):
        while not self._stop_event.wait(self.interval):
            try:
                self.run_once()
            except Exception:
                logger.exception("Error in %s loop", self.name)
