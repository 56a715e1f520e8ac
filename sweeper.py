import logging
import threading

logger = logging.getLogger(__name__)


class AutoCompleteSweeper:
    """
    Runs `sweep()` every `interval` seconds on a daemon thread until stopped.

    `sweep` is any zero-argument callable; errors are logged and the loop
    carries on with the next tick.
    """

    def __init__(self, sweep, interval):
        self.sweep = sweep
        self.interval = interval
        self._stop = threading.Event()
        self._thread = None

    @property
    def running(self):
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="auto-complete-sweeper", daemon=True)
        self._thread.start()
        logger.info("Auto-complete sweeper started (every %ss)", self.interval)

    def stop(self, timeout=None):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Auto-complete sweeper stopped")

    def run_once(self):
        try:
            return self.sweep()
        except Exception:
            logger.exception("Auto-complete sweep failed")
            return 0

    def _run(self):
        # wait() returns True once stop() is called
        while not self._stop.wait(self.interval):
            self.run_once()
