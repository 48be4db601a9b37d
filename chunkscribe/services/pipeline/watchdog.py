"""
Stall watchdog for in-flight chunks.

A chunk whose tracker has not reported progress for longer than the timeout
while in a busy phase is cancelled, counted as a retry, reset to IDLE and
relaunched with a fresh token. The stalled attempt keeps running until its
provider call returns, but it can no longer write results.
"""

import threading
import time
import logging

logger = logging.getLogger(__name__)


class Watchdog:
    """Periodic sweep over every active run's busy trackers."""

    def __init__(self, registry, interval=5.0, timeout=60.0):
        self.registry = registry
        self.interval = interval
        self.timeout = timeout
        self._stop = threading.Event()
        self._thread = None

    @property
    def running(self):
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="PipelineWatchdog", daemon=True)
        self._thread.start()
        logger.info(f"Watchdog started (interval={self.interval}s, timeout={self.timeout}s)")

    def stop(self):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
        logger.info("Watchdog stopped")

    def _loop(self):
        while not self._stop.wait(self.interval):
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Watchdog sweep error: {e}", exc_info=True)

    def sweep(self, now=None):
        """
        Restart every stalled chunk once.

        Returns:
            List of (project_id, chunk_id) pairs that were restarted
        """
        now = time.monotonic() if now is None else now
        restarted = []

        for run in self.registry.active_runs():
            for tracker in run.state.busy_trackers():
                stalled_for = now - tracker.last_updated
                token = tracker.restart_if_stale(now, self.timeout, f"stalled for {stalled_for:.0f}s")
                if token is None:
                    continue

                logger.warning(
                    f"Project {run.project_id}: chunk {tracker.index} stalled in {tracker.stage} "
                    f"for {stalled_for:.0f}s, restarting (retry {tracker.retry_count})"
                )
                run.relaunch(tracker, token)
                restarted.append((run.project_id, tracker.chunk_id))

        return restarted
