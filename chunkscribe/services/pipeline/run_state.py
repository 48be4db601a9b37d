"""
In-memory state of pipeline runs.

Each run owns one RunState: per-chunk trackers, the failed-chunk list and the
pause/abort flags. Nothing here survives a restart; the persisted checkpoint
and segments are the source of truth, this is only for live status, the
watchdog and cooperative control.
"""

import threading
import time
from contextlib import contextmanager
from typing import Dict, List, Optional

from .exceptions import PipelineCancelled

# Chunk phases
QUEUED = 'QUEUED'
IDLE = 'IDLE'
TRANSCRIBING = 'TRANSCRIBING'
VALIDATING = 'VALIDATING'
CONSULTING = 'CONSULTING'
REFINING = 'REFINING'
DONE = 'DONE'
FAILED = 'FAILED'
STOPPED = 'STOPPED'

BUSY_PHASES = {TRANSCRIBING, VALIDATING, CONSULTING, REFINING}
FINAL_PHASES = {DONE, FAILED, STOPPED}

# Stages a tracker belongs to
STAGE_TRANSCRIBE = 'transcribe'
STAGE_REFINE = 'refine'
STAGE_MANUAL = 'manual'
STAGE_MANUAL_REFINE = 'manual_refine'


class CancelToken:
    """Cancellation scope of one chunk attempt."""

    def __init__(self):
        self._event = threading.Event()
        self.reason = None

    def cancel(self, reason='cancelled'):
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self):
        return self._event.is_set()

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise PipelineCancelled(self.reason or 'cancelled')


class ChunkTracker:
    """Live progress of one chunk inside a run."""

    def __init__(self, chunk_id, index, stage):
        self.chunk_id = chunk_id
        self.index = index
        self.stage = stage
        self.phase = QUEUED
        self.last_updated = time.monotonic()
        self.retry_count = 0
        self.attempts = 0
        self.outcome = None
        self.error = None
        self.token = CancelToken()
        self._lock = threading.RLock()
        self._finished = threading.Event()
        self._release_slot = None

    def is_current(self, token):
        return token is self.token

    def touch(self, phase, token):
        """Record progress; ignored when token belongs to a superseded attempt."""
        with self._lock:
            if token is not self.token:
                raise PipelineCancelled('superseded by a newer attempt')
            self.phase = phase
            self.last_updated = time.monotonic()

    def begin_attempt(self, token):
        """Count one provider call against the chunk's attempt budget."""
        with self._lock:
            if token is not self.token:
                raise PipelineCancelled('superseded by a newer attempt')
            self.attempts += 1
            self.last_updated = time.monotonic()
            return self.attempts

    @property
    def busy(self):
        return self.phase in BUSY_PHASES

    def hold_slot(self, release):
        """
        Attach a dispatch slot of the stage.

        The slot is given back once, when the chunk finishes or when a stale
        attempt is superseded; a relaunched attempt runs outside the stage limit.
        """
        with self._lock:
            self._release_slot = release

    def _give_back_slot(self):
        release, self._release_slot = self._release_slot, None
        if release is not None:
            release()

    def restart_if_stale(self, now, timeout, reason):
        """
        Cancel a stalled attempt and hand out a fresh token.

        Returns the new token, or None when the chunk is no longer busy or
        has reported progress in the meantime.
        """
        with self._lock:
            if self.phase not in BUSY_PHASES or now - self.last_updated <= timeout:
                return None
            self.token.cancel(reason)
            self.token = CancelToken()
            self.retry_count += 1
            self.phase = IDLE
            self.last_updated = now
            self._give_back_slot()
            return self.token

    @contextmanager
    def owning(self, token):
        """Hold the tracker while persisting results of the attempt that owns token."""
        with self._lock:
            if token is not self.token or token.cancelled:
                raise PipelineCancelled(token.reason or 'superseded by a newer attempt')
            yield

    def finish(self, token, phase, outcome=None, error=None):
        with self._lock:
            if token is not self.token:
                return False
            self.phase = phase
            self.outcome = outcome
            self.error = error
            self.last_updated = time.monotonic()
            self._finished.set()
            self._give_back_slot()
            return True

    @property
    def finished(self):
        return self._finished.is_set()

    def wait(self, timeout=None):
        return self._finished.wait(timeout)

    def to_dict(self):
        return {
            'chunkId': self.chunk_id,
            'index': self.index,
            'stage': self.stage,
            'phase': self.phase,
            'retryCount': self.retry_count,
            'attempts': self.attempts,
            'outcome': self.outcome,
            'error': self.error,
        }


class RunState:
    """Counters, failures and control flags of one project run."""

    def __init__(self, project_id):
        self.project_id = project_id
        self.stage = None
        self.started_at = time.time()
        self._lock = threading.Lock()
        self._trackers: Dict[int, ChunkTracker] = {}
        self._failed: Dict[int, dict] = {}
        self._pause = threading.Event()
        self._abort = threading.Event()

    # --- control flags ---

    def request_pause(self):
        self._pause.set()

    @property
    def pause_requested(self):
        return self._pause.is_set()

    @property
    def abort_requested(self):
        return self._abort.is_set()

    @property
    def stop_requested(self):
        return self._pause.is_set() or self._abort.is_set()

    def abort(self, reason='aborted'):
        self._abort.set()
        self.cancel_all(reason)

    def cancel_all(self, reason):
        for tracker in self.trackers():
            tracker.token.cancel(reason)

    # --- trackers ---

    def track(self, chunk_id, index, stage):
        tracker = ChunkTracker(chunk_id, index, stage)
        with self._lock:
            self._trackers[chunk_id] = tracker
        return tracker

    def tracker(self, chunk_id) -> Optional[ChunkTracker]:
        with self._lock:
            return self._trackers.get(chunk_id)

    def trackers(self) -> List[ChunkTracker]:
        with self._lock:
            return list(self._trackers.values())

    def busy_trackers(self) -> List[ChunkTracker]:
        return [tracker for tracker in self.trackers() if tracker.busy]

    def counts(self, stage):
        """(active, pending) for a stage. A chunk reset by the watchdog counts as active."""
        active = pending = 0
        for tracker in self.trackers():
            if tracker.stage != stage:
                continue
            if tracker.phase == QUEUED:
                pending += 1
            elif tracker.phase in BUSY_PHASES or tracker.phase == IDLE:
                active += 1
        return active, pending

    # --- failures ---

    def record_failure(self, chunk_id, index, error, retry_attempt):
        with self._lock:
            self._failed[chunk_id] = {
                'chunkId': chunk_id,
                'index': index,
                'error': error,
                'retryAttempt': retry_attempt,
            }

    def clear_failure(self, chunk_id):
        with self._lock:
            self._failed.pop(chunk_id, None)

    def failures(self) -> List[dict]:
        with self._lock:
            return [dict(entry) for entry in self._failed.values()]

    def merge_failures(self, other):
        for entry in other.failures():
            self.record_failure(entry['chunkId'], entry['index'], entry['error'], entry['retryAttempt'])


class RunRegistry:
    """Lock-guarded map of project id to its single active run."""

    def __init__(self):
        self._lock = threading.Lock()
        self._runs = {}

    def claim(self, project_id, run):
        """Register run as the owner of project_id; False if another run owns it."""
        with self._lock:
            if project_id in self._runs:
                return False
            self._runs[project_id] = run
            return True

    def get(self, project_id):
        with self._lock:
            return self._runs.get(project_id)

    def release(self, project_id, run):
        with self._lock:
            if self._runs.get(project_id) is run:
                del self._runs[project_id]

    def active_runs(self):
        with self._lock:
            return list(self._runs.values())

    def __len__(self):
        with self._lock:
            return len(self._runs)
