#!/usr/bin/env python3
"""
Tests for the stall watchdog.

The sweep is tested directly on trackers with controlled clocks, then once
end to end with a provider call that hangs.
"""

import sys
import time
import threading
from pathlib import Path
from unittest.mock import MagicMock

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))
sys.path.insert(0, str(Path(__file__).parent))

from helpers import ScriptedClients, make_app, make_project, project_snapshot, spoken, wait_until_idle
from chunkscribe.services.pipeline import pipeline_controller
from chunkscribe.services.pipeline.run_state import (
    RunRegistry,
    RunState,
    STAGE_TRANSCRIBE,
    TRANSCRIBING,
    IDLE,
    DONE,
)
from chunkscribe.services.pipeline.watchdog import Watchdog


def _registry_with_trackers(count=5):
    registry = RunRegistry()
    run = MagicMock()
    run.project_id = 7
    run.state = RunState(7)
    registry.claim(7, run)
    trackers = [run.state.track(chunk_id=100 + i, index=i, stage=STAGE_TRANSCRIBE) for i in range(1, count + 1)]
    for tracker in trackers:
        tracker.touch(TRANSCRIBING, tracker.token)
    return registry, run, trackers


def test_sweep_restarts_only_the_stalled_chunk():
    registry, run, trackers = _registry_with_trackers()
    stalled = trackers[3]
    old_token = stalled.token
    now = stalled.last_updated + 1
    stalled.last_updated -= 120

    restarted = Watchdog(registry, interval=5, timeout=60).sweep(now=now)

    assert restarted == [(7, stalled.chunk_id)]
    assert old_token.cancelled
    assert stalled.token is not old_token
    assert stalled.retry_count == 1
    assert stalled.phase == IDLE
    run.relaunch.assert_called_once_with(stalled, stalled.token)

    for tracker in trackers:
        if tracker is stalled:
            continue
        assert tracker.phase == TRANSCRIBING
        assert tracker.retry_count == 0
        assert not tracker.token.cancelled


def test_sweep_ignores_idle_and_finished_trackers():
    registry, run, trackers = _registry_with_trackers(2)
    done = trackers[0]
    done.finish(done.token, DONE)
    for tracker in trackers:
        tracker.last_updated -= 120
    trackers[1].restart_if_stale(trackers[1].last_updated + 121, 60, 'stalled')
    trackers[1].last_updated -= 120

    restarted = Watchdog(registry, timeout=60).sweep(now=trackers[0].last_updated + 500)

    assert restarted == []
    run.relaunch.assert_not_called()


def test_restarted_chunk_counts_as_active():
    registry, run, trackers = _registry_with_trackers(3)
    trackers[0].last_updated -= 120
    Watchdog(registry, timeout=60).sweep(now=trackers[1].last_updated + 1)

    assert run.state.counts(STAGE_TRANSCRIBE) == (3, 0)


def test_sweep_skips_runs_released_from_registry():
    registry, run, trackers = _registry_with_trackers(1)
    registry.release(7, run)
    trackers[0].last_updated -= 120

    assert Watchdog(registry, timeout=60).sweep(now=trackers[0].last_updated + 500) == []


def test_dispatch_slot_given_back_once():
    registry, run, trackers = _registry_with_trackers(2)
    released = []
    for tracker in trackers:
        tracker.hold_slot(lambda index=tracker.index: released.append(index))

    stalled = trackers[0]
    stale_token = stalled.token
    stalled.last_updated -= 120
    Watchdog(registry, timeout=60).sweep(now=trackers[1].last_updated + 1)
    assert released == [1]

    # Neither the superseded attempt nor the relaunch gives the slot back again
    assert stalled.finish(stale_token, DONE) is False
    stalled.finish(stalled.token, DONE)
    trackers[1].finish(trackers[1].token, DONE)
    assert released == [1, 2]


def test_watchdog_thread_start_stop():
    watchdog = Watchdog(RunRegistry(), interval=0.01, timeout=1)
    watchdog.start()
    assert watchdog.running
    watchdog.stop()
    assert not watchdog.running


def test_stalled_chunk_relaunched_and_completes():
    """Chunk 4 hangs on its first call; the watchdog relaunches it and the run completes."""
    hang = threading.Event()

    def stall(chunk, temperature, token):
        hang.wait(5)
        return "Stale text that must never be written."

    clients = ScriptedClients(transcripts={4: [stall, spoken(4)]})
    app = make_app(clients, WATCHDOG_INTERVAL=0.05, WATCHDOG_TIMEOUT=0.5)
    project_id = make_project(app, count=5)

    pipeline_controller.start_background()
    try:
        assert pipeline_controller.start(project_id)
        wait_until_idle(pipeline_controller, project_id, timeout=15)
    finally:
        hang.set()
        pipeline_controller.watchdog.stop()

    snapshot = project_snapshot(app, project_id)
    assert snapshot['checkpoint'] == 'COMPLETE'
    assert snapshot['chunks'][4]['raw_text'] == spoken(4)
    # The stalled call used one attempt of the budget
    assert snapshot['chunks'][4]['retry_attempt'] == 1
    for index in (1, 2, 3, 5):
        assert snapshot['chunks'][index]['retry_attempt'] == 0
    assert clients.transcribed_indexes().count(4) == 2
    assert "Stale text" not in snapshot['document']


def test_stalled_refinement_does_not_hold_the_next_chunk():
    """Chunk 1's first refine call hangs; chunk 2 is refined as soon as the relaunch finishes chunk 1."""
    hang = threading.Event()

    class StallingRefine(ScriptedClients):
        def __init__(self):
            super().__init__()
            self.started = {}
            self.stalled = False

        def refine(self, prior_context, raw_text, style):
            with self._lock:
                self.started.setdefault(raw_text, time.monotonic())
                stall = raw_text == spoken(1) and not self.stalled
                self.stalled = self.stalled or stall
            if stall:
                hang.wait(4)
            return super().refine(prior_context, raw_text, style)

    clients = StallingRefine()
    app = make_app(clients, WATCHDOG_INTERVAL=0.05, WATCHDOG_TIMEOUT=0.5)
    project_id = make_project(app, count=3)

    pipeline_controller.start_background()
    began = time.monotonic()
    try:
        assert pipeline_controller.start(project_id)
        wait_until_idle(pipeline_controller, project_id, timeout=15)
        elapsed = time.monotonic() - began
    finally:
        hang.set()
        pipeline_controller.watchdog.stop()

    # The run never waited out the hung call
    assert elapsed < 4
    assert clients.started[spoken(2)] - clients.started[spoken(1)] < 2.0

    snapshot = project_snapshot(app, project_id)
    assert snapshot['checkpoint'] == 'COMPLETE'
    assert snapshot['chunks'][2]['polished_text'] == f"Polished: {spoken(2)}"
    # Chunk 2 still saw chunk 1's refined text as context
    chunk_two = [call for call in clients.refine_calls if call['raw_text'] == spoken(2)]
    assert chunk_two[0]['context'] == f"Polished: {spoken(1)}"


def test_stalls_filling_every_worker_do_not_block_dispatch():
    """Chunks 1-3 hang on all three workers; chunk 4 still starts once the watchdog supersedes them."""
    hang = threading.Event()
    started = {}

    def stall(chunk, temperature, token):
        started.setdefault(chunk.index, time.monotonic())
        hang.wait(4)
        return "Stale text that must never be written."

    def record(chunk, temperature, token):
        started.setdefault(chunk.index, time.monotonic())
        return spoken(chunk.index)

    clients = ScriptedClients(transcripts={
        1: [stall, spoken(1)],
        2: [stall, spoken(2)],
        3: [stall, spoken(3)],
        4: [record],
    })
    app = make_app(clients, WATCHDOG_INTERVAL=0.05, WATCHDOG_TIMEOUT=0.5, TRANSCRIBE_WORKERS=3)
    project_id = make_project(app, count=4)

    pipeline_controller.start_background()
    try:
        assert pipeline_controller.start(project_id)
        wait_until_idle(pipeline_controller, project_id, timeout=15)
    finally:
        hang.set()
        pipeline_controller.watchdog.stop()

    first_stall = min(started[index] for index in (1, 2, 3))
    assert started[4] - first_stall < 2.0

    snapshot = project_snapshot(app, project_id)
    assert snapshot['checkpoint'] == 'COMPLETE'
    for index in (1, 2, 3):
        assert snapshot['chunks'][index]['raw_text'] == spoken(index)
        assert snapshot['chunks'][index]['retry_attempt'] == 1
    assert snapshot['chunks'][4]['retry_attempt'] == 0
    assert "Stale text" not in snapshot['document']
