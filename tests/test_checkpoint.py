#!/usr/bin/env python3
"""
Tests for the checkpoint state machine.

Transitions are exercised on a plain stand-in object with commit=False, so
no database is needed.
"""

import sys
from pathlib import Path
from types import SimpleNamespace

import pytest

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from chunkscribe.services.pipeline import checkpoint as cp
from chunkscribe.services.pipeline.exceptions import CheckpointError


def _project(checkpoint, last_checkpoint=None):
    return SimpleNamespace(id=1, checkpoint=checkpoint, last_checkpoint=last_checkpoint, error_message=None)


def test_forward_order_is_single_step():
    for current, following in zip(cp.CHECKPOINT_ORDER, cp.CHECKPOINT_ORDER[1:]):
        assert cp.can_transition(current, following), f"{current} -> {following}"

    # No skipping intermediate checkpoints
    assert not cp.can_transition(cp.CHUNKED, cp.TRANSCRIBED)
    assert not cp.can_transition(cp.TRANSCRIBED, cp.POLISHING)
    assert not cp.can_transition(cp.POLISHED, cp.COMPLETE)


def test_no_backward_transitions():
    assert not cp.can_transition(cp.VALIDATED, cp.TRANSCRIBED)
    assert not cp.can_transition(cp.MERGED, cp.CHUNKED)


def test_pause_and_fail_from_any_non_terminal_state():
    for state in cp.CHECKPOINT_ORDER[:-1] + [cp.TRANSCRIBED_PARTIAL]:
        assert cp.can_transition(state, cp.PAUSED)
        assert cp.can_transition(state, cp.FAILED)

    assert not cp.can_transition(cp.PAUSED, cp.PAUSED)
    assert cp.can_transition(cp.PAUSED, cp.FAILED)


def test_terminal_states_have_no_exits():
    for terminal in cp.TERMINAL_STATES:
        for target in cp.ALL_STATES:
            assert not cp.can_transition(terminal, target)


def test_partial_transcription_only_blocks():
    assert cp.can_transition(cp.TRANSCRIBING, cp.TRANSCRIBED_PARTIAL)
    assert cp.can_transition(cp.TRANSCRIBED_PARTIAL, cp.BLOCKED)
    assert not cp.can_transition(cp.TRANSCRIBED_PARTIAL, cp.VALIDATED)


def test_unknown_states_rejected():
    assert not cp.can_transition('DONE', cp.CHUNKED)
    assert not cp.can_transition(cp.CHUNKED, 'DONE')


def test_resumable_subset():
    assert {s for s in cp.ALL_STATES if cp.is_resumable(s)} == {
        cp.CHUNKED, cp.TRANSCRIBED, cp.VALIDATED, cp.POLISHED, cp.PAUSED
    }


def test_nearest_resumable_walks_back():
    assert cp.nearest_resumable(cp.TRANSCRIBING) == cp.CHUNKED
    assert cp.nearest_resumable(cp.POLISHING) == cp.VALIDATED
    assert cp.nearest_resumable(cp.MERGED) == cp.POLISHED
    assert cp.nearest_resumable(cp.TRANSCRIBED) == cp.TRANSCRIBED
    assert cp.nearest_resumable(cp.TRANSCRIBED_PARTIAL) == cp.CHUNKED
    assert cp.nearest_resumable(cp.UPLOADED) == cp.UPLOADED


def test_resume_point_from_paused_uses_last_checkpoint():
    assert cp.resume_point(_project(cp.PAUSED, cp.POLISHING)) == cp.VALIDATED
    assert cp.resume_point(_project(cp.PAUSED, cp.TRANSCRIBED)) == cp.TRANSCRIBED


def test_resume_point_rejects_terminal():
    for terminal in (cp.COMPLETE, cp.FAILED, cp.BLOCKED):
        with pytest.raises(CheckpointError):
            cp.resume_point(_project(terminal))


def test_advance_records_last_forward_checkpoint():
    project = _project(cp.CHUNKED, cp.CHUNKED)
    cp.advance(project, cp.TRANSCRIBING, commit=False)
    assert project.checkpoint == cp.TRANSCRIBING
    assert project.last_checkpoint == cp.TRANSCRIBING

    cp.advance(project, cp.PAUSED, commit=False)
    assert project.checkpoint == cp.PAUSED
    assert project.last_checkpoint == cp.TRANSCRIBING


def test_advance_rejects_illegal_step():
    project = _project(cp.CHUNKED, cp.CHUNKED)
    with pytest.raises(CheckpointError):
        cp.advance(project, cp.POLISHED, commit=False)
    assert project.checkpoint == cp.CHUNKED


def test_advance_to_failed_keeps_error():
    project = _project(cp.POLISHING, cp.POLISHING)
    cp.advance(project, cp.FAILED, error_message='boom', commit=False)
    assert project.checkpoint == cp.FAILED
    assert project.error_message == 'boom'
    assert project.last_checkpoint == cp.POLISHING


def test_rewind_only_to_resumable():
    project = _project(cp.TRANSCRIBED_PARTIAL, cp.TRANSCRIBING)
    project.error_message = 'two chunks failed'
    cp.rewind(project, cp.CHUNKED, commit=False)
    assert project.checkpoint == cp.CHUNKED
    assert project.error_message is None

    with pytest.raises(CheckpointError):
        cp.rewind(project, cp.POLISHING, commit=False)
    with pytest.raises(CheckpointError):
        cp.rewind(project, cp.PAUSED, commit=False)


def test_phase_progress():
    assert cp.phase_progress(cp.UPLOADED) == 0
    assert cp.phase_progress(cp.COMPLETE) == 100
    assert cp.phase_progress(cp.PAUSED) is None
