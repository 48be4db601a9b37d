"""
Checkpoint state machine.

The checkpoint is the persisted, coarse-grained record of how far a project
got. It only moves along the adjacency table below; PAUSED and FAILED can be
entered from any non-terminal state.
"""

import logging

from chunkscribe.database import db
from .exceptions import CheckpointError

logger = logging.getLogger(__name__)

UPLOADED = 'UPLOADED'
COMPRESSED = 'COMPRESSED'
CHUNKED = 'CHUNKED'
TRANSCRIBING = 'TRANSCRIBING'
TRANSCRIBED = 'TRANSCRIBED'
VALIDATED = 'VALIDATED'
POLISHING = 'POLISHING'
POLISHED = 'POLISHED'
MERGED = 'MERGED'
COMPLETE = 'COMPLETE'

PAUSED = 'PAUSED'
FAILED = 'FAILED'
TRANSCRIBED_PARTIAL = 'TRANSCRIBED_PARTIAL'
BLOCKED = 'BLOCKED'

CHECKPOINT_ORDER = [
    UPLOADED, COMPRESSED, CHUNKED, TRANSCRIBING, TRANSCRIBED,
    VALIDATED, POLISHING, POLISHED, MERGED, COMPLETE,
]
SIDE_STATES = {PAUSED, FAILED, TRANSCRIBED_PARTIAL, BLOCKED}
ALL_STATES = set(CHECKPOINT_ORDER) | SIDE_STATES
TERMINAL_STATES = {COMPLETE, FAILED, BLOCKED}
RESUMABLE_STATES = {CHUNKED, TRANSCRIBED, VALIDATED, POLISHED, PAUSED}

# Checkpoints a crashed process can leave behind while a run was in flight
RECOVERABLE_STATES = {TRANSCRIBING, TRANSCRIBED, VALIDATED, POLISHING, POLISHED, MERGED}

VALID_TRANSITIONS = {
    UPLOADED: {COMPRESSED, BLOCKED},
    COMPRESSED: {CHUNKED, BLOCKED},
    CHUNKED: {TRANSCRIBING, BLOCKED},
    TRANSCRIBING: {TRANSCRIBED, TRANSCRIBED_PARTIAL},
    TRANSCRIBED: {VALIDATED},
    VALIDATED: {POLISHING},
    POLISHING: {POLISHED},
    POLISHED: {MERGED},
    MERGED: {COMPLETE},
    TRANSCRIBED_PARTIAL: {BLOCKED},
    PAUSED: set(),
    COMPLETE: set(),
    FAILED: set(),
    BLOCKED: set(),
}


def can_transition(from_checkpoint, to_checkpoint):
    """Whether from_checkpoint -> to_checkpoint is a legal single step."""
    if from_checkpoint not in VALID_TRANSITIONS or to_checkpoint not in ALL_STATES:
        return False
    if from_checkpoint in TERMINAL_STATES:
        return False
    if to_checkpoint in (PAUSED, FAILED):
        return from_checkpoint != to_checkpoint
    return to_checkpoint in VALID_TRANSITIONS[from_checkpoint]


def is_resumable(checkpoint):
    return checkpoint in RESUMABLE_STATES


def nearest_resumable(checkpoint):
    """
    The closest stable checkpoint at or before a forward checkpoint.

    UPLOADED and COMPRESSED map to themselves: nothing has been processed yet.
    TRANSCRIBED_PARTIAL sits after TRANSCRIBING, so it maps to CHUNKED.
    """
    if checkpoint == TRANSCRIBED_PARTIAL:
        return CHUNKED
    if checkpoint not in CHECKPOINT_ORDER:
        raise CheckpointError(f"No resume point for checkpoint {checkpoint}")

    position = CHECKPOINT_ORDER.index(checkpoint)
    for candidate in reversed(CHECKPOINT_ORDER[:position + 1]):
        if candidate in RESUMABLE_STATES:
            return candidate
    return checkpoint


def resume_point(project):
    """
    Forward checkpoint a new run for this project should start from.

    Raises:
        CheckpointError: the project is terminal
    """
    checkpoint = project.checkpoint
    if checkpoint in TERMINAL_STATES:
        raise CheckpointError(f"Project {project.id} is {checkpoint} and cannot be resumed")
    if checkpoint == PAUSED:
        return nearest_resumable(project.last_checkpoint or CHUNKED)
    return nearest_resumable(checkpoint)


def advance(project, next_checkpoint, error_message=None, commit=True):
    """
    Persist a single legal checkpoint step.

    Raises:
        CheckpointError: the step is not in the adjacency table
    """
    current = project.checkpoint
    if not can_transition(current, next_checkpoint):
        raise CheckpointError(f"Invalid checkpoint transition {current} -> {next_checkpoint} for project {project.id}")

    project.checkpoint = next_checkpoint
    if next_checkpoint in CHECKPOINT_ORDER:
        project.last_checkpoint = next_checkpoint
    if error_message is not None:
        project.error_message = error_message

    if commit:
        db.session.commit()

    if next_checkpoint in (FAILED, BLOCKED, TRANSCRIBED_PARTIAL):
        logger.warning(f"Project {project.id}: {current} -> {next_checkpoint} ({error_message or 'no details'})")
    else:
        logger.info(f"Project {project.id}: {current} -> {next_checkpoint}")


def rewind(project, checkpoint, commit=True):
    """
    Move a project back to a resumable checkpoint at the start of a new run.

    Runs resume from stable checkpoints only, so a project left at PAUSED,
    TRANSCRIBING or TRANSCRIBED_PARTIAL is first rewound to its resume point.
    """
    if checkpoint not in CHECKPOINT_ORDER:
        raise CheckpointError(f"Cannot rewind to side state {checkpoint}")
    if checkpoint not in RESUMABLE_STATES and checkpoint not in (UPLOADED, COMPRESSED):
        raise CheckpointError(f"Cannot rewind to non-resumable checkpoint {checkpoint}")

    previous = project.checkpoint
    project.checkpoint = checkpoint
    project.last_checkpoint = checkpoint
    project.error_message = None
    if commit:
        db.session.commit()
    logger.info(f"Project {project.id}: resuming from {checkpoint} (was {previous})")


def phase_progress(checkpoint):
    """Coarse progress of a checkpoint along the forward order, in percent."""
    if checkpoint not in CHECKPOINT_ORDER:
        return None
    return round(CHECKPOINT_ORDER.index(checkpoint) * 100 / (len(CHECKPOINT_ORDER) - 1))
