"""
Per-chunk retry/validation loop for transcription.

ATTEMPT -> SCORE -> ACCEPT | DISCARD | ESCALATE, then RETRY or a terminal
outcome. The loop is bounded by the attempt budget and always ends with an
outcome that can be persisted and inspected; it never drops a chunk silently.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from chunkscribe.database import db
from chunkscribe.services import quality_gate
from chunkscribe.services.advisor import KEEP, SKIP
from . import run_state
from .exceptions import PipelineCancelled

logger = logging.getLogger(__name__)

INITIAL_TEMPERATURE = 0.2
RETRY_TEMPERATURE = 0.5

# Outcomes
VERIFIED = 'VERIFIED'
DISCARDED = 'DISCARDED'
KEPT = 'KEPT'
SKIPPED = 'SKIPPED'
EXHAUSTED = 'EXHAUSTED'
TRANSPORT_FAILED = 'TRANSPORT_FAILED'

# outcome -> (validation_status, discarded)
DRAFT_STATUS = {
    VERIFIED: ('VERIFIED', False),
    DISCARDED: ('VERIFIED', True),
    KEPT: ('SUSPICIOUS_RESOLVED', False),
    SKIPPED: ('SUSPICIOUS_RESOLVED', True),
    EXHAUSTED: ('FAILED', False),
    TRANSPORT_FAILED: ('FAILED', False),
}


@dataclass
class ChunkOutcome:
    status: str
    text: str = ''
    attempts: int = 0
    score: Optional[float] = None
    error: Optional[str] = None

    @property
    def failed(self):
        return self.status in (EXHAUSTED, TRANSPORT_FAILED)


class ValidationLoop:
    """Runs transcription attempts for one chunk until a terminal outcome."""

    def __init__(self, transcribe, consult, max_attempts=3,
                 min_length=quality_gate.DEFAULT_MIN_TEXT_LENGTH,
                 threshold=quality_gate.DEFAULT_BADNESS_THRESHOLD):
        self.transcribe = transcribe
        self.consult = consult
        self.max_attempts = max_attempts
        self.min_length = min_length
        self.threshold = threshold

    def run(self, chunk, tracker, token, seed_text=None):
        """
        Drive one chunk to a terminal outcome.

        Args:
            chunk: AudioChunk being transcribed
            tracker: ChunkTracker; its attempt counter survives watchdog restarts
            token: CancelToken of this attempt
            seed_text: Already-transcribed text to score before calling the provider
                (drafts edited by hand are re-validated this way)

        Raises:
            PipelineCancelled: the token was cancelled or superseded
        """
        temperature = None
        last_error = 'Attempt budget used up by stalled attempts' if tracker.attempts else None
        last_reason = ''
        last_text = ''
        last_score = None

        while tracker.attempts < self.max_attempts:
            token.raise_if_cancelled()

            if seed_text is not None:
                text, seed_text = seed_text, None
                attempt = tracker.begin_attempt(token)
            else:
                attempt = tracker.begin_attempt(token)
                if temperature is None:
                    temperature = INITIAL_TEMPERATURE if attempt == 1 else RETRY_TEMPERATURE
                tracker.touch(run_state.TRANSCRIBING, token)
                try:
                    text = self.transcribe(chunk, temperature, token)
                except PipelineCancelled:
                    raise
                except Exception as e:
                    last_error = str(e)
                    temperature = None
                    logger.warning(f"Chunk {chunk.index}: attempt {attempt}/{self.max_attempts} failed: {e}")
                    continue

            token.raise_if_cancelled()
            tracker.touch(run_state.VALIDATING, token)
            last_error = None

            gate = quality_gate.evaluate(text, self.min_length, self.threshold)
            cleaned = quality_gate.clean_text(text)
            if gate.verdict == quality_gate.ACCEPT:
                return ChunkOutcome(VERIFIED, cleaned, attempt, gate.score)
            if gate.verdict == quality_gate.DISCARD:
                logger.info(f"Chunk {chunk.index}: short output discarded as incidental silence")
                return ChunkOutcome(DISCARDED, cleaned, attempt, gate.score)

            last_reason, last_text, last_score = gate.reason, cleaned, gate.score
            logger.warning(f"Chunk {chunk.index}: attempt {attempt} rejected ({gate.reason}, score={gate.score})")

            if tracker.attempts >= self.max_attempts:
                break

            if gate.verdict == quality_gate.EMPTY:
                temperature = None
                continue

            tracker.touch(run_state.CONSULTING, token)
            advice = self.consult(cleaned, gate.reason)
            token.raise_if_cancelled()

            if advice.action == KEEP:
                logger.info(f"Chunk {chunk.index}: advisor kept flagged output")
                return ChunkOutcome(KEPT, cleaned, attempt, gate.score)
            if advice.action == SKIP:
                logger.info(f"Chunk {chunk.index}: advisor skipped output as noise")
                return ChunkOutcome(SKIPPED, cleaned, attempt, gate.score, f"Skipped as noise: {gate.reason}")

            temperature = advice.temperature
            logger.info(f"Chunk {chunk.index}: advisor requested retry (temperature={temperature})")

        attempts = tracker.attempts
        if last_error is not None:
            logger.error(f"Chunk {chunk.index}: transcription failed after {attempts} attempts: {last_error}")
            return ChunkOutcome(TRANSPORT_FAILED, '', attempts, None, last_error)

        logger.error(f"Chunk {chunk.index}: exhausted {attempts} attempts ({last_reason})")
        return ChunkOutcome(
            EXHAUSTED, last_text, attempts, last_score,
            f"Quality check failed after {attempts} attempts: {last_reason}"
        )


def save_draft(chunk, outcome, base_attempt=0):
    """
    Upsert the chunk's single DraftSegment from a loop outcome.

    Any PolishedSegment of the previous draft text is dropped with it.
    """
    from chunkscribe.models import DraftSegment

    status, discarded = DRAFT_STATUS[outcome.status]
    draft = chunk.draft
    if draft is None:
        draft = DraftSegment(chunk_id=chunk.id)
        db.session.add(draft)
        chunk.draft = draft
    elif draft.polished is not None:
        draft.polished = None

    draft.raw_text = outcome.text or ''
    draft.validation_status = status
    draft.discarded = discarded
    draft.retry_attempt = base_attempt + max(outcome.attempts - 1, 0)
    draft.quality_score = outcome.score
    draft.error_message = outcome.error
    db.session.commit()
    return draft


def save_polished(draft, result, failed_error=None):
    """Upsert the draft's single PolishedSegment from a refinement result."""
    from chunkscribe.models import PolishedSegment

    polished = draft.polished
    if polished is None:
        polished = PolishedSegment(draft_id=draft.id)
        db.session.add(polished)
        draft.polished = polished

    warnings = list(result.warnings)
    if failed_error:
        warnings.append(f"Refinement failed, raw transcription kept: {failed_error}")

    polished.polished_text = result.polished_text
    polished.has_repetition = result.has_repetition
    polished.set_warnings(warnings)
    polished.review_status = 'NEEDS_REVIEW' if (result.has_repetition or failed_error) else 'APPROVED'
    db.session.commit()
    return polished
