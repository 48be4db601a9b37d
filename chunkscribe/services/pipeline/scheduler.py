"""
Concurrency scheduler.

A PipelineRun owns one project run from start to its last checkpoint:

- transcription: one thread per chunk behind a bounded number of dispatch
  slots, chunks in any order, each wrapped by the retry/validation loop
- refinement: one chunk at a time in index order, each fed the accepted text
  of the two preceding chunks as context
- merge, then COMPLETE

Pause is cooperative (checked before every chunk dispatch); abort cancels
every chunk's token. The run body never raises: unexpected errors are written
to the project as FAILED.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Optional

from chunkscribe.database import db
from chunkscribe.services.refinement import RefineResult
from chunkscribe.services.templates import resolve_style
from . import checkpoint as cp
from . import run_state
from .exceptions import PipelineCancelled, CheckpointError, ProjectNotFoundError
from .merge import merge_project
from .retry_loop import ValidationLoop, save_draft, save_polished, TRANSPORT_FAILED

logger = logging.getLogger(__name__)

WAIT_POLL = 0.2  # seconds between abort checks while waiting on a chunk

# Checkpoints after which a re-transcribed chunk must also be re-refined
REFINED_STATES = {cp.POLISHING, cp.POLISHED, cp.MERGED, cp.COMPLETE}

# Single-chunk operations
MANUAL_RETRANSCRIBE = 'retranscribe'
MANUAL_REFINE = 'refine'


@dataclass
class PipelineSettings:
    transcribe_workers: int = 3
    manual_workers: int = 1
    max_transcribe_attempts: int = 3
    max_refine_attempts: int = 2
    min_text_length: int = 5
    badness_threshold: float = 0.8
    context_char_limit: int = 2000
    watchdog_interval: float = 5.0
    watchdog_timeout: float = 60.0
    output_folder: Optional[str] = None

    @classmethod
    def from_config(cls, config):
        return cls(
            transcribe_workers=int(config.get('TRANSCRIBE_WORKERS', 3)),
            manual_workers=int(config.get('MANUAL_WORKERS', 1)),
            max_transcribe_attempts=int(config.get('MAX_TRANSCRIBE_ATTEMPTS', 3)),
            max_refine_attempts=int(config.get('MAX_REFINE_ATTEMPTS', 2)),
            min_text_length=int(config.get('MIN_TEXT_LENGTH', 5)),
            badness_threshold=float(config.get('BADNESS_THRESHOLD', 0.8)),
            context_char_limit=int(config.get('CONTEXT_CHAR_LIMIT', 2000)),
            watchdog_interval=float(config.get('WATCHDOG_INTERVAL', 5)),
            watchdog_timeout=float(config.get('WATCHDOG_TIMEOUT', 60)),
            output_folder=config.get('OUTPUT_FOLDER'),
        )


def build_prior_context(speech_chunks, position, limit):
    """Accepted text of the two non-silence chunks before position, cut to the trailing limit."""
    parts = []
    for chunk in speech_chunks[max(0, position - 2):position]:
        draft = chunk.draft
        if draft is None or not draft.is_usable:
            continue
        text = draft.polished.polished_text if draft.polished is not None else draft.raw_text
        if text and text.strip():
            parts.append(text.strip())
    context = '\n\n'.join(parts)
    if limit and len(context) > limit:
        return context[-limit:]
    return context


class PipelineRun:
    """One supervised run over a project, or over a single chunk for manual retries."""

    def __init__(self, app, project_id, clients, settings, chunk_id=None, on_finish=None,
                 action=MANUAL_RETRANSCRIBE):
        self.app = app
        self.project_id = project_id
        self.chunk_id = chunk_id
        self.action = action
        self.clients = clients
        self.settings = settings
        self.on_finish = on_finish
        self.state = run_state.RunState(project_id)
        self.loop = ValidationLoop(
            clients.transcribe,
            clients.consult,
            max_attempts=settings.max_transcribe_attempts,
            min_length=settings.min_text_length,
            threshold=settings.badness_threshold
        )
        self._done = threading.Event()

    @property
    def is_manual(self):
        return self.chunk_id is not None

    @property
    def finished(self):
        return self._done.is_set()

    def wait(self, timeout=None):
        return self._done.wait(timeout)

    def abort(self, reason='Aborted'):
        self.state.abort(reason)

    # --- supervised body ---

    def execute(self):
        """Run to completion, pause or failure. Never raises."""
        try:
            with self.app.app_context():
                try:
                    if self.is_manual:
                        self._run_single_chunk()
                    else:
                        self._run_pipeline()
                except PipelineCancelled as e:
                    db.session.rollback()
                    logger.info(f"Project {self.project_id}: run cancelled ({e.reason})")
                except CheckpointError as e:
                    db.session.rollback()
                    if self.state.abort_requested:
                        logger.info(f"Project {self.project_id}: run stopped after abort ({e})")
                    else:
                        logger.error(f"Project {self.project_id}: {e}")
                        self._mark_failed(str(e))
                except Exception as e:
                    db.session.rollback()
                    logger.error(f"Project {self.project_id}: pipeline run failed: {e}", exc_info=True)
                    if self.is_manual:
                        self.state.record_failure(self.chunk_id, None, str(e), 0)
                    else:
                        self._mark_failed(str(e))
        finally:
            try:
                if self.on_finish:
                    self.on_finish(self)
            finally:
                self._done.set()

    def _mark_failed(self, error):
        from chunkscribe.models import Project

        try:
            project = db.session.get(Project, self.project_id)
            if project is not None and cp.can_transition(project.checkpoint, cp.FAILED):
                cp.advance(project, cp.FAILED, error_message=error)
        except Exception as e:
            db.session.rollback()
            logger.error(f"Project {self.project_id}: could not record failure: {e}", exc_info=True)

    def _project(self):
        from chunkscribe.models import Project

        project = db.session.get(Project, self.project_id)
        if project is None:
            raise ProjectNotFoundError(f"Project {self.project_id} not found")
        return project

    def _refresh(self, project):
        # Chunk tasks commit from their own sessions
        db.session.expire_all()
        return project

    def _start_point(self, project):
        """Resume point, moved back further when chunks still need an earlier stage."""
        point = cp.resume_point(project)
        speech = project.speech_chunks
        later = cp.CHECKPOINT_ORDER.index(point) if point in cp.CHECKPOINT_ORDER else 0

        if later >= cp.CHECKPOINT_ORDER.index(cp.TRANSCRIBED) and any(c.draft is None for c in speech):
            return cp.CHUNKED
        if later > cp.CHECKPOINT_ORDER.index(cp.TRANSCRIBED) and any(
                c.draft.validation_status == 'PENDING' for c in speech):
            return cp.TRANSCRIBED
        if point == cp.POLISHED and any(c.draft.is_usable and c.draft.polished is None for c in speech):
            return cp.VALIDATED
        return point

    def _halt(self, project):
        """Stop between dispatches when abort or pause was requested."""
        if self.state.abort_requested:
            logger.info(f"Project {self.project_id}: run stopped by abort")
            return True
        if self.state.pause_requested:
            db.session.refresh(project)
            if cp.can_transition(project.checkpoint, cp.PAUSED):
                cp.advance(project, cp.PAUSED)
            logger.info(f"Project {self.project_id}: paused (last checkpoint {project.last_checkpoint})")
            return True
        return False

    def _run_pipeline(self):
        project = self._project()
        if project.checkpoint in cp.TERMINAL_STATES:
            logger.info(f"Project {self.project_id} is {project.checkpoint}; nothing to run")
            return

        point = self._start_point(project)
        if point != project.checkpoint:
            cp.rewind(project, point)

        if project.checkpoint in (cp.UPLOADED, cp.COMPRESSED):
            if not project.chunks:
                cp.advance(project, cp.BLOCKED,
                           error_message='No chunks available; the recording must be split before processing')
                return
            if project.checkpoint == cp.UPLOADED:
                cp.advance(project, cp.COMPRESSED)
            cp.advance(project, cp.CHUNKED)

        if project.checkpoint == cp.CHUNKED:
            if self._halt(project):
                return
            cp.advance(project, cp.TRANSCRIBING)
            pending = [c for c in project.speech_chunks if c.draft is None]
            complete = self._transcription_stage(project, pending)
            if self._halt(project):
                return
            if not complete:
                failed = len(self.state.failures())
                cp.advance(project, cp.TRANSCRIBED_PARTIAL,
                           error_message=f"{failed} chunk(s) failed transcription; retry or resume to continue")
                return
            cp.advance(project, cp.TRANSCRIBED)

        if project.checkpoint == cp.TRANSCRIBED:
            if self._halt(project):
                return
            pending = [c for c in project.speech_chunks
                       if c.draft is not None and c.draft.validation_status == 'PENDING']
            complete = self._transcription_stage(project, pending)
            if self._halt(project):
                return
            if not complete:
                # Edited drafts stay PENDING; resume re-validates them
                failed = len(self.state.failures())
                cp.advance(project, cp.PAUSED,
                           error_message=f"{failed} edited draft(s) could not be re-validated; resume to try again")
                return
            cp.advance(project, cp.VALIDATED)

        if project.checkpoint == cp.VALIDATED:
            if self._halt(project):
                return
            cp.advance(project, cp.POLISHING)
            self._refinement_stage(project)
            if self._halt(project):
                return
            cp.advance(project, cp.POLISHED)

        if project.checkpoint == cp.POLISHED:
            if self._halt(project):
                return
            self.state.stage = 'merge'
            merge_project(project, self.settings.output_folder)
            for next_checkpoint in (cp.MERGED, cp.COMPLETE):
                # An abort committed FAILED from the request thread while merging
                db.session.refresh(project)
                if self.state.abort_requested:
                    logger.info(f"Project {self.project_id}: run stopped by abort during merge")
                    return
                cp.advance(project, next_checkpoint)
            logger.info(f"Project {self.project_id}: pipeline complete")

    # --- dispatch ---

    def _spawn(self, target, tracker, token, name):
        """Run one chunk task on its own daemon thread."""
        thread = threading.Thread(target=target, args=(tracker, token), name=name, daemon=True)
        thread.start()
        return thread

    def _wait_all(self, trackers):
        for tracker in trackers:
            while not tracker.wait(WAIT_POLL):
                if self.state.abort_requested:
                    return False
        return True

    def _acquire_slot(self, slots):
        """Block until a dispatch slot is free; False once pause or abort was requested."""
        while not self.state.stop_requested:
            if slots.acquire(timeout=WAIT_POLL):
                return True
        return False

    # --- transcription stage ---

    def _transcription_stage(self, project, chunks):
        """
        Transcribe (or re-validate) chunks in parallel; True when none failed.

        At most transcribe_workers chunks hold a slot at once. A chunk gives its
        slot back when it finishes or when the watchdog supersedes its stalled
        attempt, so a provider call that never returns does not hold the stage.
        """
        self.state.stage = 'transcription'
        if not chunks:
            return True

        trackers = [self.state.track(c.id, c.index, run_state.STAGE_TRANSCRIBE) for c in chunks]
        slots = threading.BoundedSemaphore(max(1, self.settings.transcribe_workers))
        logger.info(f"Project {self.project_id}: transcribing {len(trackers)} chunks with {self.settings.transcribe_workers} workers")

        for tracker in trackers:
            if not self._acquire_slot(slots):
                tracker.finish(tracker.token, run_state.STOPPED)
                continue
            tracker.hold_slot(slots.release)
            self._spawn(self._transcribe_task, tracker, tracker.token,
                        f"Transcribe-{self.project_id}-{tracker.index}")
        self._wait_all(trackers)

        self._refresh(project)
        failed = [t for t in trackers if t.phase == run_state.FAILED]
        if failed:
            logger.warning(f"Project {self.project_id}: {len(failed)} chunk(s) failed transcription")
        return not failed

    def _transcribe_task(self, tracker, token):
        from chunkscribe.models import AudioChunk

        with self.app.app_context():
            try:
                if self.state.stop_requested:
                    tracker.finish(token, run_state.STOPPED)
                    return

                chunk = db.session.get(AudioChunk, tracker.chunk_id)
                draft = chunk.draft
                seed = draft.raw_text if draft is not None and draft.validation_status == 'PENDING' else None
                outcome = self.loop.run(chunk, tracker, token, seed_text=seed)

                with tracker.owning(token):
                    if outcome.status == TRANSPORT_FAILED:
                        # Nothing replaced the text: no new draft, and an edited draft keeps its text as PENDING
                        retry_attempt = max(outcome.attempts - 1, 0)
                        self.state.record_failure(chunk.id, chunk.index, outcome.error, retry_attempt)
                        tracker.finish(token, run_state.FAILED, outcome.status, outcome.error)
                        return

                    draft = save_draft(chunk, outcome)
                    if outcome.failed:
                        self.state.record_failure(chunk.id, chunk.index, outcome.error, draft.retry_attempt)
                    tracker.finish(token, run_state.DONE, outcome.status, outcome.error)

            except PipelineCancelled as e:
                db.session.rollback()
                logger.info(f"Project {self.project_id}: chunk {tracker.index} attempt cancelled ({e.reason})")
                if self.state.abort_requested:
                    tracker.finish(token, run_state.STOPPED)
            except Exception as e:
                db.session.rollback()
                logger.error(f"Project {self.project_id}: chunk {tracker.index} transcription task failed: {e}", exc_info=True)
                self.state.record_failure(tracker.chunk_id, tracker.index, str(e), max(tracker.attempts - 1, 0))
                tracker.finish(token, run_state.FAILED, error=str(e))

    # --- refinement stage ---

    def _refinement_stage(self, project):
        """Refine usable drafts strictly in index order; False when stopped early."""
        self.state.stage = 'refinement'
        todo = [
            c for c in project.speech_chunks
            if c.draft is not None and c.draft.is_usable and c.draft.polished is None
        ]
        trackers = [self.state.track(c.id, c.index, run_state.STAGE_REFINE) for c in todo]
        logger.info(f"Project {self.project_id}: refining {len(trackers)} chunks sequentially")

        for tracker in trackers:
            if self.state.stop_requested:
                return False
            self._spawn(self._refine_task, tracker, tracker.token,
                        f"Refine-{self.project_id}-{tracker.index}")
            # Chunk n+1 needs chunk n's accepted text as context; a relaunched chunk finishes the same tracker
            if not self._wait_all([tracker]):
                return False

        self._refresh(project)
        return True

    def _refine_task(self, tracker, token):
        from chunkscribe.models import AudioChunk

        with self.app.app_context():
            try:
                if self.state.stop_requested:
                    tracker.finish(token, run_state.STOPPED)
                    return
                chunk = db.session.get(AudioChunk, tracker.chunk_id)
                self._refine_chunk(chunk, tracker, token)
            except PipelineCancelled as e:
                db.session.rollback()
                logger.info(f"Project {self.project_id}: chunk {tracker.index} refinement cancelled ({e.reason})")
                if self.state.abort_requested:
                    tracker.finish(token, run_state.STOPPED)
            except Exception as e:
                db.session.rollback()
                logger.error(f"Project {self.project_id}: chunk {tracker.index} refinement task failed: {e}", exc_info=True)
                self.state.record_failure(tracker.chunk_id, tracker.index, str(e), 0)
                tracker.finish(token, run_state.FAILED, error=str(e))

    def _refine_chunk(self, chunk, tracker, token):
        """
        Refine one draft, retrying provider errors.

        When every attempt fails the raw text is kept as a NEEDS_REVIEW
        PolishedSegment so the chunk still reaches a terminal state.
        """
        draft = chunk.draft
        project = chunk.project
        speech = project.speech_chunks
        position = next(i for i, c in enumerate(speech) if c.id == chunk.id)
        context = build_prior_context(speech, position, self.settings.context_char_limit)
        style = resolve_style(project.get_style_config())

        last_error = None
        for attempt in range(1, self.settings.max_refine_attempts + 1):
            token.raise_if_cancelled()
            tracker.touch(run_state.REFINING, token)
            try:
                result = self.clients.refine(context, draft.raw_text, style)
            except PipelineCancelled:
                raise
            except Exception as e:
                last_error = str(e)
                logger.warning(f"Chunk {chunk.index}: refinement attempt {attempt}/{self.settings.max_refine_attempts} failed: {e}")
                continue

            token.raise_if_cancelled()
            with tracker.owning(token):
                save_polished(draft, result)
                tracker.finish(token, run_state.DONE, 'REFINED')
            return True

        with tracker.owning(token):
            save_polished(draft, RefineResult(polished_text=draft.raw_text), failed_error=last_error)
            self.state.record_failure(chunk.id, chunk.index, f"Refinement failed: {last_error}", draft.retry_attempt)
            tracker.finish(token, run_state.FAILED, 'REFINE_FAILED', last_error)
        return False

    # --- manual single-chunk operations ---

    def _run_single_chunk(self):
        from chunkscribe.models import AudioChunk

        self.state.stage = 'manual'
        chunk = db.session.get(AudioChunk, self.chunk_id)
        if chunk is None:
            raise ProjectNotFoundError(f"Chunk {self.chunk_id} not found")

        if self.action == MANUAL_REFINE:
            tracker = self.state.track(chunk.id, chunk.index, run_state.STAGE_MANUAL_REFINE)
            target = self._manual_refine_task
        else:
            tracker = self.state.track(chunk.id, chunk.index, run_state.STAGE_MANUAL)
            target = self._manual_task

        # The chunk gets its own thread so a stalled call relaunched by the watchdog does not hold this run
        self._spawn(target, tracker, tracker.token, f"Manual-{self.project_id}-{chunk.index}")
        if not self._wait_all([tracker]) or tracker.phase != run_state.DONE:
            return

        project = self._refresh(self._project())
        if project.checkpoint in (cp.MERGED, cp.COMPLETE):
            merge_project(project, self.settings.output_folder)

    def _manual_task(self, tracker, token):
        from chunkscribe.models import AudioChunk

        with self.app.app_context():
            try:
                chunk = db.session.get(AudioChunk, tracker.chunk_id)
                previous = chunk.draft
                base = previous.retry_attempt + 1 if previous is not None else 0
                had_polish = previous is not None and previous.polished is not None

                outcome = self.loop.run(chunk, tracker, token)
                with tracker.owning(token):
                    if outcome.status == TRANSPORT_FAILED:
                        self.state.record_failure(chunk.id, chunk.index, outcome.error, base + max(outcome.attempts - 1, 0))
                        tracker.finish(token, run_state.FAILED, outcome.status, outcome.error)
                        return
                    draft = save_draft(chunk, outcome, base)
                    if outcome.failed:
                        self.state.record_failure(chunk.id, chunk.index, outcome.error, draft.retry_attempt)
                        tracker.finish(token, run_state.DONE, outcome.status, outcome.error)
                        return

                if draft.is_usable and (had_polish or chunk.project.checkpoint in REFINED_STATES):
                    self._refine_chunk(chunk, tracker, token)
                else:
                    tracker.finish(token, run_state.DONE, outcome.status)

            except PipelineCancelled as e:
                db.session.rollback()
                logger.info(f"Project {self.project_id}: manual retry of chunk {tracker.index} cancelled ({e.reason})")
                if self.state.abort_requested:
                    tracker.finish(token, run_state.STOPPED)
            except Exception as e:
                db.session.rollback()
                logger.error(f"Project {self.project_id}: manual retry of chunk {tracker.index} failed: {e}", exc_info=True)
                self.state.record_failure(tracker.chunk_id, tracker.index, str(e), 0)
                tracker.finish(token, run_state.FAILED, error=str(e))

    def _manual_refine_task(self, tracker, token):
        """Refine one accepted draft on demand, with the same prior context as the pipeline."""
        from chunkscribe.models import AudioChunk

        with self.app.app_context():
            try:
                chunk = db.session.get(AudioChunk, tracker.chunk_id)
                if chunk.draft is None or not chunk.draft.is_usable:
                    raise ValueError(f"Chunk {chunk.id} has no accepted transcription to refine")
                self._refine_chunk(chunk, tracker, token)
            except PipelineCancelled as e:
                db.session.rollback()
                logger.info(f"Project {self.project_id}: manual refinement of chunk {tracker.index} cancelled ({e.reason})")
                if self.state.abort_requested:
                    tracker.finish(token, run_state.STOPPED)
            except Exception as e:
                db.session.rollback()
                logger.error(f"Project {self.project_id}: manual refinement of chunk {tracker.index} failed: {e}", exc_info=True)
                self.state.record_failure(tracker.chunk_id, tracker.index, str(e), 0)
                tracker.finish(token, run_state.FAILED, error=str(e))

    # --- watchdog hook ---

    def relaunch(self, tracker, token):
        """Restart a stalled chunk on its own thread, outside the stage slots."""
        targets = {
            run_state.STAGE_TRANSCRIBE: self._transcribe_task,
            run_state.STAGE_REFINE: self._refine_task,
            run_state.STAGE_MANUAL: self._manual_task,
            run_state.STAGE_MANUAL_REFINE: self._manual_refine_task,
        }
        return self._spawn(targets[tracker.stage], tracker, token,
                           f"Relaunch-{self.project_id}-{tracker.index}")
