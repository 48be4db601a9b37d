"""
Pipeline controller: the control surface over project runs.

start/pause/resume/abort are fire-and-forget: they validate, hand a
PipelineRun to a supervised daemon thread and return. Every run owns its own
lifecycle and reports errors into the persisted project state.
"""

import threading
import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from typing import Any, Dict

from chunkscribe.database import db
from . import checkpoint as cp
from . import run_state
from .clients import default_clients
from .exceptions import CheckpointError, PipelineBusyError, ProjectNotFoundError
from .scheduler import PipelineRun, PipelineSettings, MANUAL_RETRANSCRIBE, MANUAL_REFINE
from .watchdog import Watchdog

logger = logging.getLogger(__name__)


class PipelineController:
    """Owns the run registry, the manual retry pool and the watchdog."""

    def __init__(self, clients=None):
        self._app = None
        self._clients = clients
        self.settings = PipelineSettings()
        self.registry = run_state.RunRegistry()
        self.watchdog = Watchdog(self.registry)
        self._manual_pool = None
        self._last_states = {}
        self._lock = threading.Lock()
        self._recovered = False

    def init_app(self, app, clients=None):
        """Bind to a Flask app and read pipeline tunables from its config."""
        if self.watchdog.running:
            self.watchdog.stop()
        if self._manual_pool is not None:
            self._manual_pool.shutdown(wait=False)
        for run in self.registry.active_runs():
            run.abort('controller rebound to a new app')

        self._app = app
        self.registry = run_state.RunRegistry()
        self._last_states = {}
        self._clients = clients
        self.settings = PipelineSettings.from_config(app.config)
        self.watchdog = Watchdog(
            self.registry,
            interval=self.settings.watchdog_interval,
            timeout=self.settings.watchdog_timeout
        )
        self._manual_pool = ThreadPoolExecutor(
            max_workers=max(1, self.settings.manual_workers),
            thread_name_prefix="ManualRetry"
        )
        self._recovered = False
        app.extensions['pipeline_controller'] = self

    @property
    def clients(self):
        if self._clients is None:
            self._clients = default_clients()
        return self._clients

    @contextmanager
    def _app_context(self):
        """Get application context for database operations."""
        if self._app:
            with self._app.app_context():
                yield
        else:
            yield

    def _get_project(self, project_id):
        from chunkscribe.models import Project

        project = db.session.get(Project, project_id)
        if project is None:
            raise ProjectNotFoundError(f"Project {project_id} not found")
        return project

    # --- run lifecycle ---

    def _new_run(self, project_id, chunk_id=None, action=MANUAL_RETRANSCRIBE):
        return PipelineRun(
            self._app, project_id, self.clients, self.settings,
            chunk_id=chunk_id, on_finish=self._on_finish, action=action
        )

    def _launch(self, project_id):
        """Claim the project and start its run thread; False if a run already owns it."""
        run = self._new_run(project_id)
        if not self.registry.claim(project_id, run):
            logger.info(f"Project {project_id} already has an active run")
            return False

        with self._lock:
            # Failures of the previous run are re-detected by this one
            self._last_states.pop(project_id, None)

        thread = threading.Thread(
            target=run.execute,
            name=f"PipelineRun-{project_id}",
            daemon=True
        )
        thread.start()
        logger.info(f"Launched pipeline run for project {project_id}")
        return True

    def _on_finish(self, run):
        self.registry.release(run.project_id, run)
        if run.app is not self._app:
            return
        with self._lock:
            if run.is_manual:
                previous = self._last_states.get(run.project_id)
                if previous is None:
                    self._last_states[run.project_id] = run.state
                else:
                    previous.merge_failures(run.state)
            else:
                self._last_states[run.project_id] = run.state
        logger.info(f"Pipeline run for project {run.project_id} finished")

    def is_running(self, project_id):
        return self.registry.get(project_id) is not None

    def wait(self, project_id, timeout=None):
        """Block until the project's active run (if any) finishes."""
        run = self.registry.get(project_id)
        if run is None:
            return True
        return run.wait(timeout)

    # --- control surface ---

    def start(self, project_id):
        """
        Start (or continue) an automated run.

        No-op when a run is already active or the project is COMPLETE.

        Raises:
            ProjectNotFoundError: unknown project
            CheckpointError: project is FAILED or BLOCKED
        """
        if self.is_running(project_id):
            logger.info(f"Start ignored: project {project_id} is already running")
            return False

        with self._app_context():
            project = self._get_project(project_id)
            if project.checkpoint == cp.COMPLETE:
                logger.info(f"Start ignored: project {project_id} is already complete")
                return False
            if project.checkpoint in cp.TERMINAL_STATES:
                raise CheckpointError(f"Project {project_id} is {project.checkpoint} and cannot be started")
            if project.mode != 'AUTOMATED':
                project.mode = 'AUTOMATED'
                db.session.commit()

        return self._launch(project_id)

    def pause(self, project_id):
        """
        Ask the active run to stop before its next chunk dispatch.

        In-flight chunks finish normally; the run then persists PAUSED.
        """
        run = self.registry.get(project_id)
        if run is None or run.is_manual:
            with self._app_context():
                self._get_project(project_id)
            logger.info(f"Pause ignored: project {project_id} has no active pipeline run")
            return False
        run.state.request_pause()
        logger.info(f"Pause requested for project {project_id}")
        return True

    def resume(self, project_id):
        """
        Re-enter the scheduler at the last resumable checkpoint.

        A no-op when a run is already active or nothing is left to do.

        Raises:
            CheckpointError: project is FAILED or BLOCKED, or not in automated mode
        """
        if self.is_running(project_id):
            logger.info(f"Resume ignored: project {project_id} is already running")
            return False

        with self._app_context():
            project = self._get_project(project_id)
            if project.checkpoint == cp.COMPLETE:
                logger.info(f"Resume ignored: project {project_id} is complete")
                return False
            # Validates the checkpoint before a thread is spawned
            cp.resume_point(project)
            if project.mode != 'AUTOMATED':
                raise CheckpointError(f"Project {project_id} is not in automated mode; start it first")

        return self._launch(project_id)

    def abort(self, project_id, reason='Aborted by user'):
        """Cancel every in-flight chunk and mark the project FAILED."""
        run = self.registry.get(project_id)
        if run is not None:
            run.abort(reason)

        with self._app_context():
            project = self._get_project(project_id)
            if cp.can_transition(project.checkpoint, cp.FAILED):
                cp.advance(project, cp.FAILED, error_message=reason)
                aborted = True
            else:
                aborted = run is not None
        logger.info(f"Abort for project {project_id}: {'applied' if aborted else 'nothing to abort'}")
        return aborted

    def status(self, project_id) -> Dict[str, Any]:
        """Checkpoint, live per-stage counts and the terminally-failed chunks."""
        run = self.registry.get(project_id)
        state = run.state if run is not None else None

        with self._app_context():
            project = self._get_project(project_id)

            failed = {}
            for chunk in project.speech_chunks:
                draft = chunk.draft
                if draft is not None and draft.validation_status == 'FAILED':
                    failed[chunk.id] = {
                        'chunkId': chunk.id,
                        'index': chunk.index,
                        'error': draft.error_message,
                        'retryAttempt': draft.retry_attempt,
                    }

            memory = []
            with self._lock:
                last = self._last_states.get(project_id)
            for source in (last, state):
                if source is not None:
                    memory.extend(source.failures())
            for entry in memory:
                failed[entry['chunkId']] = entry

            transcribe_active, transcribe_pending = state.counts(run_state.STAGE_TRANSCRIBE) if state else (0, 0)
            refine_active, refine_pending = state.counts(run_state.STAGE_REFINE) if state else (0, 0)
            if state is not None:
                manual_active, _ = state.counts(run_state.STAGE_MANUAL)
                transcribe_active += manual_active
                manual_refine_active, _ = state.counts(run_state.STAGE_MANUAL_REFINE)
                refine_active += manual_refine_active

            return {
                'projectId': project.id,
                'checkpoint': project.checkpoint,
                'lastCheckpoint': project.last_checkpoint,
                'mode': project.mode,
                'progress': project.progress(),
                'errorMessage': project.error_message,
                'isRunning': run is not None,
                'isPaused': project.checkpoint == cp.PAUSED or (state is not None and state.pause_requested),
                'stage': state.stage if state else None,
                'transcribeActive': transcribe_active,
                'transcribePending': transcribe_pending,
                'refineActive': refine_active,
                'refinePending': refine_pending,
                'chunks': [tracker.to_dict() for tracker in state.trackers()] if state else [],
                'failedChunks': sorted(failed.values(), key=lambda entry: entry['index'] if entry['index'] is not None else -1),
            }

    # --- chunk operations ---

    def retry_chunk(self, project_id, chunk_id):
        """
        Re-run the retry/validation loop for one chunk on the manual pool.

        Raises:
            ProjectNotFoundError: unknown project or chunk
            PipelineBusyError: a run already owns the project
            ValueError: the chunk is silence
        """
        from chunkscribe.models import AudioChunk

        with self._app_context():
            self._get_project(project_id)
            chunk = db.session.get(AudioChunk, chunk_id)
            if chunk is None or chunk.project_id != project_id:
                raise ProjectNotFoundError(f"Chunk {chunk_id} not found in project {project_id}")
            if chunk.is_silence:
                raise ValueError(f"Chunk {chunk_id} is silence and is never transcribed")

        run = self._new_run(project_id, chunk_id=chunk_id)
        if not self.registry.claim(project_id, run):
            raise PipelineBusyError(f"Project {project_id} has an active run; pause or wait before retrying a chunk")

        with self._lock:
            last = self._last_states.get(project_id)
            if last is not None:
                last.clear_failure(chunk_id)

        self._manual_pool.submit(run.execute)
        logger.info(f"Queued manual retry of chunk {chunk_id} in project {project_id}")
        return True

    def refine_chunk(self, project_id, chunk_id):
        """
        Refine (or re-refine) one accepted draft on the manual pool.

        The chunk gets the same prior context it would get inside a full run,
        and a merged project is re-merged once it succeeds.

        Raises:
            ProjectNotFoundError: unknown project or chunk
            PipelineBusyError: a run already owns the project
            ValueError: the chunk is silence or has no accepted transcription
        """
        from chunkscribe.models import AudioChunk

        with self._app_context():
            self._get_project(project_id)
            chunk = db.session.get(AudioChunk, chunk_id)
            if chunk is None or chunk.project_id != project_id:
                raise ProjectNotFoundError(f"Chunk {chunk_id} not found in project {project_id}")
            if chunk.is_silence:
                raise ValueError(f"Chunk {chunk_id} is silence and is never refined")
            if chunk.draft is None or not chunk.draft.is_usable:
                raise ValueError(f"Chunk {chunk_id} has no accepted transcription to refine")

        run = self._new_run(project_id, chunk_id=chunk_id, action=MANUAL_REFINE)
        if not self.registry.claim(project_id, run):
            raise PipelineBusyError(f"Project {project_id} has an active run; pause or wait before refining a chunk")

        with self._lock:
            last = self._last_states.get(project_id)
            if last is not None:
                last.clear_failure(chunk_id)

        self._manual_pool.submit(run.execute)
        logger.info(f"Queued manual refinement of chunk {chunk_id} in project {project_id}")
        return True

    def update_draft(self, project_id, chunk_id, raw_text):
        """
        Replace a draft's text by hand; it is re-scored as PENDING on the next validation pass.

        Raises:
            ProjectNotFoundError: unknown project, chunk or draft
            PipelineBusyError: a run already owns the project
        """
        from chunkscribe.models import AudioChunk

        if self.is_running(project_id):
            raise PipelineBusyError(f"Project {project_id} has an active run")

        with self._app_context():
            chunk = db.session.get(AudioChunk, chunk_id)
            if chunk is None or chunk.project_id != project_id or chunk.draft is None:
                raise ProjectNotFoundError(f"No draft for chunk {chunk_id} in project {project_id}")

            draft = chunk.draft
            draft.raw_text = raw_text
            draft.validation_status = 'PENDING'
            draft.discarded = False
            draft.error_message = None
            draft.polished = None

            project = chunk.project
            later = cp.CHECKPOINT_ORDER.index(cp.TRANSCRIBED)
            point = project.last_checkpoint if project.checkpoint == cp.PAUSED else project.checkpoint
            if point in cp.CHECKPOINT_ORDER and cp.CHECKPOINT_ORDER.index(point) > later:
                cp.rewind(project, cp.TRANSCRIBED, commit=False)
            db.session.commit()
            logger.info(f"Draft of chunk {chunk_id} edited; pending re-validation")
            return draft.to_dict()

    def reset_transcription(self, project_id):
        """
        Delete every draft and the final document and rewind to CHUNKED.

        Raises:
            PipelineBusyError: a run already owns the project
        """
        if self.is_running(project_id):
            raise PipelineBusyError(f"Project {project_id} has an active run")

        with self._app_context():
            project = self._get_project(project_id)
            removed = 0
            for chunk in project.chunks:
                if chunk.draft is not None:
                    chunk.draft = None
                    removed += 1
            project.final_document = None
            if project.chunks:
                cp.rewind(project, cp.CHUNKED, commit=False)
            else:
                cp.rewind(project, cp.UPLOADED, commit=False)
            db.session.commit()

        with self._lock:
            self._last_states.pop(project_id, None)
        logger.info(f"Project {project_id}: cleared {removed} drafts for re-transcription")
        return removed

    # --- process lifecycle ---

    def start_background(self):
        self.watchdog.start()

    def initialize_recovery(self):
        """
        Resume, once per process, every automated project left mid-stage.

        Returns the ids of the projects that were relaunched.
        """
        from chunkscribe.models import Project

        if self._recovered:
            return []
        self._recovered = True

        with self._app_context():
            stuck = Project.query.filter(
                Project.mode == 'AUTOMATED',
                Project.checkpoint.in_(cp.RECOVERABLE_STATES)
            ).order_by(Project.id).all()
            project_ids = [project.id for project in stuck]

        resumed = []
        for project_id in project_ids:
            try:
                if self.resume(project_id):
                    resumed.append(project_id)
            except Exception as e:
                logger.error(f"Recovery of project {project_id} failed: {e}", exc_info=True)

        if resumed:
            logger.info(f"Recovered {len(resumed)} interrupted projects: {resumed}")
        return resumed

    def shutdown(self, wait=False, timeout=5.0):
        """Stop the watchdog and cancel in-flight chunks without failing projects."""
        self.watchdog.stop()
        runs = self.registry.active_runs()
        for run in runs:
            # Checkpoints stay where they are so recovery picks the projects up again
            run.abort('shutting down')
        if wait:
            for run in runs:
                run.wait(timeout)
        if self._manual_pool is not None:
            self._manual_pool.shutdown(wait=False, cancel_futures=True)
        logger.info(f"Pipeline controller shut down ({len(runs)} runs cancelled)")

    def active_run_count(self) -> int:
        return len(self.registry)


pipeline_controller = PipelineController()
