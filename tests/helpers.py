"""
Shared helpers for the pipeline tests.

Each test builds its own app on a temporary SQLite file and drives the
pipeline through scripted stage clients instead of real providers.
"""

import os
import sys
import time
import tempfile
import threading
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from chunkscribe.services.advisor import Advice, RETRY
from chunkscribe.services.pipeline.clients import StageClients
from chunkscribe.services.refinement import RefineResult


def make_app(clients=None, **overrides):
    """Fresh app with its own database and folders; background tasks disabled."""
    from chunkscribe.app import create_app

    workdir = tempfile.mkdtemp(prefix='chunkscribe-test-')
    config = {
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{os.path.join(workdir, 'test.db')}",
        'UPLOAD_FOLDER': os.path.join(workdir, 'chunks'),
        'OUTPUT_FOLDER': os.path.join(workdir, 'outputs'),
        'PIPELINE_AUTOSTART': False,
        'WATCHDOG_INTERVAL': 0.05,
        'WATCHDOG_TIMEOUT': 0.5,
    }
    config.update(overrides)
    return create_app(config, clients=clients.stage_clients() if clients else None)


def make_project(app, count=3, silence=(), name='Test recording', mode='SUPERVISED', style=None):
    """Project with chunks indexed 1..count; returns its id."""
    from chunkscribe.services.chunk_store import ChunkSpec, create_project

    specs = [
        ChunkSpec(index=i, file_path=f'chunk_{i:03d}.mp3', duration_ms=30000, is_silence=i in silence)
        for i in range(1, count + 1)
    ]
    with app.app_context():
        return create_project(name, specs, style_config=style, mode=mode).id


def wait_until_idle(controller, project_id, timeout=10.0):
    """Block until no run owns the project."""
    deadline = time.monotonic() + timeout
    while controller.is_running(project_id):
        if time.monotonic() > deadline:
            raise AssertionError(f"Project {project_id} still running after {timeout}s")
        time.sleep(0.01)


def wait_for(predicate, timeout=5.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("Condition not met in time")
        time.sleep(interval)


def project_snapshot(app, project_id):
    """Checkpoint and per-index draft/polish state, read in a fresh context."""
    from chunkscribe.database import db
    from chunkscribe.models import Project

    with app.app_context():
        project = db.session.get(Project, project_id)
        chunks = {}
        for chunk in project.chunks:
            draft = chunk.draft
            polished = draft.polished if draft else None
            chunks[chunk.index] = {
                'id': chunk.id,
                'is_silence': chunk.is_silence,
                'raw_text': draft.raw_text if draft else None,
                'status': draft.validation_status if draft else None,
                'discarded': draft.discarded if draft else None,
                'retry_attempt': draft.retry_attempt if draft else None,
                'polished_text': polished.polished_text if polished else None,
                'review_status': polished.review_status if polished else None,
            }
        document = project.final_document
        return {
            'checkpoint': project.checkpoint,
            'last_checkpoint': project.last_checkpoint,
            'error_message': project.error_message,
            'chunks': chunks,
            'document': document.content if document else None,
        }


def spoken(index):
    return f"This is chunk {index} speaking clearly."


class ScriptedClients:
    """
    Stage clients driven by per-index scripts.

    transcripts maps a chunk index to a list of results consumed one per
    attempt (the last one repeats). A result is a string, an exception to
    raise, or a callable(chunk, temperature, token) returning either.
    """

    def __init__(self, transcripts=None, refine_errors=None, advice=None):
        self.transcripts = {k: list(v) for k, v in (transcripts or {}).items()}
        self.refine_errors = dict(refine_errors or {})
        self.advice = advice
        self.transcribe_calls = []
        self.refine_calls = []
        self.consult_calls = []
        self._lock = threading.Lock()

    def transcribe(self, chunk, temperature, token):
        index = chunk.index
        with self._lock:
            self.transcribe_calls.append((index, temperature))
            script = self.transcripts.get(index)
            if script:
                item = script.pop(0) if len(script) > 1 else script[0]
            else:
                item = spoken(index)

        if callable(item):
            item = item(chunk, temperature, token)
        if isinstance(item, Exception):
            raise item
        return item

    def refine(self, prior_context, raw_text, style):
        with self._lock:
            self.refine_calls.append({'raw_text': raw_text, 'context': prior_context, 'style': style})
            remaining = self.refine_errors.get(raw_text, 0)
            if remaining:
                self.refine_errors[raw_text] = remaining - 1
        if remaining:
            raise RuntimeError('refinement provider unavailable')
        return RefineResult(polished_text=f"Polished: {raw_text}")

    def consult(self, text, reason):
        with self._lock:
            self.consult_calls.append((text, reason))
        return self.advice or Advice(RETRY, 0.7, 'looks like a loop')

    def transcribed_indexes(self):
        with self._lock:
            return [index for index, _ in self.transcribe_calls]

    def refined_texts(self):
        with self._lock:
            return [call['raw_text'] for call in self.refine_calls]

    def stage_clients(self):
        return StageClients(transcribe=self.transcribe, refine=self.refine, consult=self.consult)
