#!/usr/bin/env python3
"""
Tests for crash recovery at startup.

A "crashed" project is written straight into the database, then a fresh app
is created on the same file with PIPELINE_AUTOSTART enabled, as a restarted
process would.
"""

import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))
sys.path.insert(0, str(Path(__file__).parent))

from helpers import ScriptedClients, make_app, make_project, project_snapshot, spoken, wait_until_idle
from chunkscribe.database import db
from chunkscribe.models import Project, DraftSegment, PolishedSegment
from chunkscribe.services.pipeline import pipeline_controller


def _leave_mid_refinement(app, project_id, checkpoint, mode='AUTOMATED', polished=(1,)):
    """Every chunk transcribed, only some refined, checkpoint left where the crash happened."""
    with app.app_context():
        project = db.session.get(Project, project_id)
        for chunk in project.chunks:
            chunk.draft = DraftSegment(raw_text=spoken(chunk.index), validation_status='VERIFIED')
            if chunk.index in polished:
                chunk.draft.polished = PolishedSegment(
                    polished_text=f"Refined before the crash: {chunk.index}",
                    review_status='APPROVED'
                )
        project.mode = mode
        project.checkpoint = checkpoint
        project.last_checkpoint = checkpoint
        db.session.commit()


def _restart(app, clients):
    restarted = make_app(
        clients,
        SQLALCHEMY_DATABASE_URI=app.config['SQLALCHEMY_DATABASE_URI'],
        PIPELINE_AUTOSTART=True
    )
    return restarted


def test_recovery_refines_only_chunks_without_polish():
    clients = ScriptedClients()
    app = make_app(clients)
    project_id = make_project(app, count=3)
    _leave_mid_refinement(app, project_id, 'TRANSCRIBED')

    restarted = _restart(app, clients)
    try:
        wait_until_idle(pipeline_controller, project_id)
    finally:
        pipeline_controller.watchdog.stop()

    snapshot = project_snapshot(restarted, project_id)
    assert snapshot['checkpoint'] == 'COMPLETE'
    assert clients.transcribe_calls == []
    assert clients.refined_texts() == [spoken(2), spoken(3)]
    # Chunk 2's context is the polish that survived the crash
    assert clients.refine_calls[0]['context'] == "Refined before the crash: 1"
    assert snapshot['chunks'][1]['polished_text'] == "Refined before the crash: 1"
    assert snapshot['document'].split('\n\n') == [
        "Refined before the crash: 1",
        f"Polished: {spoken(2)}",
        f"Polished: {spoken(3)}",
    ]


def test_recovery_from_polishing_rewinds_to_validated():
    clients = ScriptedClients()
    app = make_app(clients)
    project_id = make_project(app, count=3)
    _leave_mid_refinement(app, project_id, 'POLISHING', polished=(1, 2))

    _restart(app, clients)
    try:
        wait_until_idle(pipeline_controller, project_id)
    finally:
        pipeline_controller.watchdog.stop()

    assert clients.refined_texts() == [spoken(3)]
    assert project_snapshot(app, project_id)['checkpoint'] == 'COMPLETE'


def test_recovery_skips_supervised_and_idle_projects():
    clients = ScriptedClients()
    app = make_app(clients)
    supervised_id = make_project(app, count=2, name='supervised')
    _leave_mid_refinement(app, supervised_id, 'POLISHING', mode='SUPERVISED')
    untouched_id = make_project(app, count=2, name='never started')

    _restart(app, clients)
    pipeline_controller.watchdog.stop()

    assert not pipeline_controller.is_running(supervised_id)
    assert not pipeline_controller.is_running(untouched_id)
    assert project_snapshot(app, supervised_id)['checkpoint'] == 'POLISHING'
    assert project_snapshot(app, untouched_id)['checkpoint'] == 'CHUNKED'
    assert clients.refine_calls == []


def test_recovery_runs_once_per_process():
    clients = ScriptedClients()
    app = make_app(clients)
    project_id = make_project(app, count=2)
    _leave_mid_refinement(app, project_id, 'TRANSCRIBED', polished=())

    _restart(app, clients)
    try:
        wait_until_idle(pipeline_controller, project_id)
    finally:
        pipeline_controller.watchdog.stop()

    assert pipeline_controller.initialize_recovery() == []
    assert len(clients.refine_calls) == 2


def test_recovery_with_missing_drafts_goes_back_to_transcription():
    clients = ScriptedClients()
    app = make_app(clients)
    project_id = make_project(app, count=3)
    _leave_mid_refinement(app, project_id, 'TRANSCRIBING', polished=())
    with app.app_context():
        project = db.session.get(Project, project_id)
        project.chunks[2].draft = None
        db.session.commit()

    _restart(app, clients)
    try:
        wait_until_idle(pipeline_controller, project_id)
    finally:
        pipeline_controller.watchdog.stop()

    assert clients.transcribed_indexes() == [3]
    assert project_snapshot(app, project_id)['checkpoint'] == 'COMPLETE'
