"""
Project management and pipeline control.

Control endpoints are fire-and-forget: they return 202 as soon as the run has
been handed to its background thread.
"""

import os

from flask import Blueprint, request, jsonify, send_file, current_app
from werkzeug.utils import secure_filename

from chunkscribe.database import db
from chunkscribe.models import Project
from chunkscribe.services.chunk_store import ChunkSpec, create_project
from chunkscribe.services.pipeline import (
    pipeline_controller,
    CheckpointError,
    PipelineBusyError,
    ProjectNotFoundError,
)
from chunkscribe.services.pipeline.merge import collect_chunk_outputs

# Create blueprint
projects_bp = Blueprint('projects', __name__)

VALID_MODES = ('AUTOMATED', 'SUPERVISED')


def _pipeline_error_response(e):
    """Translate pipeline exceptions into JSON errors."""
    if isinstance(e, ProjectNotFoundError):
        return jsonify({'error': str(e)}), 404
    if isinstance(e, PipelineBusyError):
        return jsonify({'error': str(e)}), 409
    if isinstance(e, CheckpointError):
        return jsonify({'error': str(e)}), 409
    if isinstance(e, ValueError):
        return jsonify({'error': str(e)}), 400
    current_app.logger.error(f"Pipeline request failed: {e}", exc_info=True)
    return jsonify({'error': 'Internal server error'}), 500


def _style_from_payload(data):
    return data.get('style_config', data.get('styleConfig'))


# --- Routes ---

@projects_bp.route('/api/projects', methods=['POST'])
def create_project_route():
    """Create a project from the splitter's chunk manifest."""
    data = request.get_json(silent=True)
    if not data or not data.get('name'):
        return jsonify({'error': 'Project name is required'}), 400

    chunks = data.get('chunks', [])
    if not isinstance(chunks, list):
        return jsonify({'error': 'chunks must be a list'}), 400

    mode = (data.get('mode') or 'SUPERVISED').upper()
    if mode not in VALID_MODES:
        return jsonify({'error': f"mode must be one of {', '.join(VALID_MODES)}"}), 400

    style = _style_from_payload(data)
    if style is not None and not isinstance(style, dict):
        return jsonify({'error': 'style_config must be an object'}), 400

    try:
        specs = [ChunkSpec.from_dict(entry) for entry in chunks]
        project = create_project(data['name'], specs, style_config=style, mode=mode)
    except (ValueError, TypeError) as e:
        db.session.rollback()
        return jsonify({'error': str(e)}), 400

    current_app.logger.info(f"Project {project.id} created via API with {len(specs)} chunks")
    response = project.to_dict(include_chunks=True)

    if data.get('autostart'):
        try:
            response['started'] = pipeline_controller.start(project.id)
        except Exception as e:
            return _pipeline_error_response(e)

    return jsonify(response), 201


@projects_bp.route('/api/projects', methods=['GET'])
def list_projects():
    projects = Project.query.order_by(Project.created_at.desc()).all()
    return jsonify([project.to_dict() for project in projects])


@projects_bp.route('/api/projects/<int:project_id>', methods=['GET'])
def get_project(project_id):
    project = db.session.get(Project, project_id)
    if not project:
        return jsonify({'error': 'Project not found'}), 404
    data = project.to_dict(include_chunks=True)
    data['is_running'] = pipeline_controller.is_running(project_id)
    return jsonify(data)


@projects_bp.route('/api/projects/<int:project_id>', methods=['DELETE'])
def delete_project(project_id):
    project = db.session.get(Project, project_id)
    if not project:
        return jsonify({'error': 'Project not found'}), 404
    if pipeline_controller.is_running(project_id):
        return jsonify({'error': 'Project has an active run; abort it first'}), 409

    db.session.delete(project)
    db.session.commit()
    current_app.logger.info(f"Project {project_id} deleted")
    return jsonify({'success': True})


@projects_bp.route('/api/projects/<int:project_id>/style', methods=['PUT'])
def update_style(project_id):
    """Replace the style configuration used by future refinement calls."""
    project = db.session.get(Project, project_id)
    if not project:
        return jsonify({'error': 'Project not found'}), 404

    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({'error': 'Style configuration must be an object'}), 400

    project.set_style_config(data)
    db.session.commit()
    return jsonify(project.to_dict())


@projects_bp.route('/api/projects/<int:project_id>/start', methods=['POST'])
def start_project(project_id):
    try:
        started = pipeline_controller.start(project_id)
    except Exception as e:
        return _pipeline_error_response(e)
    message = 'Pipeline started' if started else 'Pipeline already running or complete'
    return jsonify({'message': message, 'accepted': started}), 202


@projects_bp.route('/api/projects/<int:project_id>/pause', methods=['POST'])
def pause_project(project_id):
    try:
        paused = pipeline_controller.pause(project_id)
    except Exception as e:
        return _pipeline_error_response(e)
    message = 'Pause requested' if paused else 'No active run to pause'
    return jsonify({'message': message, 'accepted': paused}), 202


@projects_bp.route('/api/projects/<int:project_id>/resume', methods=['POST'])
def resume_project(project_id):
    try:
        resumed = pipeline_controller.resume(project_id)
    except Exception as e:
        return _pipeline_error_response(e)
    message = 'Pipeline resumed' if resumed else 'Nothing to resume'
    return jsonify({'message': message, 'accepted': resumed}), 202


@projects_bp.route('/api/projects/<int:project_id>/abort', methods=['POST'])
def abort_project(project_id):
    try:
        aborted = pipeline_controller.abort(project_id)
    except Exception as e:
        return _pipeline_error_response(e)
    message = 'Pipeline aborted' if aborted else 'Nothing to abort'
    return jsonify({'message': message, 'accepted': aborted}), 202


@projects_bp.route('/api/projects/<int:project_id>/status', methods=['GET'])
def project_status(project_id):
    try:
        return jsonify(pipeline_controller.status(project_id))
    except Exception as e:
        return _pipeline_error_response(e)


@projects_bp.route('/api/projects/<int:project_id>/chunks/<int:chunk_id>/retry', methods=['POST'])
@projects_bp.route('/api/projects/<int:project_id>/chunks/<int:chunk_id>/transcribe', methods=['POST'])
def retry_chunk(project_id, chunk_id):
    """Manually (re-)run the retry/validation loop for one chunk."""
    try:
        pipeline_controller.retry_chunk(project_id, chunk_id)
    except Exception as e:
        return _pipeline_error_response(e)
    return jsonify({'message': f'Retry of chunk {chunk_id} queued', 'accepted': True}), 202


@projects_bp.route('/api/projects/<int:project_id>/chunks/<int:chunk_id>/polish', methods=['POST'])
def polish_chunk(project_id, chunk_id):
    """Refine one accepted draft again, e.g. after a style change."""
    try:
        pipeline_controller.refine_chunk(project_id, chunk_id)
    except Exception as e:
        return _pipeline_error_response(e)
    return jsonify({'message': f'Refinement of chunk {chunk_id} queued', 'accepted': True}), 202


@projects_bp.route('/api/projects/<int:project_id>/chunks/<int:chunk_id>/draft', methods=['PUT'])
def update_draft(project_id, chunk_id):
    """Correct a draft by hand; it is re-validated on the next run."""
    data = request.get_json(silent=True)
    if not data or not isinstance(data.get('raw_text', data.get('rawText')), str):
        return jsonify({'error': 'raw_text is required'}), 400

    try:
        draft = pipeline_controller.update_draft(project_id, chunk_id, data.get('raw_text', data.get('rawText')))
    except Exception as e:
        return _pipeline_error_response(e)
    return jsonify(draft)


@projects_bp.route('/api/projects/<int:project_id>/retranscribe', methods=['POST'])
def retranscribe_project(project_id):
    """Delete every draft and rewind to CHUNKED; optionally start right away."""
    try:
        removed = pipeline_controller.reset_transcription(project_id)
        data = request.get_json(silent=True) or {}
        started = pipeline_controller.start(project_id) if data.get('start') else False
    except Exception as e:
        return _pipeline_error_response(e)
    return jsonify({'message': 'Transcription reset', 'removedDrafts': removed, 'started': started}), 202


@projects_bp.route('/api/projects/<int:project_id>/merged', methods=['GET'])
def merged_document(project_id):
    """Per-chunk raw and polished text plus the final document, if merged."""
    project = db.session.get(Project, project_id)
    if not project:
        return jsonify({'error': 'Project not found'}), 404

    document = project.final_document
    return jsonify({
        'projectId': project.id,
        'checkpoint': project.checkpoint,
        'chunks': collect_chunk_outputs(project),
        'document': document.to_dict() if document else None,
    })


@projects_bp.route('/api/projects/<int:project_id>/download', methods=['GET'])
def download_document(project_id):
    """Download the merged Markdown document."""
    project = db.session.get(Project, project_id)
    if not project:
        return jsonify({'error': 'Project not found'}), 404

    document = project.final_document
    if document is None or not document.file_path or not os.path.exists(document.file_path):
        return jsonify({'error': 'No merged document available for this project'}), 404

    filename = secure_filename(project.name) or f'project_{project.id}'
    return send_file(
        os.path.abspath(document.file_path),
        mimetype='text/markdown',
        as_attachment=True,
        download_name=f'{filename}.md'
    )
