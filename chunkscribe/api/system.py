"""
System info and health.
"""

from flask import Blueprint, jsonify, current_app

from chunkscribe.config.version import get_version
from chunkscribe.services.llm import TEXT_MODEL_BASE_URL, TEXT_MODEL_NAME
from chunkscribe.services.pipeline import pipeline_controller
from chunkscribe.services.transcription import ConfigurationError, get_transcriber

# Create blueprint
system_bp = Blueprint('system', __name__)


# --- Routes ---

@system_bp.route('/api/health', methods=['GET'])
def health():
    """Liveness plus a summary of the configured providers."""
    try:
        transcriber = get_transcriber()
        connectors = transcriber.names
        connector_health = transcriber.health()
        transcription_error = None
    except ConfigurationError as e:
        current_app.logger.warning(f"Health check: transcription not configured: {e}")
        connectors = []
        connector_health = {}
        transcription_error = str(e)

    return jsonify({
        'status': 'ok',
        'version': get_version(),
        'active_runs': pipeline_controller.active_run_count(),
        'watchdog_running': pipeline_controller.watchdog.running,
        'transcription_connectors': connectors,
        'transcription_health': connector_health,
        'transcription_error': transcription_error,
        'text_model': {
            'name': TEXT_MODEL_NAME,
            'base_url': TEXT_MODEL_BASE_URL,
        },
    })
