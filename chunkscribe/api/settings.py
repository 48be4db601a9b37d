"""
Runtime settings and refinement prompt templates.
"""

from flask import Blueprint, request, jsonify, current_app

from chunkscribe.models import SystemSetting
from chunkscribe.config.app_config import PIPELINE_CONFIG_KEYS
from chunkscribe.services.templates import (
    TEMPLATES_KEY,
    DEFAULT_TEMPLATE_KEY,
    get_templates,
    get_template,
    save_template,
    delete_template,
    get_default_template_id,
)

# Create blueprint
settings_bp = Blueprint('settings', __name__)


def _setting_type(value):
    # bool before int: True is an int
    if isinstance(value, bool):
        return 'boolean'
    if isinstance(value, int):
        return 'integer'
    if isinstance(value, float):
        return 'float'
    if isinstance(value, (dict, list)):
        return 'json'
    return 'string'


# --- Routes ---

@settings_bp.route('/api/settings', methods=['GET'])
def get_settings():
    """Stored settings plus the (read-only) pipeline tunables of this process."""
    settings = SystemSetting.query.filter(SystemSetting.key != TEMPLATES_KEY).order_by(SystemSetting.key).all()
    return jsonify({
        'settings': [setting.to_dict() for setting in settings],
        'default_template_id': get_default_template_id(),
        'pipeline': {key: current_app.config.get(key) for key in PIPELINE_CONFIG_KEYS},
    })


@settings_bp.route('/api/settings', methods=['PUT'])
def update_settings():
    data = request.get_json(silent=True)
    if not isinstance(data, dict) or not data:
        return jsonify({'error': 'No settings provided'}), 400
    if TEMPLATES_KEY in data:
        return jsonify({'error': 'Use /api/settings/templates to edit templates'}), 400

    default_id = data.get(DEFAULT_TEMPLATE_KEY)
    if default_id is not None and get_template(default_id) is None:
        return jsonify({'error': f"Unknown template '{default_id}'"}), 400

    updated = []
    for key, value in data.items():
        setting = SystemSetting.set_setting(key, value, setting_type=_setting_type(value))
        updated.append(setting.to_dict())

    current_app.logger.info(f"Updated settings: {', '.join(data.keys())}")
    return jsonify({'settings': updated})


@settings_bp.route('/api/settings/templates', methods=['GET'])
def list_templates():
    return jsonify({
        'templates': get_templates(),
        'default_template_id': get_default_template_id(),
    })


@settings_bp.route('/api/settings/templates/<template_id>', methods=['PUT'])
def put_template(template_id):
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({'error': 'No data provided'}), 400
    if get_template(template_id) is None and not data.get('prompt'):
        return jsonify({'error': 'prompt is required for a new template'}), 400

    template = save_template(template_id, data)
    if data.get('is_default'):
        SystemSetting.set_setting(DEFAULT_TEMPLATE_KEY, template_id)
    return jsonify(template)


@settings_bp.route('/api/settings/templates/<template_id>', methods=['DELETE'])
def remove_template(template_id):
    try:
        delete_template(template_id)
    except KeyError:
        return jsonify({'error': 'Template not found'}), 404
    except ValueError as e:
        return jsonify({'error': str(e)}), 403
    return jsonify({'success': True})
