"""
Refinement prompt templates stored in SystemSetting.

A template is a dict {id, name, description, prompt, is_system}. System
templates ship with the service and cannot be deleted, only edited.
"""

import copy
import logging

logger = logging.getLogger(__name__)

TEMPLATES_KEY = 'prompt_templates'
DEFAULT_TEMPLATE_KEY = 'default_template_id'
FALLBACK_TEMPLATE_ID = 'professional'

DEFAULT_TEMPLATES = [
    {
        'id': 'professional',
        'name': 'Professional',
        'description': 'Meetings, reports and professional documents',
        'prompt': (
            "Turn the spoken transcript into fluent, professional written prose. "
            "Remove filler words, false starts and repeated words. Fix punctuation, "
            "grammar and word choice. Keep the original meaning and all technical "
            "terms and proper nouns."
        ),
        'is_system': True,
    },
    {
        'id': 'casual',
        'name': 'Casual',
        'description': 'Keep the conversational voice, fix only obvious errors',
        'prompt': (
            "Lightly edit the spoken transcript. Fix obvious slips and misheard words "
            "only. Keep the natural conversational tone and the speaker's style; do "
            "not turn speech into formal prose."
        ),
        'is_system': True,
    },
    {
        'id': 'academic',
        'name': 'Academic',
        'description': 'Rigorous academic register',
        'prompt': (
            "Rewrite the spoken content in a rigorous academic register. Use precise "
            "terminology, add logical connectives where the argument needs them, and "
            "avoid colloquial expressions while staying objective."
        ),
        'is_system': True,
    },
]


def get_templates():
    """All templates, falling back to the built-in set when none are stored."""
    from chunkscribe.models import SystemSetting

    templates = SystemSetting.get_setting(TEMPLATES_KEY, None)
    if not templates:
        return copy.deepcopy(DEFAULT_TEMPLATES)
    return templates


def get_template(template_id):
    for template in get_templates():
        if template.get('id') == template_id:
            return template
    return None


def save_template(template_id, data):
    """Insert or update a template; returns the stored template."""
    from chunkscribe.models import SystemSetting

    templates = get_templates()
    for template in templates:
        if template.get('id') == template_id:
            template.update({k: v for k, v in data.items() if k not in ('id', 'is_system')})
            stored = template
            break
    else:
        stored = {
            'id': template_id,
            'name': data.get('name') or template_id,
            'description': data.get('description', ''),
            'prompt': data.get('prompt', ''),
            'is_system': False,
        }
        templates.append(stored)

    SystemSetting.set_setting(TEMPLATES_KEY, templates, 'Refinement prompt templates', 'json')
    logger.info(f"Saved prompt template '{template_id}'")
    return stored


def delete_template(template_id):
    """
    Delete a user template.

    Raises:
        KeyError: Unknown template
        ValueError: Attempt to delete a system template
    """
    from chunkscribe.models import SystemSetting

    template = get_template(template_id)
    if template is None:
        raise KeyError(template_id)
    if template.get('is_system'):
        raise ValueError('Cannot delete system templates')

    remaining = [t for t in get_templates() if t.get('id') != template_id]
    SystemSetting.set_setting(TEMPLATES_KEY, remaining, 'Refinement prompt templates', 'json')

    if get_default_template_id() == template_id:
        SystemSetting.set_setting(DEFAULT_TEMPLATE_KEY, FALLBACK_TEMPLATE_ID)
    logger.info(f"Deleted prompt template '{template_id}'")


def get_default_template_id():
    from chunkscribe.models import SystemSetting
    return SystemSetting.get_setting(DEFAULT_TEMPLATE_KEY, FALLBACK_TEMPLATE_ID)


def resolve_style(style_config):
    """
    Fill in custom_instructions from the project's (or the default) template.

    Explicit custom_instructions on the project always win.
    """
    style = dict(style_config or {})
    if style.get('custom_instructions'):
        return style

    template = get_template(style.get('template_id') or get_default_template_id())
    if template and template.get('prompt'):
        style['custom_instructions'] = template['prompt']
    return style
