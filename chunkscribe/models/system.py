"""
SystemSetting model for runtime-editable configuration.

Prompt templates and the default refinement template live here so they can be
changed through the settings API without restarting the service.
"""

import json
from datetime import datetime
from chunkscribe.database import db


class SystemSetting(db.Model):
    """Key/value store for settings edited at runtime."""

    __tablename__ = 'system_setting'

    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(100), unique=True, nullable=False)
    value = db.Column(db.Text, nullable=True)
    description = db.Column(db.Text, nullable=True)
    setting_type = db.Column(db.String(50), nullable=False, default='string')  # string, integer, boolean, float, json
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            'key': self.key,
            'value': SystemSetting._convert(self.value, self.setting_type, None),
            'description': self.description,
            'setting_type': self.setting_type,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }

    @staticmethod
    def _convert(raw, setting_type, default_value):
        if raw is None:
            return default_value
        try:
            if setting_type == 'integer':
                return int(raw)
            if setting_type == 'float':
                return float(raw)
            if setting_type == 'boolean':
                return raw.lower() in ('true', '1', 'yes')
            if setting_type == 'json':
                return json.loads(raw)
        except (ValueError, TypeError):
            return default_value
        return raw

    @staticmethod
    def get_setting(key, default_value=None):
        """Get a setting value by key, converted according to its type."""
        setting = SystemSetting.query.filter_by(key=key).first()
        if not setting:
            return default_value
        return SystemSetting._convert(setting.value, setting.setting_type, default_value)

    @staticmethod
    def set_setting(key, value, description=None, setting_type='string'):
        """Create or update a setting and commit."""
        if setting_type == 'json':
            stored = json.dumps(value) if value is not None else None
        else:
            stored = str(value) if value is not None else None

        setting = SystemSetting.query.filter_by(key=key).first()
        if setting:
            setting.value = stored
            setting.setting_type = setting_type
            if description:
                setting.description = description
        else:
            setting = SystemSetting(
                key=key,
                value=stored,
                description=description,
                setting_type=setting_type
            )
            db.session.add(setting)
        db.session.commit()
        return setting
