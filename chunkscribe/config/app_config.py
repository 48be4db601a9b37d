"""
Application configuration from environment variables.
"""

import os

# Storage
SQLALCHEMY_DATABASE_URI = os.environ.get('SQLALCHEMY_DATABASE_URI', 'sqlite:///chunkscribe.db')
UPLOAD_FOLDER = os.environ.get('UPLOAD_FOLDER', 'storage/chunks')
OUTPUT_FOLDER = os.environ.get('OUTPUT_FOLDER', 'storage/outputs')
SECRET_KEY = os.environ.get('SECRET_KEY', 'default-dev-key-change-in-production')

# Background pipeline (watchdog + crash recovery) starts with the app unless disabled
PIPELINE_AUTOSTART = os.environ.get('PIPELINE_AUTOSTART', 'true').lower() == 'true'

# Scheduler pools, sized to the providers' rate limits
TRANSCRIBE_WORKERS = int(os.environ.get('TRANSCRIBE_WORKERS', '3'))
MANUAL_WORKERS = int(os.environ.get('MANUAL_WORKERS', '1'))

# Retry/validation loop
MAX_TRANSCRIBE_ATTEMPTS = int(os.environ.get('MAX_TRANSCRIBE_ATTEMPTS', '3'))
MAX_REFINE_ATTEMPTS = int(os.environ.get('MAX_REFINE_ATTEMPTS', '2'))
MIN_TEXT_LENGTH = int(os.environ.get('MIN_TEXT_LENGTH', '5'))
BADNESS_THRESHOLD = float(os.environ.get('BADNESS_THRESHOLD', '0.8'))

# Refinement context carried forward from previous chunks (characters)
CONTEXT_CHAR_LIMIT = int(os.environ.get('CONTEXT_CHAR_LIMIT', '2000'))

# Watchdog
WATCHDOG_INTERVAL = float(os.environ.get('WATCHDOG_INTERVAL', '5'))
WATCHDOG_TIMEOUT = float(os.environ.get('WATCHDOG_TIMEOUT', '60'))

PIPELINE_CONFIG_KEYS = [
    'TRANSCRIBE_WORKERS',
    'MANUAL_WORKERS',
    'MAX_TRANSCRIBE_ATTEMPTS',
    'MAX_REFINE_ATTEMPTS',
    'MIN_TEXT_LENGTH',
    'BADNESS_THRESHOLD',
    'CONTEXT_CHAR_LIMIT',
    'WATCHDOG_INTERVAL',
    'WATCHDOG_TIMEOUT',
]


def initialize_config(app, test_config=None):
    """Load configuration into the Flask app, letting test_config override the environment."""
    app.config['SQLALCHEMY_DATABASE_URI'] = SQLALCHEMY_DATABASE_URI
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    app.config['UPLOAD_FOLDER'] = UPLOAD_FOLDER
    app.config['OUTPUT_FOLDER'] = OUTPUT_FOLDER
    app.config['SECRET_KEY'] = SECRET_KEY
    app.config['PIPELINE_AUTOSTART'] = PIPELINE_AUTOSTART

    module_globals = globals()
    for key in PIPELINE_CONFIG_KEYS:
        app.config[key] = module_globals[key]

    if test_config:
        app.config.update(test_config)

    if app.config['SQLALCHEMY_DATABASE_URI'].startswith('sqlite'):
        # Worker threads share the file database; wait on locks instead of failing
        engine_options = app.config.setdefault('SQLALCHEMY_ENGINE_OPTIONS', {})
        engine_options.setdefault('connect_args', {'timeout': 30, 'check_same_thread': False})

    return app.config
