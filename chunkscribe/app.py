"""
Flask application factory.

Run a development server with:
    python -m chunkscribe.app --debug
"""

import os
import sys
import logging

from flask import Flask, jsonify
from dotenv import load_dotenv

from chunkscribe.database import db
from chunkscribe.config.app_config import initialize_config
from chunkscribe.config.startup import run_startup_tasks

# Load environment variables from .env file
load_dotenv()


def configure_logging():
    """Root StreamHandler at LOG_LEVEL; replaces existing handlers to avoid duplicates."""
    log_level = os.environ.get('LOG_LEVEL', 'INFO').upper()
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(log_level)
    root_logger.addHandler(handler)

    # Silence per-request logs from the HTTP clients
    logging.getLogger('httpx').setLevel(logging.WARNING)
    logging.getLogger('openai').setLevel(logging.WARNING)
    return handler


def create_app(test_config=None, clients=None):
    """
    Create the application.

    Args:
        test_config: Flask config overrides (tests pass a temporary database here)
        clients: StageClients replacing the real providers
    """
    handler = configure_logging()

    app = Flask(__name__)
    app.logger.handlers.clear()
    app.logger.addHandler(handler)
    app.logger.propagate = False

    initialize_config(app, test_config)
    os.makedirs(app.config['UPLOAD_FOLDER'], exist_ok=True)
    os.makedirs(app.config['OUTPUT_FOLDER'], exist_ok=True)

    db.init_app(app)
    with app.app_context():
        # Import models so their tables are registered before create_all
        import chunkscribe.models  # noqa: F401
        db.create_all()

    from chunkscribe.api.projects import projects_bp
    from chunkscribe.api.settings import settings_bp
    from chunkscribe.api.system import system_bp

    app.register_blueprint(projects_bp)
    app.register_blueprint(settings_bp)
    app.register_blueprint(system_bp)

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({'error': 'Not found'}), 404

    @app.errorhandler(500)
    def internal_error(e):
        app.logger.error(f"Unhandled error: {e}")
        return jsonify({'error': 'Internal server error'}), 500

    from chunkscribe.services.pipeline import pipeline_controller
    pipeline_controller.init_app(app, clients=clients)

    run_startup_tasks(app)
    return app


if __name__ == '__main__':
    import argparse
    parser = argparse.ArgumentParser()
    parser.add_argument('--debug', action='store_true', help='Run in debug mode')
    parser.add_argument('--port', type=int, default=8899, help='Port to listen on')
    args = parser.parse_args()

    app = create_app()
    # Reloader would start a second watchdog and recovery pass
    app.run(host='0.0.0.0', port=args.port, debug=args.debug, use_reloader=False)
