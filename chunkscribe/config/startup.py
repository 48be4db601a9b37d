"""
Application startup functions.
"""

import atexit


def seed_settings(app):
    """Store the default template id on first start so it shows up in the settings API."""
    from chunkscribe.models import SystemSetting
    from chunkscribe.services.templates import DEFAULT_TEMPLATE_KEY, FALLBACK_TEMPLATE_ID

    if SystemSetting.query.filter_by(key=DEFAULT_TEMPLATE_KEY).first() is None:
        SystemSetting.set_setting(DEFAULT_TEMPLATE_KEY, FALLBACK_TEMPLATE_ID, 'Template used when a project sets none')
        app.logger.info(f"Default prompt template set to '{FALLBACK_TEMPLATE_ID}'")


def initialize_watchdog(app):
    """Start the stall watchdog and stop it (cancelling in-flight chunks) at exit."""
    try:
        from chunkscribe.services.pipeline import pipeline_controller
        pipeline_controller.start_background()
        atexit.register(pipeline_controller.shutdown)
        app.logger.info("Pipeline watchdog started")
    except Exception as e:
        app.logger.error(f"Failed to start pipeline watchdog: {e}")


def initialize_recovery(app):
    """Resume projects a previous process left mid-stage."""
    try:
        from chunkscribe.services.pipeline import pipeline_controller
        resumed = pipeline_controller.initialize_recovery()
        if resumed:
            app.logger.info(f"Crash recovery resumed projects: {resumed}")
        else:
            app.logger.info("Crash recovery: no interrupted projects")
    except Exception as e:
        app.logger.error(f"Crash recovery failed: {e}", exc_info=True)


def run_startup_tasks(app):
    """Run all startup tasks that need to happen after app creation."""
    with app.app_context():
        seed_settings(app)

    if not app.config.get('PIPELINE_AUTOSTART'):
        app.logger.info("Pipeline background tasks not started (PIPELINE_AUTOSTART=false)")
        return

    initialize_watchdog(app)
    initialize_recovery(app)
