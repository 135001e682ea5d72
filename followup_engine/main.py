import os
import logging
import traceback
from flask import Flask, jsonify
from flask_cors import CORS

from followup_engine.config import config
from followup_engine.extensions import db

# Set by create_app; routes reach the scheduler through get_execution_scheduler()
execution_scheduler = None


def _configure_logging(app):
    """Engine loggers follow LOG_LEVEL; outside debug/testing they also write to logs/."""
    engine_logger = logging.getLogger('followup_engine')
    engine_logger.setLevel(app.config.get('LOG_LEVEL', 'INFO'))
    if app.debug or app.testing:
        return

    os.makedirs('logs', exist_ok=True)
    file_handler = logging.FileHandler('logs/followup_engine.log')
    file_handler.setFormatter(logging.Formatter(
        '%(asctime)s %(levelname)s [%(name)s] %(message)s'
    ))
    file_handler.setLevel(logging.INFO)
    app.logger.addHandler(file_handler)
    engine_logger.addHandler(file_handler)
    app.logger.setLevel(logging.INFO)
    app.logger.info('Follow-up Engine starting')


def create_app(config_name=None):
    """Build the Flask app for ``config_name`` (defaults to FLASK_ENV)."""
    app = Flask(__name__)

    config_name = config_name or os.environ.get('FLASK_ENV', 'development')
    app.config.from_object(config[config_name])
    if config_name == 'production':
        config[config_name].validate_config()

    CORS(app, origins=app.config['CORS_ORIGINS'], supports_credentials=True)
    db.init_app(app)
    _configure_logging(app)

    # Blueprints are registered one by one so a broken area does not take the others down
    try:
        from followup_engine.routes.company import company_bp
        app.register_blueprint(company_bp, url_prefix='/api/v1')
    except Exception as e:
        app.logger.error(f"Company routes unavailable: {str(e)}\n{traceback.format_exc()}")

    try:
        from followup_engine.routes.sequence import sequence_bp
        app.register_blueprint(sequence_bp, url_prefix='/api/v1')
    except Exception as e:
        app.logger.error(f"Sequence routes unavailable: {str(e)}\n{traceback.format_exc()}")

    try:
        from followup_engine.routes.execution import execution_bp
        app.register_blueprint(execution_bp, url_prefix='/api/v1')
    except Exception as e:
        app.logger.error(f"Execution routes unavailable: {str(e)}\n{traceback.format_exc()}")

    try:
        from followup_engine.routes.webhook import webhook_bp
        app.register_blueprint(webhook_bp, url_prefix='/api/v1/webhooks')
    except Exception as e:
        app.logger.error(f"Webhook routes unavailable: {str(e)}")

    try:
        from followup_engine.routes.automation import automation_bp
        app.register_blueprint(automation_bp, url_prefix='/api/v1')
    except Exception as e:
        app.logger.error(f"Scheduler control routes unavailable: {str(e)}")

    app.logger.info(f"Registered blueprints: {', '.join(sorted(app.blueprints))}")

    from followup_engine.services.scheduler import get_execution_scheduler
    global execution_scheduler
    execution_scheduler = get_execution_scheduler()
    execution_scheduler.init_app(app)

    # Production schemas are migrated out of band unless STARTUP_DB_CREATE_ALL is set
    create_tables = config_name != 'production' or os.environ.get('STARTUP_DB_CREATE_ALL', 'false').lower() == 'true'
    if create_tables:
        try:
            with app.app_context():
                db.create_all()
        except Exception as e:
            app.logger.error(f"Could not create database tables: {str(e)}")

    if config_name == 'production' or app.config.get('START_SCHEDULER', False):
        try:
            execution_scheduler.start()
        except Exception as e:
            app.logger.error(f"Execution scheduler did not start: {str(e)}")

    from followup_engine.utils.error_handlers import register_error_handlers
    register_error_handlers(app)

    @app.route('/')
    def index():
        return jsonify({
            'status': 'ok',
            'service': 'followup-engine',
            'scheduler_running': execution_scheduler.running
        })

    return app


if __name__ == '__main__':
    app = create_app()
    port = int(os.environ.get('PORT', 5001))
    app.run(host='0.0.0.0', port=port, debug=app.config.get('DEBUG', False), use_reloader=False)
