import os
import atexit
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy


# Initialize extensions
db = SQLAlchemy()


def configure_logging(app):
    """Configure application logging"""

    log_dir = app.config['LOG_DIR']
    os.makedirs(log_dir, exist_ok=True)

    # Set log level based on environment
    log_level = logging.DEBUG if app.config.get('DEBUG', False) else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)

    # File handler
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'volvault.log'),
        maxBytes=10485760,  # 10MB
        backupCount=10
    )
    file_handler.setLevel(log_level)
    file_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
    )
    file_handler.setFormatter(file_formatter)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=[console_handler, file_handler])

    # Configure Flask app logger
    app.logger.setLevel(log_level)
    app.logger.addHandler(console_handler)
    app.logger.addHandler(file_handler)

    app.logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def register_error_handlers(app):
    from volvault.exceptions import NotFound, ValidationError

    @app.errorhandler(NotFound)
    def handle_not_found(e):
        return jsonify({'error': str(e)}), 404

    @app.errorhandler(ValidationError)
    def handle_validation_error(e):
        return jsonify({'error': str(e)}), 400


def create_app(config_name=None, config_overrides=None):
    """Flask application factory"""

    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from volvault.config import config
    app.config.from_object(config[config_name])
    if config_overrides:
        app.config.update(config_overrides)

    # Configure logging
    configure_logging(app)

    # Ensure required directories exist
    os.makedirs(app.config['TEMP_DIR'], exist_ok=True)
    os.makedirs(app.config['LOCAL_BACKUP_DIR'], exist_ok=True)
    db_uri = app.config['SQLALCHEMY_DATABASE_URI']
    if db_uri.startswith('sqlite:///') and ':memory:' not in db_uri:
        os.makedirs(os.path.dirname(os.path.abspath(db_uri.replace('sqlite:///', ''))), exist_ok=True)

    # Initialize extensions
    db.init_app(app)

    # Register blueprints
    from volvault.routes import nodes_routes, backups_routes, schedules_routes, settings_routes, dashboard_routes
    app.register_blueprint(nodes_routes.bp)
    app.register_blueprint(backups_routes.bp)
    app.register_blueprint(schedules_routes.bp)
    app.register_blueprint(settings_routes.bp)
    app.register_blueprint(dashboard_routes.bp)

    register_error_handlers(app)

    # Health check endpoint
    @app.route('/health')
    def health():
        return {'status': 'healthy'}, 200

    # Initialize database schema
    from volvault import models
    with app.app_context():
        db.create_all()

    # Per-node locks and the schedule registry are shared by every run in this process
    from volvault.backup.executor import NodeLocks
    from volvault.scheduler import ScheduleRegistry

    registry = ScheduleRegistry().init(app)
    app.extensions['volvault.node_locks'] = NodeLocks()
    app.extensions['volvault.scheduler'] = registry

    # Only the designated scheduler process runs timers
    if app.config.get('SCHEDULER_ENABLED'):
        app.logger.info("Initializing scheduler in this process...")
        registry.start()

        # Register cleanup function to stop scheduler on app shutdown
        atexit.register(registry.stop_all)
        app.logger.info("Scheduler initialized and started successfully")
    else:
        app.logger.info("Scheduler initialization skipped in this process")

    return app
