import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from flask_login import LoginManager


# Initialize extensions
db = SQLAlchemy()
login_manager = LoginManager()


def configure_logging(app):
    """Configure application logging"""

    # Set log level based on environment
    log_level = logging.DEBUG if app.config.get('DEBUG', False) else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)
    handlers = [console_handler]

    # File handler
    log_dir = app.config.get('LOG_DIR')
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, 'dumpkeeper.log'),
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(log_level)
        file_formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        handlers.append(file_handler)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=handlers)

    # Configure Flask app logger
    app.logger.setLevel(log_level)
    for handler in handlers:
        app.logger.addHandler(handler)

    app.logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def create_app(config_name=None, config_overrides=None):
    """Flask application factory"""
    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from dumpkeeper.config import config
    app.config.from_object(config[config_name])
    if config_overrides:
        app.config.update(config_overrides)

    # Configure logging
    configure_logging(app)

    # Ensure required directories exist
    database_uri = app.config['SQLALCHEMY_DATABASE_URI']
    if database_uri.startswith('sqlite:///') and database_uri != 'sqlite:///:memory:':
        database_dir = os.path.dirname(database_uri.replace('sqlite:///', ''))
        if database_dir:
            os.makedirs(database_dir, exist_ok=True)
    if database_uri.startswith('sqlite'):
        # Runs, lease heartbeats and run_many workers use their own threads
        engine_options = dict(app.config.get('SQLALCHEMY_ENGINE_OPTIONS') or {})
        engine_options.setdefault('connect_args', {'check_same_thread': False, 'timeout': 30})
        app.config['SQLALCHEMY_ENGINE_OPTIONS'] = engine_options

    # Initialize extensions
    db.init_app(app)
    login_manager.init_app(app)

    # Token authentication for the JSON API
    from dumpkeeper.auth import load_operator_from_request, unauthorized

    @login_manager.request_loader
    def load_operator(request):
        return load_operator_from_request(request)

    login_manager.unauthorized_handler(unauthorized)

    # Register blueprints
    from dumpkeeper.routes import sources_routes, runs_routes, artifacts_routes
    app.register_blueprint(sources_routes.bp)
    app.register_blueprint(runs_routes.bp)
    app.register_blueprint(artifacts_routes.bp)

    # Health check endpoint
    from dumpkeeper.backup.errors import StorageError
    from dumpkeeper.backup.executor import get_orchestrator

    @app.route('/health')
    def health():
        try:
            storage = get_orchestrator().storage
            storage.test_connection()
        except (StorageError, ValueError) as e:
            app.logger.error(f"Health check failed: {e}")
            return {'status': 'unhealthy', 'error': str(e)}, 503
        return {'status': 'healthy', 'storage': storage.name}, 200

    # Initialize database schema
    from dumpkeeper import models  # noqa: F401
    from dumpkeeper.auth import ensure_bootstrap_operator

    with app.app_context():
        db.create_all()
        ensure_bootstrap_operator(app)

    return app
