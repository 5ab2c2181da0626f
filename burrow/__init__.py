import os
import atexit
import logging
import threading
from logging.handlers import RotatingFileHandler
from flask import Flask, jsonify


def configure_logging(app):
    """Configure application logging"""

    # Verbosity is an explicit setting rather than tied to DEBUG
    log_level = logging.DEBUG if app.config.get('VERBOSE', False) else logging.INFO

    handlers = []

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)
    handlers.append(console_handler)

    # File handler
    log_dir = app.config.get('LOG_DIR')
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, 'burrow.log'),
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
    logging.basicConfig(level=logging.INFO, handlers=handlers)

    # Package logger carries the verbosity for every component
    logging.getLogger('burrow').setLevel(log_level)

    # Configure Flask app logger
    app.logger.setLevel(log_level)

    app.logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def register_error_handlers(app):
    """Map domain errors to JSON responses."""
    from burrow.config import ConfigError
    from burrow.utils.crypto import CryptoError, DecryptionError
    from burrow.backup.archive import ArchiveError
    from burrow.backup.cancellation import OperationCancelled
    from burrow.backup.commands import CommandError
    from burrow.backup.container import LifecycleError
    from burrow.backup.retention import RetentionError
    from burrow.backup.storage import StorageError

    @app.errorhandler(ConfigError)
    def handle_config_error(e):
        return jsonify({'error': str(e)}), 404

    @app.errorhandler(DecryptionError)
    def handle_decryption_error(e):
        return jsonify({'error': str(e)}), 422

    def handle_operation_error(e):
        app.logger.error(f"{type(e).__name__}: {e}")
        return jsonify({'error': str(e), 'type': type(e).__name__}), 500

    for error_class in (CryptoError, ArchiveError, OperationCancelled, CommandError,
                        LifecycleError, RetentionError, StorageError):
        app.register_error_handler(error_class, handle_operation_error)


def build_runner(app):
    """
    Load service settings and wire the executor, retention and history.

    Raises:
        ConfigError: If the service file is missing or invalid
        CryptoError: If the key file cannot be loaded
    """
    from burrow.backup.executor import build_executor
    from burrow.backup.retention import RetentionManager
    from burrow.config import load_settings
    from burrow.history import RunHistory
    from burrow.runner import Runner

    logger = logging.getLogger('burrow')
    cancel_event = threading.Event()

    settings = load_settings(app.config['BURROW_CONFIG'], key_file=app.config.get('BURROW_KEY_FILE'))
    executor = build_executor(
        settings,
        cancel_event=cancel_event,
        logger=logging.getLogger('burrow.backup'),
        staging_dir=app.config.get('TEMP_DIR')
    )
    retention = RetentionManager(settings, executor.backends, logger=logging.getLogger('burrow.retention'))

    return Runner(executor, retention, RunHistory(), cancel_event=cancel_event, logger=logger)


def create_app(config_name=None, runner=None):
    """
    Flask application factory

    Args:
        config_name: Key into burrow.config.config (BURROW_ENV if None)
        runner: Pre-built Runner (loaded from the service file if None)
    """
    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('BURROW_ENV', 'production')

    from burrow.config import config
    app.config.from_object(config[config_name])

    # Configure logging
    configure_logging(app)

    if runner is None:
        runner = build_runner(app)
    app.extensions['burrow'] = runner

    # Register blueprints
    from burrow.routes import services_routes, history_routes
    app.register_blueprint(services_routes.bp)
    app.register_blueprint(history_routes.bp)

    register_error_handlers(app)

    # Health check endpoint
    @app.route('/health')
    def health():
        from burrow.scheduler import is_scheduler_running
        return {
            'status': 'healthy',
            'services': len(runner.settings.services),
            'scheduler_running': is_scheduler_running()
        }, 200

    # Initialize and start scheduler (only in the designated scheduler worker)
    from burrow.scheduler import init_scheduler, start_scheduler, sync_service_jobs, stop_scheduler

    # Every process holds backend sessions; atexit runs LIFO, so stop_scheduler below runs first
    atexit.register(runner.close)

    is_scheduler_worker = os.environ.get('SCHEDULER_WORKER', 'true').lower() == 'true'

    if app.config.get('SCHEDULER_ENABLED') and is_scheduler_worker:
        app.logger.info("Initializing scheduler in this process...")
        init_scheduler(app)
        sync_service_jobs()
        start_scheduler()

        # Cancel in-flight work and stop the scheduler on shutdown
        atexit.register(stop_scheduler)
        app.logger.info("Scheduler initialized and started successfully")
    else:
        app.logger.info("Scheduler initialization skipped in this process")

    return app
