import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask

from snapkeeper.utils.log_context import HostContextFilter, HostRoutingHandler

CONSOLE_FORMAT = '[%(asctime)s] %(levelname)s [%(host)s] %(message)s'
FILE_FORMAT = '[%(asctime)s] %(levelname)s [%(host)s] [%(threadName)s] [%(name)s.%(funcName)s:%(lineno)d] %(message)s'


def configure_logging(app):
    """Configure application logging"""

    # Create logs directory if it doesn't exist
    log_dir = app.config['LOG_DIR']
    os.makedirs(log_dir, exist_ok=True)

    # Set log level based on environment
    log_level = logging.DEBUG if app.config.get('DEBUG', False) else logging.INFO

    host_filter = HostContextFilter()

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))

    # File handler
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'snapkeeper.log'),
        maxBytes=10485760,  # 10MB
        backupCount=10
    )
    file_handler.setLevel(log_level)
    file_handler.setFormatter(logging.Formatter(FILE_FORMAT))

    # One file per host
    host_handler = HostRoutingHandler(os.path.join(log_dir, 'hosts'))
    host_handler.setLevel(log_level)
    host_handler.setFormatter(logging.Formatter(FILE_FORMAT))

    # Replace handlers installed by an earlier app instance
    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        if getattr(handler, 'snapkeeper_handler', False):
            root_logger.removeHandler(handler)
            handler.close()

    for handler in (console_handler, file_handler, host_handler):
        handler.addFilter(host_filter)
        handler.snapkeeper_handler = True
        root_logger.addHandler(handler)
    root_logger.setLevel(log_level)

    # APScheduler logs every job execution at INFO
    logging.getLogger('apscheduler').setLevel(logging.WARNING)

    app.logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def create_app(config_name=None, test_config=None):
    """Flask application factory"""

    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('SNAPKEEPER_ENV', 'production')

    from snapkeeper.config import config
    app.config.from_object(config[config_name])
    if test_config:
        app.config.update(test_config)

    # Configure logging
    configure_logging(app)

    # Status API
    from snapkeeper.routes import hosts_routes
    app.register_blueprint(hosts_routes.bp)

    # Health check endpoint
    @app.route('/health')
    def health():
        return {'status': 'healthy'}, 200

    # Command line interface (backup, prune, serve)
    from snapkeeper.cli import register_commands
    register_commands(app)

    return app
