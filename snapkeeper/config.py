import os


class Config:
    """Base configuration"""

    # Host configuration directory (backup.conf, ssh key, known hosts)
    CONF_DIR = os.environ.get('SNAPKEEPER_CONF_DIR') or 'conf'

    # Logging
    LOG_DIR = os.environ.get('SNAPKEEPER_LOG_DIR') or 'logs'

    # Scheduled runs
    MAX_PARALLEL = int(os.environ.get('SNAPKEEPER_MAX_PARALLEL', 1))
    SCHEDULER_POLL_INTERVAL = 1.0
    SCHEDULE_CRON = os.environ.get('SNAPKEEPER_SCHEDULE_CRON') or '0 2 * * *'
    SCHEDULER_TIMEZONE = 'UTC'

    # External processes: seconds to wait for exit after output is closed
    PROCESS_GRACE_PERIOD = 5.0

    # Monitoring notifications
    NOTIFY_RETRIES = int(os.environ.get('SNAPKEEPER_NOTIFY_RETRIES', 1))
    NOTIFY_RETRY_DELAY = 2.0
    NOTIFY_TIMEOUT = 30

    # Standalone retention sweep
    PRUNE_STORAGE_DIR = os.environ.get('SNAPKEEPER_PRUNE_STORAGE_DIR') or 'hosts'
    PRUNE_KEEP_INTERVALS = (
        '1h 2h 3h 4h 5h 6h 12h 1d 2d 3d 4d 5d 6d 7d 8d 9d 10d 11d 12d 13d 14d '
        '21d 28d 35d 42d 49d 56d 84d 112d 140d 210d 350d 490d'
    )


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local directories for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    CONF_DIR = os.path.join(DATA_DIR, 'conf')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')
    PRUNE_STORAGE_DIR = os.path.join(DATA_DIR, 'hosts')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'default': ProductionConfig
}
