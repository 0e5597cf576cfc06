import os


class Config:
    """Base configuration"""

    # Flask
    SECRET_KEY = os.environ.get('SECRET_KEY')
    if not SECRET_KEY:
        import secrets
        SECRET_KEY = secrets.token_hex(32)

    # Data locations
    DATA_DIR = os.environ.get('DATA_DIR') or '/data'
    TEMP_DIR = os.environ.get('TEMP_DIR') or os.path.join(DATA_DIR, 'temp')
    LOCAL_BACKUP_DIR = os.environ.get('LOCAL_BACKUP_DIR') or os.path.join(DATA_DIR, 'backups')
    LOG_DIR = os.environ.get('LOG_DIR') or os.path.join(DATA_DIR, 'logs')

    # Database
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or f'sqlite:///{os.path.join(DATA_DIR, "volvault.db")}'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Remote nodes
    DEFAULT_VOLUMES_PATH = os.environ.get('VOLUMES_PATH') or '/var/lib/pterodactyl/volumes'
    SSH_CONNECT_TIMEOUT = 30

    # Safe backup: poll every 5s, give up after 12 polls (60s)
    SAFE_STOP_POLL_INTERVAL = 5
    SAFE_STOP_MAX_POLLS = 12
    WORKLOAD_API_TIMEOUT = 15

    # Serialize runs that target the same node
    NODE_LOCKING = os.environ.get('NODE_LOCKING', 'false').lower() == 'true'

    # Notifications
    WEBHOOK_TIMEOUT = 10

    # Scheduler
    SCHEDULER_ENABLED = os.environ.get('SCHEDULER_WORKER', 'true').lower() == 'true'
    SCHEDULER_TIMEZONE = 'UTC'
    SCHEDULER_MAX_WORKERS = 3


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "volvault.db")}'
    TEMP_DIR = os.path.join(DATA_DIR, 'temp')
    LOCAL_BACKUP_DIR = os.path.join(DATA_DIR, 'backups')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


class TestingConfig(Config):
    """Testing configuration (paths are overridden per test)"""
    TESTING = True
    DEBUG = False
    SCHEDULER_ENABLED = False
    SAFE_STOP_POLL_INTERVAL = 0
    SECRET_KEY = 'test-secret-key'


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}
