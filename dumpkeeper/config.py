import os


def _float(name, default):
    value = os.environ.get(name)
    return float(value) if value else default


def _int(name, default):
    value = os.environ.get(name)
    return int(value) if value else default


class Config:
    """Base configuration"""

    # Flask
    # Get SECRET_KEY from environment, or generate a non-persistent one
    SECRET_KEY = os.environ.get('SECRET_KEY')
    if not SECRET_KEY:
        import secrets
        SECRET_KEY = secrets.token_hex(32)

    # Database
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:////data/dumpkeeper.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Logging (file logging is disabled when unset)
    LOG_DIR = os.environ.get('LOG_DIR')

    # Storage
    STORAGE_BACKEND = os.environ.get('STORAGE_BACKEND') or 'local'
    LOCAL_BACKUP_DIR = os.environ.get('LOCAL_BACKUP_DIR') or '/data/backups'
    S3_BUCKET = os.environ.get('S3_BUCKET')
    S3_REGION = os.environ.get('S3_REGION') or 'us-east-1'
    S3_ACCESS_KEY = os.environ.get('S3_ACCESS_KEY')
    S3_SECRET_KEY = os.environ.get('S3_SECRET_KEY')
    S3_ENDPOINT_URL = os.environ.get('S3_ENDPOINT_URL')
    S3_PART_SIZE = _int('S3_PART_SIZE', 8 * 1024 * 1024)

    # Encryption keys are read from {KEY_ENV_PREFIX}{KEY_REF}
    KEY_ENV_PREFIX = os.environ.get('KEY_ENV_PREFIX') or 'DUMPKEEPER_KEY_'

    # Pipeline
    CHUNK_SIZE = _int('CHUNK_SIZE', 1024 * 1024)
    PIPELINE_QUEUE_DEPTH = _int('PIPELINE_QUEUE_DEPTH', 8)
    PROGRESS_INTERVAL = _float('PROGRESS_INTERVAL', 5.0)
    SOURCE_READ_TIMEOUT = _float('SOURCE_READ_TIMEOUT', 600.0)
    UPLOAD_TIMEOUT = _float('UPLOAD_TIMEOUT', None)

    # Run lease
    LOCK_TTL = _float('LOCK_TTL', 300.0)
    LOCK_HEARTBEAT = _float('LOCK_HEARTBEAT', 60.0)

    # Reconciliation
    STALE_AFTER = _float('STALE_AFTER', 3600.0)

    CONCURRENCY_LIMIT = _int('CONCURRENCY_LIMIT', 4)

    # Operator created at start-up with this API token
    BOOTSTRAP_API_TOKEN = os.environ.get('BOOTSTRAP_API_TOKEN')


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or f'sqlite:///{os.path.join(DATA_DIR, "dumpkeeper.db")}'
    LOCAL_BACKUP_DIR = os.environ.get('LOCAL_BACKUP_DIR') or os.path.join(DATA_DIR, 'backups')
    LOG_DIR = os.environ.get('LOG_DIR') or os.path.join(DATA_DIR, 'logs')


class TestingConfig(Config):
    """Test configuration"""
    TESTING = True
    SECRET_KEY = 'test-secret-key'
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    LOG_DIR = None
    STORAGE_BACKEND = 'local'
    PROGRESS_INTERVAL = 0.0
    SOURCE_READ_TIMEOUT = 10.0
    UPLOAD_TIMEOUT = None
    LOCK_HEARTBEAT = 0
    BOOTSTRAP_API_TOKEN = None


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': ProductionConfig
}
