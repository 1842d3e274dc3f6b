import os
import secrets
import warnings

from dotenv import load_dotenv

basedir = os.path.abspath(os.path.dirname(__file__))
load_dotenv(os.path.join(basedir, ".env"))


class Config:
    # Generate a secure key if not provided (with warning)
    _secret_key = os.environ.get("SECRET_KEY")

    if not _secret_key:
        _secret_key = secrets.token_urlsafe(32)
        warnings.warn(
            "SECRET_KEY not set! Using auto-generated key. "
            "Run 'python3 generate_secrets.py' to generate a secure key.",
            UserWarning,
        )

    SECRET_KEY = _secret_key

    # Database configuration - built from environment at initialization
    def __init__(self):
        """Initialize configuration with dynamic database URI"""
        self.SQLALCHEMY_DATABASE_URI = self._build_database_uri()

    def _build_database_uri(self):
        """Build database URI from environment variables"""
        database_url = os.environ.get("DATABASE_URL")

        if database_url:
            return database_url

        db_type = os.environ.get("DB_TYPE", "sqlite")

        if db_type.lower() == "postgresql":
            db_host = os.environ.get("DB_HOST") or "localhost"
            db_port = os.environ.get("DB_PORT") or "5432"
            db_name = os.environ.get("DB_NAME") or "speculate_db"
            db_user = os.environ.get("DB_USER") or "speculate"
            db_password = os.environ.get("DB_PASSWORD") or "speculate"

            return f"postgresql+psycopg://{db_user}:{db_password}@{db_host}:{db_port}/{db_name}"
        else:
            # Default to SQLite for development
            return "sqlite:///" + os.path.join(basedir, "speculate.db")

    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Identity: the upstream auth gateway forwards a stable user id in this header
    IDENTITY_HEADER = os.environ.get("IDENTITY_HEADER", "X-User-Id")

    # Catalog feed (shows / seasons / episodes)
    CATALOG_FEED_URL = os.environ.get("CATALOG_FEED_URL")

    # Scoring / stats settings
    REFERENCE_TIMEZONE = os.environ.get("REFERENCE_TIMEZONE", "UTC")
    LEADERBOARD_SIZE = int(os.environ.get("LEADERBOARD_SIZE") or 100)
    SPOILER_GRACE_MINUTES = int(os.environ.get("SPOILER_GRACE_MINUTES") or 60)
    POINTS_HISTORY_LIMIT = int(os.environ.get("POINTS_HISTORY_LIMIT") or 50)

    # Background task queue
    TASKS_EAGER = os.environ.get("TASKS_EAGER", "False").lower() == "true"
    TASK_MAX_RETRIES = int(os.environ.get("TASK_MAX_RETRIES") or 5)
    TASK_RETRY_DELAY = int(os.environ.get("TASK_RETRY_DELAY") or 10)  # seconds

    # Caching configuration
    CACHE_TYPE = os.environ.get("CACHE_TYPE", "RedisCache")
    CACHE_DEFAULT_TIMEOUT = int(
        os.environ.get("CACHE_DEFAULT_TIMEOUT", 300)
    )  # 5 minutes
    CACHE_REDIS_URL = os.environ.get("CACHE_REDIS_URL", "redis://localhost:6379/0")
    CACHE_KEY_PREFIX = "speculate:"

    # Rate limiting
    RATELIMIT_ENABLED = os.environ.get("RATELIMIT_ENABLED", "True").lower() == "true"
    PICK_RATE_LIMIT = os.environ.get("PICK_RATE_LIMIT", "30 per minute")

    # Scheduler configuration
    SCHEDULER_ENABLED = os.environ.get("SCHEDULER_ENABLED", "True").lower() == "true"

    # Logging configuration
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_TO_CONSOLE = os.environ.get("LOG_TO_CONSOLE", "True").lower() == "true"
    LOG_TO_FILE = os.environ.get("LOG_TO_FILE", "True").lower() == "true"
    LOG_DIR = os.environ.get("LOG_DIR", "logs")

    # Environment detection
    FLASK_ENV = os.environ.get("FLASK_ENV", "development")
    DEBUG = FLASK_ENV == "development"
    TESTING = False


class DevelopmentConfig(Config):
    """Development configuration with helpful defaults"""

    DEBUG = True
    SQLALCHEMY_ECHO = os.environ.get("SQLALCHEMY_ECHO", "False").lower() == "true"

    def __init__(self):
        super().__init__()
        # Fallback to SimpleCache if Redis isn't available in development
        try:
            import redis

            redis_client = redis.Redis.from_url(self.CACHE_REDIS_URL)
            redis_client.ping()
        except (ImportError, redis.exceptions.ConnectionError):
            self.CACHE_TYPE = "SimpleCache"
            warnings.warn(
                "Redis not available, falling back to SimpleCache for development.",
                UserWarning,
            )


class ProductionConfig(Config):
    """Production configuration with security focus"""

    DEBUG = False

    # In production, require explicit environment variables
    def __init__(self):
        super().__init__()  # Call parent __init__ to build database URI

        if not os.environ.get("SECRET_KEY"):
            warnings.warn(
                "PRODUCTION WARNING: SECRET_KEY not explicitly set! "
                "Using auto-generated key is not recommended for production.",
                UserWarning,
            )


class TestingConfig(Config):
    """Testing configuration"""

    TESTING = True
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    CACHE_TYPE = "SimpleCache"
    RATELIMIT_ENABLED = False
    SCHEDULER_ENABLED = False
    TASKS_EAGER = True
    TASK_MAX_RETRIES = 2
    TASK_RETRY_DELAY = 0
    LOG_TO_FILE = False
    LOG_TO_CONSOLE = False

    def __init__(self):
        # Keep the in-memory database regardless of DATABASE_URL
        pass


# Configuration mapping
config = {
    "development": DevelopmentConfig,
    "production": ProductionConfig,
    "testing": TestingConfig,
    "default": DevelopmentConfig,
}
