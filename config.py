"""Configuration module for Flask application."""
import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class Config:
    """Base configuration class."""

    # Flask
    SECRET_KEY = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')
    DEBUG = os.getenv('FLASK_DEBUG', '0') == '1'
    ENV = os.getenv('FLASK_ENV', 'development')
    TESTING = False

    # Database - Support multiple environment variable naming conventions
    # Priority: DATABASE_URL > DB_* > POSTGRES_*
    DATABASE_URL = os.getenv('DATABASE_URL')

    if not DATABASE_URL:
        # Try DB_* variables (Docker style)
        DB_HOST = os.getenv('DB_HOST') or os.getenv('POSTGRES_HOST', 'localhost')
        DB_PORT = os.getenv('DB_PORT') or os.getenv('POSTGRES_PORT', '5432')
        DB_NAME = os.getenv('DB_NAME') or os.getenv('POSTGRES_DB', 'fiscal')
        DB_USER = os.getenv('DB_USER') or os.getenv('POSTGRES_USER', 'fiscal')
        DB_PASSWORD = os.getenv('DB_PASSWORD') or os.getenv('POSTGRES_PASSWORD', 'fiscal')

        DATABASE_URL = (
            f"postgresql://{DB_USER}:{DB_PASSWORD}"
            f"@{DB_HOST}:{DB_PORT}/{DB_NAME}"
        )

    # SQLAlchemy
    SQLALCHEMY_DATABASE_URI = DATABASE_URL
    SQLALCHEMY_ECHO = os.getenv('SQLALCHEMY_ECHO', '0') == '1'

    # Wix API
    WIX_API_BASE = os.getenv('WIX_API_BASE', 'https://www.wixapis.com')
    WIX_MANAGE_BASE = os.getenv('WIX_MANAGE_BASE', 'https://manage.wix.com')
    WIX_OAUTH_URL = os.getenv('WIX_OAUTH_URL', 'https://www.wixapis.com/oauth2/token')
    WIX_REFRESH_URL = os.getenv('WIX_REFRESH_URL', 'https://www.wix.com/oauth/access')
    WIX_APP_ID = os.getenv('WIX_APP_ID')
    WIX_APP_SECRET = os.getenv('WIX_APP_SECRET')
    WIX_APP_PUBLIC_KEY = os.getenv('WIX_APP_PUBLIC_KEY')
    WIX_ACCESS_TOKEN = os.getenv('WIX_ACCESS_TOKEN')  # static token, development only
    WIX_TIMEOUT_SECONDS = int(os.getenv('WIX_TIMEOUT_SECONDS', '20'))
    TOKEN_REFRESH_MARGIN_SECONDS = int(os.getenv('TOKEN_REFRESH_MARGIN_SECONDS', '60'))

    # Sync
    SYNC_PAGE_LIMIT = int(os.getenv('SYNC_PAGE_LIMIT', '100'))
    SYNC_MAX_PAGES = int(os.getenv('SYNC_MAX_PAGES', '3'))
    BACKFILL_MAX_PAGES = int(os.getenv('BACKFILL_MAX_PAGES', '20'))
    BACKFILL_START_DATE = os.getenv('BACKFILL_START_DATE', '2000-01-01')
    INCREMENTAL_WINDOW_DAYS = int(os.getenv('INCREMENTAL_WINDOW_DAYS', '3'))
    PAYMENTS_BATCH_LIMIT = int(os.getenv('PAYMENTS_BATCH_LIMIT', '500'))
    REFUND_MAX_ATTEMPTS = int(os.getenv('REFUND_MAX_ATTEMPTS', '3'))

    # Cron / operator endpoints
    CRON_SECRET = os.getenv('CRON_SECRET')

    # Redis Cache Configuration
    # Shared cache for batch payment lookups between sync invocations
    REDIS_URL = os.getenv('REDIS_URL', 'redis://redis:6379/0')
    CACHE_ENABLED = os.getenv('CACHE_ENABLED', 'true').lower() == 'true'
    CACHE_DEFAULT_TTL = int(os.getenv('CACHE_DEFAULT_TTL', '60'))  # seconds
    PAYMENTS_CACHE_TTL = int(os.getenv('PAYMENTS_CACHE_TTL', '120'))
    CACHE_KEY_PREFIX = os.getenv('CACHE_KEY_PREFIX', 'fiscal')


class TestConfig(Config):
    """Configuration for the test suite: in-memory SQLite, no Redis."""

    TESTING = True
    DEBUG = False
    ENV = 'testing'
    SQLALCHEMY_DATABASE_URI = os.getenv('TEST_DATABASE_URL', 'sqlite://')
    SQLALCHEMY_ECHO = False
    CACHE_ENABLED = False
    CRON_SECRET = 'test-cron-secret'
    WIX_APP_ID = 'test-app-id'
    WIX_APP_SECRET = 'test-app-secret'
    WIX_APP_PUBLIC_KEY = None
    WIX_ACCESS_TOKEN = None
