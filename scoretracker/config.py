import os
from dotenv import load_dotenv

load_dotenv()

class Config:
    """Score tracker configuration settings"""

    # Database settings
    DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///scoretracker.db')

    # Runtime settings
    DEBUG = os.getenv('DEBUG', 'False').lower() == 'true'
    LOG_DIR = os.getenv('LOG_DIR', '')  # file logging is off when empty

    # Distributed locking (optional - in-process locks are always used)
    REDIS_URL = os.getenv('REDIS_URL', '')
    LOCK_TIMEOUT_SECONDS = float(os.getenv('LOCK_TIMEOUT_SECONDS', 30))

    @staticmethod
    def to_async_url(database_url: str) -> str:
        """Rewrite a plain sqlite URL for the aiosqlite driver"""
        if database_url.startswith('sqlite:///'):
            database_url = database_url.replace('sqlite:///', 'sqlite+aiosqlite:///')
        return database_url

    @classmethod
    def get_async_database_url(cls) -> str:
        """Get the configured database URL rewritten for an async driver"""
        return cls.to_async_url(cls.DATABASE_URL)

    @classmethod
    def validate(cls):
        """Validate that required configuration is present"""
        if not cls.DATABASE_URL:
            raise ValueError("DATABASE_URL is required")
        if cls.LOCK_TIMEOUT_SECONDS <= 0:
            raise ValueError("LOCK_TIMEOUT_SECONDS must be positive")
        if cls.REDIS_URL and not cls.REDIS_URL.startswith(('redis://', 'rediss://')):
            raise ValueError("REDIS_URL must use the redis:// or rediss:// scheme")
