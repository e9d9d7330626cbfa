# listing_sync/core/config.py

import os
from functools import lru_cache
from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Application settings.
    Loads values from environment variables (.env file)
    """
    # Catalog API
    CATALOG_BASE_URL: str = "https://openapi.etsy.com/v3/application"
    CATALOG_API_KEY: str = ""
    CATALOG_ACCESS_TOKEN: str = ""
    CATALOG_SHOP_ID: int = 0  # 0 = resolve from /users/me

    # HTTP
    HTTP_TIMEOUT_SECONDS: float = 30.0
    HTTP_MAX_RETRIES: int = 3
    HTTP_RETRY_BASE_DELAY: float = 1.0

    # Checkpoint storage
    DATABASE_URL: str = "sqlite+aiosqlite:///./listing_sync.db"
    CHECKPOINT_MAX_AGE_DAYS: int = 7

    # File paths
    BACKUP_DIR: str = "backups"

    # Logging
    LOG_LEVEL: str = "INFO"

    model_config = ConfigDict(
        env_file=os.environ.get('ENV_FILE', '.env') if os.path.exists('.env') else None,
        case_sensitive=True,
        extra="ignore",
    )


@lru_cache()
def get_settings():
    """Cached settings to avoid re-reading the .env file on every command"""
    return Settings()

def clear_settings_cache():
    """Clear the settings cache - useful when switching between environments"""
    get_settings.cache_clear()
