# =====================================================
# FILE: app/core/config.py
# Application Settings (environment / .env driven)
# =====================================================

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Settings for the workflow approval service."""

    APP_NAME: str = "Inventory Workflow Approvals"
    DEBUG: bool = False
    APP_BASE_URL: str = "http://localhost:8000"

    # --- Database ---
    # When DATABASE_URL is empty the URL is built from the DB_* components
    DATABASE_URL: Optional[str] = None
    DB_USER: str = "root"
    DB_PASSWORD: str = ""
    DB_HOST: str = "localhost"
    DB_PORT: int = 3306
    DB_NAME: str = "inventory"
    DB_ECHO: bool = False
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    DB_POOL_PRE_PING: bool = True

    # --- Background jobs ---
    SCHEDULER_ENABLED: bool = True
    TIMEOUT_SWEEP_INTERVAL_MINUTES: int = 5
    REMINDER_INTERVAL_MINUTES: int = 60
    REMINDER_FIRST_HOURS: int = 24
    REMINDER_URGENT_HOURS: int = 48

    # --- Workflow behaviour ---
    DEFAULT_PARALLEL_POLICY: str = "any"
    EMAIL_NOTIFICATIONS_ENABLED: bool = True

    model_config = {
        "env_file": ".env",
        "extra": "ignore",
    }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton."""
    return Settings()


settings = get_settings()
