"""Application configuration via Pydantic BaseSettings."""

from __future__ import annotations

from enum import Enum
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    development = "development"
    staging = "staging"
    production = "production"


class Settings(BaseSettings):
    """Settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Environment
    ENVIRONMENT: Environment = Environment.development

    # Logging
    LOG_LEVEL: str = "INFO"

    # Redis (local leads cache + job settings)
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_KEY_PREFIX: str = "sharpsync"

    # Sharpspring REST API
    SHARPSPRING_API_URL: str = "https://api.sharpspring.com/pubapi/v1.2/"
    SHARPSPRING_ACCOUNT_ID: str = ""
    SHARPSPRING_SECRET_KEY: str = ""
    SHARPSPRING_TIMEOUT: float = 30.0
    # Lead property name -> Sharpspring system field name. Must contain "sourceId".
    SHARPSPRING_LEAD_CUSTOM_PROPERTIES: dict[str, str] = Field(default_factory=dict)

    # Sync job tuning
    LEADS_UPDATE_LIMIT: int = 6  # max leads per createLeads/updateLeads call
    LEADS_UPDATE_WAIT: float = 0  # seconds to wait after each create/update call
    KEYVALUE_UPDATE_OVERLAP: int = 50  # seconds we don't trust getLeadsDateRange to be current
    KEYVALUE_REFRESH_SCHEDULE: str = "2 3 12,27 * *"  # cron expression for full cache refresh
    LEADS_CACHE_PAGE_SIZE: int = 1024
    LEADS_CHANGED_FETCH_LIMIT: int = 5000

    @property
    def source_id_field(self) -> str:
        """Sharpspring system field name holding the source system's contact ID."""
        try:
            return self.SHARPSPRING_LEAD_CUSTOM_PROPERTIES["sourceId"]
        except KeyError:
            raise ValueError(
                "SHARPSPRING_LEAD_CUSTOM_PROPERTIES must define the 'sourceId' property"
            ) from None


@lru_cache
def get_settings() -> Settings:
    """Singleton settings instance."""
    return Settings()
