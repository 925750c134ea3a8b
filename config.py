from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "Bitespeed Contact Reconciliation API"
    app_version: str = "1.1.0"
    log_level: str = "INFO"

    db_name: str = "contacts.db"
    db_busy_timeout_seconds: float = Field(default=5.0, gt=0, le=60)

    identify_retry_max: int = Field(default=4, ge=0, le=10)
    identify_retry_base_backoff_seconds: float = Field(default=0.05, ge=0, le=5)
    identify_retry_max_backoff_seconds: float = Field(default=1.0, ge=0, le=30)
    identify_timeout_seconds: float = Field(default=10.0, gt=0, le=120)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
