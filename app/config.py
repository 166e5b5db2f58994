from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "Currency Converter Service"
    api_prefix: str = "/v1"
    log_level: str = "INFO"

    database_url: str = "sqlite+aiosqlite:///./currency_converter.db"
    redis_url: str | None = "redis://localhost:6379/0"

    base_currency: str = "USD"
    rate_cache_ttl_seconds: int = 3600

    rate_api_url: str = "https://api.frankfurter.app/latest"
    request_timeout_seconds: int = 10
    sync_rates_on_startup: bool = False

    @field_validator("base_currency")
    @classmethod
    def _normalize_base_currency(cls, value: str) -> str:
        return value.strip().upper()

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        return value.strip().upper()


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
