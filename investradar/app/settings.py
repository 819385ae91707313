from functools import lru_cache

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True)

    # Keys must be provided via env / .env (never hardcode secrets in code)
    gemini_api_key: str | None = Field(default=None, validation_alias=AliasChoices("GEMINI_API_KEY", "API_KEY"))
    alphavantage_api_key: str | None = None
    model_name: str = "gemini-2.5-flash"
    alphavantage_base_url: str = "https://www.alphavantage.co/query"

    request_timeout: float = 30.0
    stream_idle_timeout: float = 60.0

    default_currency: str = "NOK"
    ticker_suffix: str = ".OL"
    log_level: str = "INFO"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
