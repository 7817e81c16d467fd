from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    telegram_bot_token: str = ""
    telegram_chat_id: str = ""
    cron_secret: str = ""
    db_path: str = "group_ledger.json"
    timezone: str = "Asia/Kolkata"
    currency_symbol: str = "₹"

    bot_mode: Literal["polling", "webhook"] = "polling"
    webhook_url: str = ""
    webhook_secret: str = ""
    request_timeout: float = 10.0

    # Optimistic commits and table writes
    commit_attempts: int = 3
    storage_write_retries: int = 3
    storage_retry_backoff: float = 0.2

    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()
