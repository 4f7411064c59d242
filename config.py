from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    database_url: str = "mongodb://localhost:27017"
    database_name: str = "trip_collab"
    port: int = 8000
    cors_origins: List[str] = ["*"]
    log_level: str = "INFO"

    # Super admin identifiers, consumed only through AccessPolicy
    super_admin_email: Optional[str] = None
    super_admin_id: Optional[str] = None

    session_ttl_days: int = 7

    message_max_length: int = 1000
    discussion_page_size: int = 50
    chat_page_size: int = 20

    report_hide_threshold: int = 5
    rating_average_decimals: int = 1


@lru_cache
def get_settings() -> Settings:
    return Settings()
