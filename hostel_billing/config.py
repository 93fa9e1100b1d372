from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # App
    app_name: str = "Hostel Billing API"
    debug: bool = False

    # DB
    database_url: str = "sqlite:///./data/app.db"

    # Logging
    log_level: str = "INFO"
    log_format: Literal["console", "json"] = "console"

    # Quota
    approaching_limit_threshold: float = Field(default=0.8, gt=0, le=1)
    default_bulk_upload_batch_limit: Optional[int] = Field(default=None, ge=1)


@lru_cache
def get_settings() -> Settings:
    return Settings()
