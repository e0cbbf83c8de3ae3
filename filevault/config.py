from functools import lru_cache
from typing import List

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict
from typing_extensions import Annotated

MB = 1024 * 1024


class Settings(BaseSettings):
    """Process-wide settings, read once at startup and never mutated."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    database_url: str = "sqlite:///./filevault.db"
    storage_dir: str = "uploads"
    max_upload_bytes: int = 10 * MB
    default_quota_bytes: int = 10 * MB

    jwt_secret: str = "change-me"
    jwt_algorithm: str = "HS256"
    token_ttl_minutes: int = 24 * 60

    rate_limit_calls: int = 2
    rate_limit_window: float = 1.0  # seconds
    cors_origins: Annotated[List[str], NoDecode] = ["*"]

    log_level: str = "INFO"
    sweep_on_startup: bool = True
    orphan_grace_seconds: int = 3600

    @field_validator("cors_origins", mode="before")
    @classmethod
    def split_origins(cls, value):
        # CORS_ORIGINS is a comma separated list
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value


@lru_cache
def get_settings() -> Settings:
    return Settings()
