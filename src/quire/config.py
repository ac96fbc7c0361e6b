"""Application configuration."""

from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    data_dir: Path = Path("data")
    storage_backend: Literal["file", "memory"] = "file"
    debug: bool = False
    app_title: str = "Quire"
    site_url: str = "http://localhost:8000"

    # Publishing pipeline
    words_per_minute: int = 200
    toc_max_level: int = 3

    # On-demand revalidation and admin access
    revalidate_secret: str | None = None
    admin_token: str | None = None
    revalidate_seconds: int = 3600

    model_config = SettingsConfigDict(
        env_prefix="QUIRE_",
        env_file=".env",
        env_file_encoding="utf-8",
    )


settings = Settings()
