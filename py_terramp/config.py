"""Configuration management."""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Amplification settings pulled from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="TERRAMP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="console", description="Logging format (console or json)")

    # Parallelism
    worker_count: Optional[int] = Field(
        default=None, ge=1, description="Thread pool size, defaults to the CPU count"
    )
    matching_chunk_count: Optional[int] = Field(
        default=None, ge=1, description="Tile chunks for matching, defaults to workers * 64"
    )
    lock_timeout_ms: int = Field(
        default=5, ge=1, description="Per-attempt timeout when acquiring synthesis band locks"
    )


settings = Settings()
