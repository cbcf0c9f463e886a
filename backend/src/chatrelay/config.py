"""Configuration management."""

from pathlib import Path
from typing import Literal

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    # Anthropic
    anthropic_api_key: str = ""
    anthropic_api_url: str = "https://api.anthropic.com/v1/messages"
    anthropic_version: str = "2023-06-01"
    anthropic_timeout: float = 120.0
    capable_model: str = "claude-sonnet-4-5-20250929"  # Default chat model
    fast_model: str = "claude-3-haiku-20240307"  # Summaries and "fast" requests

    # Outbound context
    chat_max_tokens: int = 900
    summary_max_tokens: int = 600
    history_max_turns: int = 16
    custom_instructions: str = ""

    # Compaction
    compaction_min_messages: int = 22  # Consider compaction from this many messages
    compaction_keep_last: int = 12  # Never summarize the most recent messages
    compaction_min_batch: int = 12  # Skip tiny batches
    compaction_cooldown_seconds: float = 60.0
    compaction_carry_summary: bool = True  # Feed the previous summary into the next one

    # Shared-secret protection for /api/* (disabled when empty)
    chat_password: str = ""

    # Storage
    storage_backend: Literal["memory", "json", "postgres"] = "json"
    storage_cache: bool = True
    data_dir: Path = Path("data")

    # Database (PostgreSQL) - constructed from parts
    db_host: str = "localhost"
    db_port: str = "5432"
    db_name: str = "chatrelay"
    db_user: str = "chatrelay"
    db_password: str = ""

    @computed_field
    @property
    def database_url(self) -> str:
        """Construct database URL from parts."""
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    # Server
    host: str = "0.0.0.0"
    port: int = 3000
    static_dir: Path = Path("static")
    cors_origins: list[str] = ["*"]
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


# Global settings instance
settings = Settings()
