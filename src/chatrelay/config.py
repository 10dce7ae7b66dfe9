"""Configuration management."""

import logging
from typing import Literal

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

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

    storage_backend: Literal["postgres", "memory"] = "postgres"

    # Claude
    claude_oauth_token: str = ""  # OAuth token for Claude API
    claude_model: str = "sonnet"  # Chat model
    claude_summary_model: str = "haiku"  # Model used to condense overflow history
    use_mock_llm: bool = False  # Canned responses, no API calls

    # Context window
    default_system_prompt: str = "You are a helpful assistant."
    context_token_budget: int = 900_000
    context_tail_size: int = 20
    summary_max_messages: int = 20

    # Response cache
    cache_ttl_seconds: float = 3600
    cache_window: int = 3
    cache_sweep_interval_seconds: float = 300

    # Streaming
    replay_slice_size: int = 20
    replay_delay_seconds: float = 0.01
    upstream_timeout_seconds: float = 120

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


def configure_logging(level: str | None = None) -> None:
    """Configure root logging for the service."""
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# Global settings instance
settings = Settings()
