"""
Configuration Management

This module provides application-wide configuration settings using
Pydantic Settings for the chatflow session processing pipeline.

Environment variables are loaded from .env file and can be overridden
by system environment variables.
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Application configuration settings.

    All settings can be overridden via environment variables.
    Settings are loaded from .env file by default.
    """

    # Database configuration
    database_url: str | None = None
    db_host: str = "localhost"
    db_port: int = 5432
    db_name: str = "chatflow"
    db_user: str = "chatflow"
    db_password: str = "chatflowpw"
    db_pool_size: int = 10
    db_max_overflow: int = 20

    # Pipeline batching
    pipeline_batch_size: int | None = 50   # None processes every pending item in one page
    pipeline_concurrency: int = 5

    # Retry configuration for batch discovery
    retry_max_attempts: int = 3
    retry_initial_delay: float = 1.0
    retry_max_delay: float = 10.0
    retry_backoff_multiplier: float = 2.0

    # Transcript source
    transcript_fetch_timeout: float = 30.0

    # Inference provider (OpenAI-compatible chat completions)
    openai_api_key: str | None = None
    openai_api_url: str = "https://api.openai.com/v1/chat/completions"
    openai_temperature: float = 0.3
    openai_request_timeout: float = 60.0
    default_ai_model: str = "gpt-4o"

    # Observability
    metrics_port: int = 0   # Prometheus metrics port (if >0 then enabled)
    log_level: str = "INFO"

    class Config:
        """Pydantic configuration."""
        env_file = ".env"

    def resolved_database_url(self) -> str:
        """Return database_url, or build a PostgreSQL URL from the db_* parts."""
        if self.database_url:
            return self.database_url
        return (
            f"postgresql://{self.db_user}:{self.db_password}"
            f"@{self.db_host}:{self.db_port}/{self.db_name}"
        )


# Global settings instance
settings = Settings()
