"""threatscribe configuration — loaded from .env via pydantic-settings."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings


class ThreatscribeSettings(BaseSettings):
    """All threatscribe configuration. Reads from .env file and environment variables."""

    # --- Persistence ---
    database_url: str = Field(
        default="",
        description="postgresql://... for Postgres, sqlite:///path or empty for SQLite",
    )
    sqlite_path: Path = Field(
        default=Path.home() / ".threatscribe" / "threatscribe.db",
        description="SQLite file used when database_url is empty",
    )

    # --- Content generation (OpenRouter-compatible) ---
    openrouter_url: str = Field(
        default="https://openrouter.ai/api/v1",
        description="Chat-completions base URL",
    )
    openrouter_api_key: str = Field(
        default="",
        description="Bearer token. Empty disables generation (fallback content only)",
    )
    openrouter_model: str = Field(default="alibaba/tongyi-deepresearch-30b-a3b")
    generation_timeout_seconds: float = Field(default=120.0)
    generation_max_tokens: int = Field(default=3000)
    outline_max_tokens: int = Field(default=2000)

    # --- Event streaming ---
    observer_queue_size: int = Field(
        default=1000,
        description="Max undelivered events per in-process observer before it is dropped",
    )

    # --- Logging ---
    log_level: str = Field(default="INFO", description="Log level")
    log_format: str = Field(
        default="console",
        description="Log format: 'console' for dev, 'json' for production",
    )

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


# Singleton: import this everywhere
settings = ThreatscribeSettings()
