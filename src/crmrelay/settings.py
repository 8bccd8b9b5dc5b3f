from pathlib import Path
from typing import Literal

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError


class Settings(BaseSettings):
    """Application configuration."""

    host: str = "0.0.0.0"
    port: int = 3000
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_dir: Path = Path("logs")
    cors_origins: str = "*"

    llm_api_key: str | None = None
    llm_base_url: str | None = "https://api.groq.com/openai/v1"
    model: str = "llama-3.3-70b-versatile"
    max_tokens: int = Field(default=1024, gt=0)
    follow_up_max_tokens: int = Field(default=512, gt=0)
    completion_timeout_seconds: float | None = 120.0

    stream_chunk_size: int = Field(default=20, gt=0)
    follow_up_flush_threshold: int = Field(default=50, gt=0)
    follow_up_enabled: bool = True

    tool_timeout_seconds: float | None = 30.0
    tool_config_path: Path | None = None

    nango_base_url: str = "https://api.nango.dev"
    nango_secret_key: str | None = None
    nango_connection_id: str | None = None
    nango_provider_config_key: str = "salesforce-2"

    redis_url: str | None = None
    session_ttl_seconds: int = 86400  # 24 hours

    system_prompt: str = (
        "You are an AI assistant that can use various tools to help answer "
        "questions and perform tasks.\n\n"
        "You can work with Salesforce records (Account, Contact, Lead, Deal, "
        "Article, Case) using:\n"
        " - fetch_entity: Retrieve records\n"
        " - create_entity: Create new records\n"
        " - update_entity: Modify existing records\n\n"
        "Use the appropriate tool with correct object names and parameters "
        "for each operation.\n"
        "Follow schemas and patterns defined for all tool calls."
    )
    follow_up_system_prompt: str = (
        "Process the tool result and provide a natural response."
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
    )

    def require_credentials(self) -> None:
        """Fail fast when the provider or action backend cannot be reached.

        Raises:
            ConfigurationError: If an API key or the Nango connection is missing.
        """
        missing = [
            name
            for name in ("llm_api_key", "nango_secret_key", "nango_connection_id")
            if not (getattr(self, name) or "").strip()
        ]
        if missing:
            raise ConfigurationError(
                f"Missing required settings: {', '.join(missing)}"
            )


def load_settings() -> Settings:
    """Build Settings from env / .env, turning validation errors into ConfigurationError."""
    try:
        return Settings()
    except ValidationError as e:
        raise ConfigurationError(f"Invalid settings: {e}") from e


def get_settings() -> Settings:
    """Return the application settings singleton (loaded from env / .env)."""
    global _SETTINGS
    try:
        return _SETTINGS
    except NameError:
        _SETTINGS = load_settings()
        return _SETTINGS
