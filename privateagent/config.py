"""Runtime settings for PrivateAgent, read from the environment."""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SYSTEM_PROMPT = "You are a helpful AI assistant."


class Settings(BaseSettings):
    """Agent, inference server and web server settings.

    Every field can be overridden with a ``PRIVATEAGENT_``-prefixed
    environment variable (e.g. ``PRIVATEAGENT_OLLAMA_URL``) or a ``.env`` file.
    """

    model_config = SettingsConfigDict(
        env_prefix="PRIVATEAGENT_",
        env_file=".env",
        extra="ignore",
    )

    # Inference server
    ollama_url: str = "http://localhost:11434"
    model: str = "llama2"
    request_timeout: float = Field(default=120.0, gt=0)
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    top_p: float = Field(default=0.9, ge=0.0, le=1.0)

    # Conversation
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    max_context_tokens: int = Field(default=4096, gt=0)
    enable_tools: bool = True

    # Command execution (seconds)
    command_timeout: float = Field(default=30.0, gt=0)
    stream_command_timeout: float = Field(default=60.0, gt=0)

    # Sessions; None keeps sessions until explicitly closed
    session_ttl_seconds: float | None = None

    # Web server
    host: str = "127.0.0.1"
    port: int = 3000
    log_level: str = "INFO"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the process-wide settings instance."""
    return Settings()
