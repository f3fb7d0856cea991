"""Service settings loaded from the environment."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime settings for the chat orchestrator, workflow executor and API.

    Every field can be set through a `SASHI_`-prefixed environment variable
    (`SASHI_MAX_ITERATIONS=5`) or a `.env` file. Invalid values fail with a
    validation error naming the offending field.
    """

    model_config = SettingsConfigDict(env_prefix="SASHI_", env_file=".env", extra="ignore")

    # Chat
    max_iterations: int = Field(default=10, ge=1)
    history_limit: int = Field(default=20, ge=1)
    chat_temperature: float = 0.3
    chat_max_tokens: int = 2048

    # Workflow recovery
    recovery_enabled: bool = True
    min_recovery_confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    recovery_temperature: float = 0.3

    # Test endpoints
    enable_test_endpoints: bool = False
    timeout_probe_seconds: float = 2.0
