"""Settings via pydantic-settings with ORCHESTRA_ env prefix.

DB connection fields use validation_alias to read from the same unprefixed
env vars (DB_PASSWORD, DB_PORT, etc.) that docker-compose uses, so a single
.env file drives both the container and the Python app.
"""

from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="ORCHESTRA_", env_file=".env")

    # DB connection: unprefixed aliases match docker-compose env vars
    db_host: str = Field("localhost", validation_alias="DB_HOST")
    db_port: int = Field(5432, validation_alias="DB_PORT")
    db_user: str = Field("orchestra", validation_alias="DB_USER")
    db_password: str = Field("orchestra_dev_password", validation_alias="DB_PASSWORD")
    db_name: str = Field("orchestra", validation_alias="DB_NAME")
    # Full URL override (e.g. sqlite+aiosqlite:///orchestra.db)
    database_url: str = ""

    db_pool_size: int = 10
    db_max_overflow: int = 5
    log_level: str = "info"

    # Persistence backend for interactions
    persistence: Literal["memory", "database"] = "memory"

    # Anthropic API
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    # Dual auth: auth_token (Bearer) takes precedence over api_key (x-api-key)
    anthropic_auth_token: str = Field("", validation_alias="ANTHROPIC_AUTH_TOKEN")
    api_base_url: str = "https://api.anthropic.com"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds

    # LLM
    model: str = "claude-sonnet-4-5-20250514"
    # Used for titles, objectives and summaries
    auxiliary_model: str = "claude-haiku-4-5-20251001"
    max_tokens: int = 8192
    auxiliary_max_tokens: int = 2048
    temperature: float = 0.2
    # 0 means use the per-model table in orchestra.llm.transport
    context_window: int = 0

    # Turn loop
    max_turns: int = 25
    agent_max_turns: int = 10
    max_attachments_per_statement: int = 20

    # Forced summary
    context_cutoff_ratio: float = 0.95
    summary_keep_ratio: float = 0.75
    summary_min_tokens: int = 1000

    # Delegation defaults
    delegation_strategy: Literal["fail_fast", "continue_on_error", "retry"] = "retry"
    delegation_max_retries: int = 3
    delegation_continue_threshold: int = 50

    # Event Bus
    event_bus_enabled: bool = True
    event_bus_queue_size: int = 1000

    @model_validator(mode="after")
    def _validate_ratios(self) -> "Settings":
        if not 0 < self.context_cutoff_ratio <= 1:
            raise ValueError("context_cutoff_ratio must be in (0, 1]")
        if not 0 < self.summary_keep_ratio <= 1:
            raise ValueError("summary_keep_ratio must be in (0, 1]")
        if self.agent_max_turns > self.max_turns:
            raise ValueError(
                f"agent_max_turns ({self.agent_max_turns}) must be <= "
                f"max_turns ({self.max_turns})"
            )
        return self

    @property
    def db_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"
