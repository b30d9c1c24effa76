"""tether configuration schema: YAML + Pydantic + env override."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict


# ════════════════════════════════════════════════════════════
# SUB-CONFIGS (nested BaseModel)
# ════════════════════════════════════════════════════════════


class TransportConfig(BaseModel):
    """Model endpoint + retry policy."""

    provider: Literal["http", "litellm"] = "http"
    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    temperature: float = 0.7
    max_tokens: int = 4096
    timeout: float = 60.0
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: bool = False
    redact_content: bool = True


class AgentConfig(BaseModel):
    """Reasoning loop (agent.*)."""

    name: str = "default_agent"
    description: str = "General assistant agent"
    instructions: str = "You are a helpful assistant."
    max_iterations: int = 10
    tool_timeout: float = 30.0


class MemoryConfig(BaseModel):
    """Short-term window + long-term summaries (approx. 1 token ~ 4 chars)."""

    short_limit: int = 10
    long_limit: int = 5
    token_threshold: int = 4000
    keep_recent: int = 4
    prune_persisted: bool = False


class DatabaseConfig(BaseModel):
    path: str = "data/tether.db"
    conversation_id: str = "default"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: str | None = None
    serialize: bool = False


# ════════════════════════════════════════════════════════════
# ROOT CONFIG (BaseSettings with env + .env support)
# ════════════════════════════════════════════════════════════


class Settings(BaseSettings):
    """
    Root configuration.

    Priority: env vars > .env > YAML (init kwargs) > defaults

    Env override examples:
        TETHER_TRANSPORT__MODEL=gpt-4o
        TETHER_TRANSPORT__API_KEY=sk-...
        TETHER_AGENT__MAX_ITERATIONS=5
    """

    model_config = SettingsConfigDict(
        env_prefix="TETHER_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    transport: TransportConfig = Field(default_factory=TransportConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # YAML arrives as init kwargs; env and .env must still win over it.
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    # ── Computed properties ─────────────────────────────────

    @property
    def has_api_key(self) -> bool:
        return bool(self.transport.api_key)
