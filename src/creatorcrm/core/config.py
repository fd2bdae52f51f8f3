"""Configuration loaders for the engine.

Leverages pydantic-settings to hydrate runtime configuration from environment
variables, an optional ``.env`` file, or default values. Nested settings classes
mirror the collaborators the engine talks to (datastore, realtime fan-out, the
chat platform and the commerce platform).
"""

from __future__ import annotations

from enum import Enum
from functools import cached_property
from typing import Any

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseAppSettings(BaseSettings):
    """Base settings that looks at environment variables and an optional .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


class PostgresSettings(BaseAppSettings):
    """Postgres connection details."""

    model_config = SettingsConfigDict(
        env_prefix="postgres_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    host: str = "localhost"
    port: int = Field(default=5432, ge=1, le=65535)
    database: str = Field(
        default="creatorcrm",
        validation_alias=AliasChoices("database", "db"),
    )
    user: str = "creatorcrm"
    password: str = "changeme"
    sslmode: str = "prefer"
    url: str | None = None

    @cached_property
    def dsn(self) -> str:
        """Return a libpq compatible DSN string, or the explicit URL override."""

        if self.url:
            return self.url
        return (
            f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.database}"
            f"?sslmode={self.sslmode}"
        )


class RedisSettings(BaseAppSettings):
    """Redis URL used by the realtime relay."""

    model_config = SettingsConfigDict(
        env_prefix="redis_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    url: str = "redis://localhost:6379/0"


class ChatPlatformSettings(BaseAppSettings):
    """Credentials and limits for the chat platform bot capability."""

    model_config = SettingsConfigDict(
        env_prefix="chat_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    base_url: str = "https://discord.com/api/v10"
    bot_token: str | None = None
    timeout_seconds: float = Field(default=10.0, ge=0.1)
    webhook_secret: str | None = None


class CommercePlatformSettings(BaseAppSettings):
    """Credentials and limits for the commerce/membership platform."""

    model_config = SettingsConfigDict(
        env_prefix="commerce_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    base_url: str = "https://api.whop.com/api/v5"
    api_key: str | None = None
    timeout_seconds: float = Field(default=15.0, ge=0.1)
    default_company_id: str | None = None
    webhook_secret: str | None = None


class RealtimeSettings(BaseAppSettings):
    """Naming used when fanning persisted messages out to subscribed clients."""

    model_config = SettingsConfigDict(
        env_prefix="realtime_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    channel_prefix: str = "realtime"
    message_event: str = "lead:message"
    update_event: str = "lead:message_updated"


class BindingFixMode(str, Enum):
    """Repair strategies for stale chat-platform bindings."""

    CONSERVATIVE = "conservative"
    AGGRESSIVE = "aggressive"


class EngineSettings(BaseAppSettings):
    """Behavioural switches for the resolution engine."""

    model_config = SettingsConfigDict(
        env_prefix="engine_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    binding_fix_mode: BindingFixMode = BindingFixMode.CONSERVATIVE
    commerce_member_fallback_name: str = "Commerce Member"
    send_timeout_seconds: float = Field(default=20.0, ge=0.1)
    poll_batch_size: int = Field(default=50, ge=1)
    poll_history_limit: int = Field(default=10, ge=1, le=100)


class AppSettings(BaseAppSettings):
    """Top level settings object used by services."""

    postgres: PostgresSettings = Field(default_factory=PostgresSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    chat: ChatPlatformSettings = Field(default_factory=ChatPlatformSettings)
    commerce: CommercePlatformSettings = Field(default_factory=CommercePlatformSettings)
    realtime: RealtimeSettings = Field(default_factory=RealtimeSettings)
    engine: EngineSettings = Field(default_factory=EngineSettings)

    @classmethod
    def load(cls, **kwargs: Any) -> AppSettings:
        """Helper factory that mirrors BaseSettings semantics."""

        return cls(**kwargs)
