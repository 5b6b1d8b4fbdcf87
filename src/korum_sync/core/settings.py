"""Client settings and configuration.

This module defines all configuration options for the Korum sync client.
Settings are loaded from environment variables with sensible defaults.
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Client settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files.
    """

    # Application metadata
    app_name: str = Field(default="Korum Sync", alias="KORUM_APP_NAME")
    app_version: str = Field(default="0.1.0", alias="KORUM_APP_VERSION")

    # Store backend selection
    store_backend: Literal["sql", "http"] = Field(default="sql", alias="KORUM_STORE_BACKEND")

    # Reference SQL store
    database_url: str = Field(default="sqlite:///./korum.db", alias="KORUM_DATABASE_URL")
    sql_debug: bool = Field(default=False, alias="KORUM_SQL_DEBUG")

    # Remote HTTP store
    store_base_url: str | None = Field(default=None, alias="KORUM_STORE_BASE_URL")
    store_api_key: str | None = Field(default=None, alias="KORUM_STORE_API_KEY")
    store_access_token: str | None = Field(default=None, alias="KORUM_STORE_ACCESS_TOKEN")
    store_http_timeout_seconds: float = Field(
        default=10.0,
        alias="KORUM_STORE_HTTP_TIMEOUT_SECONDS",
    )
    store_public_url: str | None = Field(default=None, alias="KORUM_STORE_PUBLIC_URL")

    # Circuit breaker for the HTTP store
    circuit_failure_threshold: int = Field(default=5, alias="KORUM_CIRCUIT_FAILURE_THRESHOLD")
    circuit_recovery_seconds: float = Field(default=30.0, alias="KORUM_CIRCUIT_RECOVERY_SECONDS")

    # Realtime channels
    realtime_poll_interval_seconds: float = Field(
        default=1.0,
        alias="KORUM_REALTIME_POLL_INTERVAL_SECONDS",
    )
    realtime_reconnect_initial_seconds: float = Field(
        default=0.5,
        alias="KORUM_REALTIME_RECONNECT_INITIAL_SECONDS",
    )
    realtime_reconnect_max_seconds: float = Field(
        default=30.0,
        alias="KORUM_REALTIME_RECONNECT_MAX_SECONDS",
    )
    realtime_queue_size: int = Field(default=256, alias="KORUM_REALTIME_QUEUE_SIZE")
    realtime_dedupe_window: int = Field(default=1024, alias="KORUM_REALTIME_DEDUPE_WINDOW")

    # Content limits applied before any network call
    post_title_min: int = Field(default=5, alias="KORUM_POST_TITLE_MIN")
    post_title_max: int = Field(default=200, alias="KORUM_POST_TITLE_MAX")
    post_content_min: int = Field(default=10, alias="KORUM_POST_CONTENT_MIN")
    post_content_max: int = Field(default=10_000, alias="KORUM_POST_CONTENT_MAX")
    post_max_tags: int = Field(default=5, alias="KORUM_POST_MAX_TAGS")
    comment_max: int = Field(default=2_000, alias="KORUM_COMMENT_MAX")
    message_max: int = Field(default=5_000, alias="KORUM_MESSAGE_MAX")
    korum_name_min: int = Field(default=3, alias="KORUM_NAME_MIN")
    korum_name_max: int = Field(default=100, alias="KORUM_NAME_MAX")
    korum_description_min: int = Field(default=10, alias="KORUM_DESCRIPTION_MIN")
    korum_description_max: int = Field(default=1_000, alias="KORUM_DESCRIPTION_MAX")

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
    )


settings = Settings()
