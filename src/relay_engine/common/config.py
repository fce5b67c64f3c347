"""Relay-Engine configuration via pydantic-settings."""

import warnings
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_DB_URL = "sqlite+aiosqlite:///./data/relay.db"


class RelaySettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="RELAY_")

    environment: str = "development"
    log_level: str = "INFO"

    # Database
    db_url: str = _DEFAULT_DB_URL

    # API
    api_title: str = "Relay-Engine"
    api_version: str = "0.1.0"
    host: str = "0.0.0.0"
    port: int = 8080
    api_prefix: str = "/api"
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:8000"]

    # Webhook defaults (applied when a webhook is created without them)
    default_timeout_seconds: int = 30
    default_retry_count: int = 3
    default_retry_delay_seconds: int = 30

    # Engine
    max_response_body_chars: int = 4096
    max_delay_seconds: int = 3600
    shutdown_grace_seconds: float = 10.0

    # Pagination
    default_executions_limit: int = 20
    max_executions_limit: int = 200

    def validate_for_production(self) -> None:
        """Raise if the bundled SQLite file is used outside development."""
        if self.db_url != _DEFAULT_DB_URL:
            return

        if self.environment != "development":
            raise RuntimeError(
                f"Default database URL detected in '{self.environment}' environment. "
                "Set RELAY_DB_URL to a durable database for production."
            )

        warnings.warn(
            "Using the default SQLite database — set RELAY_DB_URL for production",
            UserWarning,
            stacklevel=2,
        )


@lru_cache
def get_settings() -> RelaySettings:
    settings = RelaySettings()
    settings.validate_for_production()
    return settings
