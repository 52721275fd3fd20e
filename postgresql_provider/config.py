"""
Provider and controller configuration.
"""

import os
from typing import Any, Mapping, Optional

from pydantic import Field, SecretStr, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigError

DEFAULT_DATABASE_NAME = "postgres"


# ============================================================================
# CONTROLLER SETTINGS
# ============================================================================

class Config:
    """Controller configuration loaded from environment variables"""

    # Desired state and tracked state
    MANIFEST_FILE = os.getenv("MANIFEST_FILE", "roles.yaml")
    STATE_FILE = os.getenv("STATE_FILE", "postgresql-provider.state.json")

    # Controller settings
    SYNC_INTERVAL = int(os.getenv("SYNC_INTERVAL", "30"))
    DRY_RUN = os.getenv("DRY_RUN", "false").lower() == "true"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Connection pool settings
    DB_POOL_MIN_CONN = int(os.getenv("DB_POOL_MIN_CONN", "1"))
    DB_POOL_DEFAULT_MAX_CONN = int(os.getenv("DB_POOL_DEFAULT_MAX_CONN", "5"))
    CONNECT_TIMEOUT = int(os.getenv("CONNECT_TIMEOUT", "10"))


# ============================================================================
# PROVIDER SETTINGS
# ============================================================================

ENV_PREFIX = "PGPROVIDER_"


class ProviderSettings(BaseSettings):
    """
    Connection settings for the provider block

    Built from the manifest's `provider:` mapping, or from PGPROVIDER_*
    environment variables when the manifest has none.
    """

    model_config = SettingsConfigDict(env_prefix=ENV_PREFIX, env_ignore_empty=True, extra="forbid")

    hostname: str = Field(min_length=1, description="Name of the PostgreSQL server address to connect to")
    port: int = Field(ge=1, le=65535, description="The PostgreSQL port number to connect to at the server host")
    username: str = Field(min_length=1, description="PostgreSQL user name to connect as")
    database_name: str = Field(default=DEFAULT_DATABASE_NAME, description="The name of the database to connect to")
    password: Optional[SecretStr] = Field(default=None, description="Password to be used if the server demands it")
    max_connections: Optional[int] = Field(
        default=None, ge=0, description="Maximum number of pooled connections, 0 for the pool default"
    )

    @field_validator("port", "max_connections", mode="before")
    @classmethod
    def _reject_booleans(cls, value: Any) -> Any:
        # YAML `yes`/`no` must not slip through as 1/0.
        if isinstance(value, bool):
            raise ValueError("must be an integer, not a boolean")
        return value

    @field_validator("database_name", mode="before")
    @classmethod
    def _default_database(cls, value: Any) -> Any:
        return value or DEFAULT_DATABASE_NAME

    @property
    def pool_max_connections(self) -> int:
        # Zero means "no explicit limit": fall back to the pool default.
        if not self.max_connections:
            return max(Config.DB_POOL_DEFAULT_MAX_CONN, Config.DB_POOL_MIN_CONN)
        return max(self.max_connections, Config.DB_POOL_MIN_CONN)

    def connect_kwargs(self) -> dict:
        kwargs = {
            "host": self.hostname,
            "port": self.port,
            "dbname": self.database_name,
            "user": self.username,
            "connect_timeout": Config.CONNECT_TIMEOUT,
        }
        if self.password is not None:
            kwargs["password"] = self.password.get_secret_value()
        return kwargs

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ProviderSettings":
        """
        Build settings from a `provider:` block of the manifest

        Only the block itself is validated; the environment is not consulted.

        Raises:
            ConfigError: unknown, missing or out-of-range settings
        """
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigError.from_validation(e) from e

    @classmethod
    def from_env(cls) -> "ProviderSettings":
        """Build settings from PGPROVIDER_* environment variables"""
        try:
            return cls()
        except ValidationError as e:
            raise ConfigError.from_validation(e, "PGPROVIDER_* environment settings") from e
