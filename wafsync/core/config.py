"""
Configuration management using Pydantic Settings.

All configuration values are loaded from environment variables
with sensible defaults where appropriate.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# The .env file lives in the project root, next to pyproject.toml
ROOT_DIR = Path(__file__).resolve().parent.parent.parent
ENV_FILE = ROOT_DIR / ".env"

# Load .env into environment for nested settings models
load_dotenv(ENV_FILE)


class AppSettings(BaseSettings):
    """Application-level configuration."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_env: Literal["development", "staging", "production"] = "development"
    app_name: str = "wafsync"
    app_version: str = "1.0.0"
    app_debug: bool = False

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 3001

    # CORS
    cors_origins: str = "http://localhost:8080,http://localhost:5173"
    cors_credentials: bool = True

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins into a list."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


class DatabaseSettings(BaseSettings):
    """Database configuration."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_prefix="DB_",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    host: str = "localhost"
    port: int = 5432
    name: str = "wafsync"
    user: str = "wafsync"
    password: str = ""
    pool_size: int = 10
    max_overflow: int = 5
    echo: bool = False

    # Full SQLAlchemy URL; takes precedence over the individual fields
    url: str = ""

    @property
    def dsn(self) -> str:
        """Get async database DSN."""
        if self.url:
            return self.url
        auth_part = f"{self.user}:{self.password}@" if self.password else f"{self.user}@"
        return f"postgresql+asyncpg://{auth_part}{self.host}:{self.port}/{self.name}"

    @property
    def is_sqlite(self) -> bool:
        return self.dsn.startswith("sqlite")


class LogSettings(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_prefix="LOG_",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    level: str = "INFO"
    format: Literal["json", "text"] = "json"
    requests: bool = True


class SecuritySettings(BaseSettings):
    """Security configuration for the administrative API."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_prefix="",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    admin_api_token: str = ""

    @field_validator("admin_api_token")
    @classmethod
    def validate_admin_api_token(cls, v: str) -> str:
        """Require a real token in production."""
        if os.getenv("APP_ENV") == "production" and len(v) < 32:
            raise ValueError("ADMIN_API_TOKEN must be at least 32 characters long in production")
        return v


class NodeSyncSettings(BaseSettings):
    """Cluster configuration sync settings."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_prefix="NODE_SYNC_",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    default_slave_port: int = Field(default=3001, ge=1, le=65535)
    default_sync_interval: int = 60  # seconds
    min_sync_interval: int = 10

    liveness_check_interval: int = 60  # 1 minute
    stale_after: int = 300  # 5 minutes

    connect_timeout: float = 10.0  # connectivity checks
    transfer_timeout: float = 30.0  # full snapshot transfer

    scheme: Literal["http", "https"] = "http"
    verify_tls: bool = True

    # Master pushes to every enabled slave on its own interval
    master_auto_push: bool = False

    # Start timers in the application lifespan
    scheduler_enabled: bool = True


class NginxSettings(BaseSettings):
    """nginx reload configuration."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_prefix="NGINX_",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    reload_enabled: bool = False
    test_command: str = "nginx -t"
    reload_command: str = "nginx -s reload"
    reload_timeout: float = 30.0


class Settings(BaseSettings):
    """Main settings class that aggregates all configuration sections."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app: AppSettings = Field(default_factory=AppSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    log: LogSettings = Field(default_factory=LogSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    node_sync: NodeSyncSettings = Field(default_factory=NodeSyncSettings)
    nginx: NginxSettings = Field(default_factory=NginxSettings)

    # DOCS
    docs_enabled: bool = True
    dev_auto_reload: bool = True


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()
