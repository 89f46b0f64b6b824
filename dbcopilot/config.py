"""
Application Configuration

Pydantic-based settings management using environment variables.
Supports nested configuration, validation, and caching.

Usage:
    from dbcopilot.config import get_settings

    settings = get_settings()
    print(settings.llm.default_provider)
    print(settings.pool.max_handles_per_connection)
"""

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LLMSettings(BaseSettings):
    """AI service configuration."""

    default_provider: Literal["openai", "local"] = Field(
        default="openai", description="Provider used to stream AI responses"
    )

    # OpenAI configuration
    openai_api_key: str | None = Field(
        None,
        description="OpenAI API key",
        min_length=20,
    )
    openai_model: str = Field(default="gpt-4o", description="OpenAI chat model")

    # Local model configuration
    local_base_url: str = Field(
        default="http://localhost:11434",
        description="Base URL for local model server (Ollama, vLLM, etc.)",
    )
    local_model: str = Field(default="llama3.1:8b", description="Local model name")

    # Common settings
    temperature: float = Field(
        default=0.0,
        ge=0.0,
        le=2.0,
        description="Temperature for LLM responses (0.0 = deterministic)",
    )
    max_tokens: int = Field(
        default=2000,
        gt=0,
        le=16000,
        description="Maximum tokens per LLM response",
    )
    timeout: int = Field(
        default=30,
        gt=0,
        description="Request timeout in seconds",
    )
    history_limit: int = Field(
        default=20,
        ge=0,
        le=200,
        description="Number of prior chat messages sent to the AI service",
    )

    model_config = SettingsConfigDict(
        env_prefix="LLM_",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("openai_api_key")
    @classmethod
    def validate_openai_key(cls, v: str | None) -> str | None:
        """Validate OpenAI API key format."""
        if v and not v.startswith("sk-"):
            raise ValueError("OpenAI API key must start with 'sk-'")
        return v


class PoolSettings(BaseSettings):
    """Connection pool configuration for external databases."""

    max_handles_per_connection: int = Field(
        default=5,
        gt=0,
        le=50,
        description="Maximum concurrently checked-out handles per Connection",
    )
    acquire_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Seconds to wait for a free handle before PoolExhausted",
    )
    connect_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Seconds allowed for dialing the external database",
    )
    idle_ttl: float = Field(
        default=900.0,
        gt=0,
        description="Idle seconds after which a pooled handle is evicted",
    )
    health_check_interval: float = Field(
        default=60.0,
        gt=0,
        description="Seconds between health-check sweeps",
    )

    model_config = SettingsConfigDict(
        env_prefix="POOL_",
        env_file=".env",
        extra="ignore",
    )

    @model_validator(mode="after")
    def validate_ttl(self) -> "PoolSettings":
        """Ensure idle TTL is longer than the sweep interval."""
        if self.idle_ttl <= self.health_check_interval:
            raise ValueError(
                f"idle_ttl ({self.idle_ttl}) must be greater than "
                f"health_check_interval ({self.health_check_interval})"
            )
        return self


class GatewaySettings(BaseSettings):
    """Query execution limits."""

    execution_timeout: float = Field(
        default=60.0,
        gt=0,
        description="Seconds before an engine call is cancelled with EngineTimeout",
    )
    max_rows: int = Field(
        default=1000,
        gt=0,
        le=100000,
        description="Maximum rows returned per execution",
    )
    max_bytes: int = Field(
        default=2_000_000,
        gt=0,
        description="Maximum serialized result size per execution",
    )

    model_config = SettingsConfigDict(
        env_prefix="GATEWAY_",
        env_file=".env",
        extra="ignore",
    )


class StreamSettings(BaseSettings):
    """Stream session and delivery configuration."""

    chunk_timeout: float = Field(
        default=60.0,
        gt=0,
        description="Seconds to wait for the next AI chunk",
    )
    terminal_grace_seconds: float = Field(
        default=30.0,
        ge=0,
        description="Seconds a terminal session stays visible before eviction",
    )
    buffer_size: int = Field(
        default=1024,
        ge=8,
        le=100000,
        description="Events retained per chat for reconnecting listeners",
    )
    keepalive_seconds: float = Field(
        default=15.0,
        gt=0,
        description="SSE ping interval",
    )

    model_config = SettingsConfigDict(
        env_prefix="STREAM_",
        env_file=".env",
        extra="ignore",
    )


class SchemaSettings(BaseSettings):
    """Schema context sent to the AI service."""

    enabled: bool = Field(
        default=True,
        description="Introspect the chat's database and include it in the AI prompt",
    )
    cache_ttl: float = Field(
        default=300.0,
        ge=0,
        description="Seconds an introspected schema is reused before refreshing",
    )
    timeout: float = Field(
        default=15.0,
        gt=0,
        description="Seconds allowed for one introspection",
    )
    max_tables: int = Field(
        default=200,
        gt=0,
        le=5000,
        description="Maximum tables (or collections) described to the AI",
    )

    model_config = SettingsConfigDict(
        env_prefix="SCHEMA_",
        env_file=".env",
        extra="ignore",
    )


class LoggingSettings(BaseSettings):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Application log level",
    )
    format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log message format",
    )
    date_format: str = Field(
        default="%Y-%m-%d %H:%M:%S",
        description="Log timestamp format",
    )
    file: Path | None = Field(
        default=None,
        description="Optional log file path (None = stdout only)",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        env_file=".env",
        extra="ignore",
    )

    def configure(self) -> None:
        """Configure Python logging with these settings."""
        handlers: list[logging.Handler] = [logging.StreamHandler()]

        if self.file:
            self.file.parent.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(self.file))

        logging.basicConfig(
            level=getattr(logging, self.level),
            format=self.format,
            datefmt=self.date_format,
            handlers=handlers,
            force=True,  # Override any existing configuration
        )


class Settings(BaseSettings):
    """
    Main application settings.

    Loads configuration from environment variables and .env file.
    Settings are nested by domain (llm, pool, gateway, stream, schema, logging).

    Environment Variables:
        ENVIRONMENT: Deployment environment (development, staging, production)
        APP_NAME: Application name for logging
        API_HOST: API server host
        API_PORT: API server port
        CORS_ORIGINS: Comma-separated allowed origins
        DATABASE_CREDENTIALS_KEY: Fernet key for stored connection passwords
        LLM_*: AI service configuration (see LLMSettings)
        POOL_*: Connection pool configuration (see PoolSettings)
        GATEWAY_*: Query execution limits (see GatewaySettings)
        STREAM_*: Streaming configuration (see StreamSettings)
        SCHEMA_*: Schema context configuration (see SchemaSettings)
        LOG_*: Logging configuration (see LoggingSettings)

    Example:
        >>> settings = get_settings()
        >>> settings.pool.max_handles_per_connection
        5
        >>> settings.is_production
        False
    """

    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Deployment environment",
    )
    app_name: str = Field(
        default="DB Copilot",
        description="Application name",
    )
    api_host: str = Field(
        default="0.0.0.0",
        description="API server host",
    )
    api_port: int = Field(
        default=8000,
        gt=0,
        le=65535,
        description="API server port",
    )
    cors_origins: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        description="Comma-separated list of allowed CORS origins",
    )
    database_credentials_key: str | None = Field(
        default=None,
        description="Fernet key for encrypting stored connection passwords.",
        validation_alias="DATABASE_CREDENTIALS_KEY",
    )

    llm: LLMSettings = Field(default_factory=LLMSettings)
    pool: PoolSettings = Field(default_factory=PoolSettings)
    gateway: GatewaySettings = Field(default_factory=GatewaySettings)
    stream: StreamSettings = Field(default_factory=StreamSettings)
    schema_context: SchemaSettings = Field(default_factory=SchemaSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == "production"

    @property
    def cors_origin_list(self) -> list[str]:
        """Parsed CORS origins."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @model_validator(mode="after")
    def configure_logging(self) -> "Settings":
        """Configure logging when settings are loaded."""
        self.logging.configure()
        return self

    def model_post_init(self, __context) -> None:
        """Log configuration on initialization."""
        logger = logging.getLogger(__name__)
        logger.info(
            f"Settings loaded for {self.app_name} ({self.environment})",
            extra={
                "environment": self.environment,
                "llm_provider": self.llm.default_provider,
                "pool_max_handles": self.pool.max_handles_per_connection,
                "stream_buffer_size": self.stream.buffer_size,
            },
        )


_DOTENV_PATH = Path(__file__).resolve().parents[1] / ".env"


def _apply_dotenv_precedence() -> None:
    env_source = os.getenv("DBCOPILOT_ENV_SOURCE", "dotenv").lower()
    if env_source not in {"dotenv", "envfile", "file"}:
        return
    if _DOTENV_PATH.exists():
        load_dotenv(_DOTENV_PATH, override=True)


@lru_cache
def get_settings() -> Settings:
    """
    Get cached application settings.

    Uses functools.lru_cache to ensure settings are loaded only once.

    Returns:
        Settings: Singleton settings instance
    """
    _apply_dotenv_precedence()
    return Settings()


def clear_settings_cache() -> None:
    """
    Clear the settings cache.

    Useful for testing when you need to reload settings with different
    environment variables.

    Example:
        >>> import os
        >>> os.environ["POOL_MAX_HANDLES_PER_CONNECTION"] = "2"
        >>> clear_settings_cache()
        >>> settings = get_settings()  # Reloads with new env vars
    """
    get_settings.cache_clear()
