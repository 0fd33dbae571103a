"""
Centralized configuration management for the oplog listener.

Uses Pydantic Settings for validation and environment variable loading.
Loads from .env file if present, falls back to environment variables, then defaults.
"""
import re
from typing import Any, Dict, Optional
from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


_FALSE_PATTERN = re.compile(r"^(false|no|0)$", re.IGNORECASE)


class MongoSettings(BaseSettings):
    """Source MongoDB configuration."""

    model_config = SettingsConfigDict(
        env_prefix="MONGO_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    url: str = Field(default="mongodb://localhost:27017", description="URI used to tail the oplog")
    full_read_url: Optional[str] = Field(
        default=None,
        description="URI used to read documents (entire collection and partial update lookups). Falls back to url."
    )
    db: Optional[str] = Field(default=None, description="Watched database")
    collection: Optional[str] = Field(default=None, description="Watched collection")


class RedisSettings(BaseSettings):
    """Remote checkpoint (last op) storage."""

    model_config = SettingsConfigDict(
        env_prefix="REDIS_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("REDIS_URL", "REDISCLOUD_URL"),
        description="Redis URL. When unset the checkpoint is kept locally."
    )
    key: str = Field(default="mongoListenerLastOp", description="Key holding the last op timestamp")


class CheckpointSettings(BaseSettings):
    """Local checkpoint storage."""

    model_config = SettingsConfigDict(
        env_prefix="CHECKPOINT_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    file: str = Field(default="lastop.json", description="File holding the last op timestamp")
    database_url: Optional[str] = Field(
        default=None,
        description="SQLAlchemy URL of a checkpoint table, used when no Redis URL is set"
    )
    key: str = Field(default="mongoListenerLastOp", description="Checkpoint key in the SQL table")


class HTTPSettings(BaseSettings):
    """Status endpoint configuration."""

    model_config = SettingsConfigDict(
        env_prefix="HTTP_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    port: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices("PORT", "HTTP_PORT"),
        description="Status server port. No server is started when unset."
    )
    host: str = Field(default="0.0.0.0", description="Status server bind address")


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    skip_full_upsert: bool = Field(
        default=True,
        description="Skip processing the entire collection when no checkpoint exists"
    )
    batch_process_delay: int = Field(default=5000, description="Debounce delay before a batch flush (ms)")
    max_batch_size: int = Field(
        default=5000,
        description="Max documents per sink call; also the entire-collection concurrency"
    )
    filter: Optional[Dict[str, Any]] = Field(default=None, description="Field filter tree (JSON)")
    transform: Optional[str] = Field(default=None, description="Transform function, as 'module:attribute'")
    process_docs: Optional[str] = Field(default=None, description="Sink function, as 'module:attribute'")

    log_level: str = Field(default="INFO", description="Log level")
    log_json: bool = Field(default=True, description="Emit JSON log lines")

    # Sub-configurations
    mongo: MongoSettings = Field(default_factory=MongoSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    checkpoint: CheckpointSettings = Field(default_factory=CheckpointSettings)
    http: HTTPSettings = Field(default_factory=HTTPSettings)

    @field_validator("skip_full_upsert", mode="before")
    @classmethod
    def parse_skip_full_upsert(cls, v: Any) -> Any:
        """Anything but an explicit false/no/0 means skip."""
        if isinstance(v, str):
            return not _FALSE_PATTERN.match(v.strip())
        return v

    @field_validator("batch_process_delay")
    @classmethod
    def validate_delay(cls, v: int) -> int:
        if v < 0:
            raise ValueError("batch_process_delay must be non-negative")
        return v

    @field_validator("max_batch_size")
    @classmethod
    def validate_batch_size(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("max_batch_size must be positive")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            raise ValueError(f"log_level must be one of: {allowed}")
        return v.upper()


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance (singleton pattern)."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """Reload settings from environment (useful for testing)."""
    global _settings
    _settings = Settings()
    return _settings
