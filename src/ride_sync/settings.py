from typing import Literal

from pydantic import Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ride_sync.exceptions import ConfigurationError


class RedisSettings(BaseSettings):
    host: str = "localhost"
    port: int = 6379
    db: int = Field(default=0, ge=0)
    password: str = ""
    ssl: bool = False

    model_config = SettingsConfigDict(env_prefix="REDIS_")

    @model_validator(mode="after")
    def validate_credentials_provided(self) -> "RedisSettings":
        if not self.password:
            raise ValueError("Required credential not provided: REDIS_PASSWORD")
        return self


class RealtimeSettings(BaseSettings):
    """Change-channel transport and notification configuration."""

    channel_prefix: str = Field(
        default="realtime",
        min_length=1,
        description="Prefix of the Redis channels carrying table change documents",
    )
    subscribe_timeout_seconds: float = Field(
        default=10.0,
        gt=0.0,
        le=120.0,
        description="Seconds to wait for a subscription acknowledgment before reporting timed_out",
    )
    toast_limit: int = Field(
        default=1,
        ge=1,
        description="Maximum number of concurrently visible notifications",
    )

    model_config = SettingsConfigDict(env_prefix="REALTIME_")


class LoggingSettings(BaseSettings):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    format: Literal["text", "json"] = "text"
    environment: str = "development"

    model_config = SettingsConfigDict(env_prefix="LOG_")


class APISettings(BaseSettings):
    key: str = ""
    host: str = "0.0.0.0"
    port: int = Field(default=8000, ge=1, le=65535)

    model_config = SettingsConfigDict(env_prefix="API_")

    @model_validator(mode="after")
    def validate_credentials_provided(self) -> "APISettings":
        if not self.key:
            raise ValueError("Required credential not provided: API_KEY")
        return self


class CORSSettings(BaseSettings):
    origins: str = "http://localhost:5173,http://localhost:3000"

    model_config = SettingsConfigDict(env_prefix="CORS_")

    @property
    def origin_list(self) -> list[str]:
        return [origin.strip() for origin in self.origins.split(",") if origin.strip()]


class Settings(BaseSettings):
    redis: RedisSettings = Field(default_factory=RedisSettings)
    realtime: RealtimeSettings = Field(default_factory=RealtimeSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    api: APISettings = Field(default_factory=APISettings)
    cors: CORSSettings = Field(default_factory=CORSSettings)

    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        case_sensitive=False,
    )


def get_settings() -> Settings:
    """Load and validate settings from environment variables."""
    try:
        return Settings()
    except ValidationError as e:
        raise ConfigurationError(
            "Invalid ride sync configuration",
            details={"errors": e.errors(include_url=False)},
        ) from e
