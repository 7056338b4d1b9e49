"""Centralized configuration using pydantic-settings.

All configuration is loaded from environment variables and .env files.
For nested settings, use double underscore: SUBSCRIO_CACHE__TTL_SECONDS=60
"""

from enum import Enum

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Application environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TEST = "test"


class LogLevel(str, Enum):
    """Log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Settings(BaseSettings):
    """Main settings.

    All settings can be overridden via environment variables prefixed with
    ``SUBSCRIO_``.
    """

    model_config = SettingsConfigDict(
        env_prefix="SUBSCRIO_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    environment: Environment = Field(Environment.DEVELOPMENT, description="Deployment environment")
    testing: bool = Field(False, description="Testing mode")

    # ============================================================
    # Logging
    # ============================================================

    class LoggingSettings(BaseModel):
        """Logging configuration."""

        level: LogLevel = Field(LogLevel.INFO, description="Log level")
        format: str = Field("json", description="Log format (json or console)")

        @field_validator("format")
        @classmethod
        def validate_format(cls, v: str) -> str:
            if v not in {"json", "console"}:
                raise ValueError("Log format must be 'json' or 'console'")
            return v

    logging: LoggingSettings = LoggingSettings()  # type: ignore[call-arg]

    # ============================================================
    # Feature lookup cache
    # ============================================================

    class CacheSettings(BaseModel):
        """Plan/feature lookup cache used by the feature checker."""

        enabled: bool = Field(True, description="Enable the lookup cache")
        ttl_seconds: float = Field(300.0, gt=0, description="Entry time-to-live in seconds")
        max_entries: int = Field(1000, gt=0, description="Maximum cached entries per table")

    cache: CacheSettings = CacheSettings()  # type: ignore[call-arg]

    # ============================================================
    # Provider event reconciliation
    # ============================================================

    class ReconciliationSettings(BaseModel):
        """Webhook reconciliation configuration."""

        ledger_ttl_seconds: float = Field(
            86400.0, gt=0, description="How long applied event ids are remembered"
        )
        ledger_max_entries: int = Field(
            10000, gt=0, description="Maximum remembered event ids"
        )
        max_attempts: int = Field(
            3, ge=1, description="Attempts per event when a concurrent write conflicts"
        )

    reconciliation: ReconciliationSettings = ReconciliationSettings()  # type: ignore[call-arg]

    # ============================================================
    # Stripe
    # ============================================================

    class StripeSettings(BaseModel):
        """Stripe settings. Signature verification happens upstream of the core."""

        webhook_secret: str = Field("", description="Webhook signing secret (used by the host)")

    stripe: StripeSettings = StripeSettings()  # type: ignore[call-arg]

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == Environment.PRODUCTION

    @property
    def is_testing(self) -> bool:
        """Check if running in test mode."""
        return self.testing or self.environment == Environment.TEST


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get global settings instance (singleton)."""
    global _settings
    if _settings is None:
        _settings = Settings()  # type: ignore
    return _settings


def reset_settings() -> None:
    """Reset settings (mainly for testing)."""
    global _settings
    _settings = None
