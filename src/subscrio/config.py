"""
Subscrio module configuration
"""

from pydantic import BaseModel, ConfigDict, Field

from subscrio.settings import Settings, get_settings


class FeatureCacheConfig(BaseModel):
    """Feature checker lookup cache configuration"""

    model_config = ConfigDict()

    enabled: bool = Field(True, description="Enable the plan/feature lookup cache")
    ttl_seconds: float = Field(300.0, description="Entry time-to-live in seconds")
    max_entries: int = Field(1000, description="Maximum cached entries per table")


class ReconciliationConfig(BaseModel):
    """Provider event reconciliation configuration"""

    model_config = ConfigDict()

    ledger_ttl_seconds: float = Field(86400.0, description="Applied event id retention")
    ledger_max_entries: int = Field(10000, description="Maximum remembered event ids")
    max_attempts: int = Field(3, description="Attempts per event on concurrent write conflicts")


def _default_cache_config() -> FeatureCacheConfig:
    """Create default FeatureCacheConfig instance"""
    return FeatureCacheConfig(enabled=True, ttl_seconds=300.0, max_entries=1000)


def _default_reconciliation_config() -> ReconciliationConfig:
    """Create default ReconciliationConfig instance"""
    return ReconciliationConfig(ledger_ttl_seconds=86400.0, ledger_max_entries=10000, max_attempts=3)


class SubscrioConfig(BaseModel):
    """Main configuration"""

    model_config = ConfigDict()

    cache: FeatureCacheConfig = Field(default_factory=_default_cache_config)
    reconciliation: ReconciliationConfig = Field(default_factory=_default_reconciliation_config)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "SubscrioConfig":
        """Create configuration from environment-backed settings"""
        settings = settings or get_settings()

        return cls(
            cache=FeatureCacheConfig(
                enabled=settings.cache.enabled,
                ttl_seconds=settings.cache.ttl_seconds,
                max_entries=settings.cache.max_entries,
            ),
            reconciliation=ReconciliationConfig(
                ledger_ttl_seconds=settings.reconciliation.ledger_ttl_seconds,
                ledger_max_entries=settings.reconciliation.ledger_max_entries,
                max_attempts=settings.reconciliation.max_attempts,
            ),
        )


# Global configuration instance
_config: SubscrioConfig | None = None


def get_config() -> SubscrioConfig:
    """Get the global configuration instance"""
    global _config
    if _config is None:
        _config = SubscrioConfig.from_settings()
    return _config


def set_config(config: SubscrioConfig | None) -> None:
    """Set the global configuration instance"""
    global _config
    _config = config
