"""
Global pytest configuration and fixtures for Subscrio tests.

Services run over fresh in-memory repositories and a frozen clock, so every
test sees the same "now" unless it advances the clock explicitly.
"""

from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio

from subscrio.catalog.service import CatalogService
from subscrio.config import FeatureCacheConfig, ReconciliationConfig, SubscrioConfig, set_config
from subscrio.customers.service import CustomerService
from subscrio.entitlements.cache import FeatureLookupCache
from subscrio.entitlements.service import FeatureCheckerService
from subscrio.reconciliation.service import ReconciliationEngine
from subscrio.repositories.memory import InMemoryRepositories
from subscrio.settings import reset_settings
from subscrio.subscriptions.service import SubscriptionService

NOW = datetime(2024, 1, 15, 12, 0, tzinfo=UTC)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> datetime:
        self.now = now
        return self.now


@pytest.fixture(autouse=True)
def reset_global_config(monkeypatch):
    """Keep environment-derived settings from leaking between tests."""
    for name in ("SUBSCRIO_CACHE__ENABLED", "SUBSCRIO_RECONCILIATION__MAX_ATTEMPTS"):
        monkeypatch.delenv(name, raising=False)
    reset_settings()
    set_config(None)
    yield
    reset_settings()
    set_config(None)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def repos():
    return InMemoryRepositories()


@pytest.fixture
def config():
    return SubscrioConfig(
        cache=FeatureCacheConfig(enabled=True, ttl_seconds=300.0, max_entries=100),
        reconciliation=ReconciliationConfig(
            ledger_ttl_seconds=3600.0, ledger_max_entries=100, max_attempts=3
        ),
    )


@pytest.fixture
def cache(config):
    return FeatureLookupCache(config.cache)


@pytest.fixture
def catalog_service(repos, cache):
    return CatalogService(
        repos.features,
        repos.products,
        repos.plans,
        repos.billing_cycles,
        repos.subscriptions,
        cache=cache,
    )


@pytest.fixture
def customer_service(repos):
    return CustomerService(repos.customers, repos.subscriptions)


@pytest.fixture
def subscription_service(repos, clock):
    return SubscriptionService(
        repos.subscriptions,
        repos.customers,
        repos.billing_cycles,
        repos.plans,
        repos.features,
        clock=clock,
    )


@pytest.fixture
def feature_checker(repos, cache, clock):
    return FeatureCheckerService(
        repos.customers,
        repos.products,
        repos.features,
        repos.plans,
        repos.subscriptions,
        cache=cache,
        clock=clock,
    )


@pytest.fixture
def engine(repos, config, clock):
    return ReconciliationEngine(
        repos.customers,
        repos.subscriptions,
        repos.billing_cycles,
        config=config.reconciliation,
        clock=clock,
    )


@pytest_asyncio.fixture
async def seeded_catalog(catalog_service):
    """
    One product with three features and three plans.

    - ``basic``: max-projects=5, monthly cycle (price_basic_monthly)
    - ``pro``: max-projects=50, sso=true, yearly cycle (price_pro_yearly)
    - ``free``: no plan values, forever cycle
    """
    await catalog_service.create_feature("max-projects", "Max projects", "numeric", "1")
    await catalog_service.create_feature("sso", "Single sign-on", "toggle", "false")
    await catalog_service.create_feature("support-tier", "Support tier", "text", "community")

    await catalog_service.create_product("acme", "Acme")
    for feature_key in ("max-projects", "sso", "support-tier"):
        await catalog_service.associate_feature("acme", feature_key)

    await catalog_service.create_plan("acme", "free", "Free")
    await catalog_service.create_plan("acme", "basic", "Basic")
    await catalog_service.create_plan("acme", "pro", "Pro")

    await catalog_service.set_plan_feature_value("basic", "max-projects", "5")
    await catalog_service.set_plan_feature_value("pro", "max-projects", "50")
    await catalog_service.set_plan_feature_value("pro", "sso", "true")

    await catalog_service.create_billing_cycle("free", "free-forever", "Free forever", "forever")
    await catalog_service.create_billing_cycle(
        "basic",
        "basic-monthly",
        "Basic monthly",
        "months",
        1,
        external_price_id="price_basic_monthly",
    )
    await catalog_service.create_billing_cycle(
        "pro", "pro-yearly", "Pro yearly", "years", 1, external_price_id="price_pro_yearly"
    )
    return catalog_service


@pytest_asyncio.fixture
async def customer(customer_service):
    return await customer_service.create_customer("cust-1", display_name="Customer One")
